"""Durable job queue consumed by the worker loop."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, delete, select

from agent_dispatch.storage.common import (
    dump_json,
    load_json,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from agent_dispatch.storage.sqlmodel_models import QueuedJob

AGENT_EXECUTE = "agent_execute"


class JobQueue(Protocol):
    """Enqueue seam used by the orchestrator for first runs and retries."""

    def add_job(
        self,
        identifier: str,
        payload: dict[str, Any],
        *,
        job_key: str | None = None,
        run_at: datetime | None = None,
        max_attempts: int | None = None,
    ) -> None:
        """Schedule `identifier` with `payload`; an existing `job_key` is replaced."""


@dataclass(slots=True)
class QueueEntry:
    queue_id: int
    identifier: str
    payload: dict[str, Any]
    job_key: str | None
    run_at: datetime
    attempts: int
    max_attempts: int


class SqliteJobQueue:
    """Job queue stored in the `job_queue` table.

    Adding with a `job_key` that is already queued and unlocked replaces that
    entry. When the keyed entry is locked by a worker the key moves to a
    fresh entry, so a job can re-enqueue itself from inside its own run.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def add_job(
        self,
        identifier: str,
        payload: dict[str, Any],
        *,
        job_key: str | None = None,
        run_at: datetime | None = None,
        max_attempts: int | None = None,
    ) -> None:
        now = utc_now()
        due = to_db_datetime(run_at or now)
        attempts_cap = max_attempts if max_attempts is not None else 1
        with Session(self.engine) as session:
            if job_key is not None:
                existing = session.exec(
                    select(QueuedJob).where(QueuedJob.job_key == job_key),
                ).one_or_none()
                if existing is not None and existing.locked_at is None:
                    existing.identifier = identifier
                    existing.payload_json = dump_json(payload) or "{}"
                    existing.run_at = due
                    existing.attempts = 0
                    existing.max_attempts = attempts_cap
                    session.add(existing)
                    session.commit()
                    return
                if existing is not None:
                    existing.job_key = None
                    session.add(existing)
                    session.flush()
            session.add(
                QueuedJob(
                    identifier=identifier,
                    payload_json=dump_json(payload) or "{}",
                    job_key=job_key,
                    run_at=due,
                    attempts=0,
                    max_attempts=attempts_cap,
                    created_at=now,
                ),
            )
            session.commit()

    def claim_due(self, *, worker_id: str, now: datetime | None = None) -> QueueEntry | None:
        """Atomically lock the oldest due, unlocked entry."""

        while True:
            now_db = to_db_datetime(now or utc_now())
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(QueuedJob)
                    .where(
                        col(QueuedJob.locked_at).is_(None),
                        col(QueuedJob.run_at) <= now_db,
                        col(QueuedJob.attempts) < col(QueuedJob.max_attempts),
                    )
                    .order_by(col(QueuedJob.run_at).asc(), col(QueuedJob.id).asc())
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                entry = QueueEntry(
                    queue_id=candidate.id or 0,
                    identifier=candidate.identifier,
                    payload=load_json(candidate.payload_json) or {},
                    job_key=candidate.job_key,
                    run_at=to_utc_aware_datetime(candidate.run_at),
                    attempts=candidate.attempts + 1,
                    max_attempts=candidate.max_attempts,
                )
                result = session.exec(
                    sa_update(QueuedJob)
                    .where(
                        col(QueuedJob.id) == candidate.id,
                        col(QueuedJob.locked_at).is_(None),
                    )
                    .values(
                        locked_at=now_db,
                        locked_by=worker_id,
                        attempts=col(QueuedJob.attempts) + 1,
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                session.commit()
                return entry

    def complete(self, queue_id: int) -> None:
        """Drop a processed entry."""

        with Session(self.engine) as session:
            session.exec(delete(QueuedJob).where(col(QueuedJob.id) == queue_id))
            session.commit()

    def release(self, queue_id: int) -> None:
        """Unlock an entry that was claimed but not processed."""

        with Session(self.engine) as session:
            session.exec(
                sa_update(QueuedJob)
                .where(col(QueuedJob.id) == queue_id)
                .values(
                    locked_at=None,
                    locked_by=None,
                    attempts=col(QueuedJob.attempts) - 1,
                ),
            )
            session.commit()

    def pending(self) -> list[QueueEntry]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(QueuedJob).order_by(col(QueuedJob.run_at).asc(), col(QueuedJob.id).asc()),
            ).all()
        return [
            QueueEntry(
                queue_id=row.id or 0,
                identifier=row.identifier,
                payload=load_json(row.payload_json) or {},
                job_key=row.job_key,
                run_at=to_utc_aware_datetime(row.run_at),
                attempts=row.attempts,
                max_attempts=row.max_attempts,
            )
            for row in rows
        ]
