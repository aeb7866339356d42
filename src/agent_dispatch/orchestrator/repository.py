"""Job persistence backed by SQLModel + SQLite.

Every status change is a conditional ``UPDATE ... WHERE status = <from>``.
A write that loses the race returns ``False`` and leaves the row untouched.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from agent_dispatch.orchestrator.errors import InvalidJobTransitionError, JobNotFoundError
from agent_dispatch.orchestrator.models import (
    AgentConfig,
    AgentView,
    JobCreate,
    JobDetails,
    JobEventView,
    JobStatus,
    JobView,
    is_transition_allowed,
)
from agent_dispatch.storage.alembic_runner import upgrade_head
from agent_dispatch.storage.common import (
    build_sqlite_engine,
    dump_json,
    load_json,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from agent_dispatch.storage.sqlmodel_models import Agent, Job, JobEvent


class JobRepository:
    """Agent and job persistence facade."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def init_schema(self) -> None:
        """Apply schema migrations."""

        upgrade_head(self.db_path)

    def add_agent(
        self,
        *,
        name: str,
        config: AgentConfig | None = None,
        agent_id: str | None = None,
    ) -> AgentView:
        row = Agent(
            agent_id=agent_id or str(uuid4()),
            name=name,
            config_json=dump_json((config or AgentConfig()).to_dict()),
            created_at=utc_now(),
        )
        with Session(self.engine) as session:
            session.add(row)
            try:
                session.commit()
            except IntegrityError as error:
                raise ValueError(f"Agent name already exists: {name}") from error
            session.refresh(row)
            return _to_agent_view(row)

    def get_agent(self, agent_id: str) -> AgentView | None:
        with Session(self.engine) as session:
            row = session.get(Agent, agent_id)
            return _to_agent_view(row) if row is not None else None

    def list_agents(self) -> list[AgentView]:
        with Session(self.engine) as session:
            rows = session.exec(select(Agent).order_by(col(Agent.created_at).asc())).all()
        return [_to_agent_view(row) for row in rows]

    def create_job(self, payload: JobCreate) -> JobView:
        """Persist a SCHEDULED job for an existing agent."""

        now = utc_now()
        job_id = payload.job_id or str(uuid4())
        with Session(self.engine) as session:
            if session.get(Agent, payload.agent_id) is None:
                raise ValueError(f"Agent not found: {payload.agent_id}")
            row = Job(
                job_id=job_id,
                agent_id=payload.agent_id,
                status=JobStatus.SCHEDULED.value,
                priority=payload.priority,
                payload_json=dump_json(payload.to_payload()) or "{}",
                attempt=0,
                max_attempts=payload.max_attempts,
                timeout_seconds=payload.timeout_seconds,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="scheduled",
                status_from=None,
                status_to=JobStatus.SCHEDULED,
                details={
                    "agent_id": payload.agent_id,
                    "priority": payload.priority,
                    "max_attempts": payload.max_attempts,
                    "timeout_seconds": payload.timeout_seconds,
                },
            )
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def get_job(self, job_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.get(Job, job_id)
            return _to_job_view(row) if row is not None else None

    def require_job(self, job_id: str) -> JobView:
        job = self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        return job

    def list_jobs(self, *, status: JobStatus | None = None, limit: int = 50) -> list[JobView]:
        """List recent jobs, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = select(Job).order_by(col(Job.created_at).desc()).limit(limit)
            if status is not None:
                statement = statement.where(Job.status == status.value)
            rows = session.exec(statement).all()
        return [_to_job_view(row) for row in rows]

    def get_job_details(self, job_id: str) -> JobDetails | None:
        """Return the job with its event stream."""

        with Session(self.engine) as session:
            row = session.get(Job, job_id)
            if row is None:
                return None
            event_rows = session.exec(
                select(JobEvent)
                .where(JobEvent.job_id == job_id)
                .order_by(col(JobEvent.created_at).asc(), col(JobEvent.id).asc()),
            ).all()
            job = _to_job_view(row)

        events = [
            JobEventView(
                event_id=event.id or 0,
                job_id=event.job_id,
                event_type=event.event_type,
                status_from=JobStatus(event.status_from) if event.status_from else None,
                status_to=JobStatus(event.status_to) if event.status_to else None,
                created_at=to_utc_aware_datetime(event.created_at),
                details=load_json(event.details_json) or {},
            )
            for event in event_rows
        ]
        return JobDetails(job=job, events=events)

    def transition(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        source: JobStatus,
        target: JobStatus,
        event_type: str,
        details: dict[str, Any] | None = None,
        **values: Any,
    ) -> bool:
        """Move `job_id` from `source` to `target`, writing `values` with it.

        Raises `InvalidJobTransitionError` for a transition outside the
        lifecycle graph. Returns ``False`` when the row was not in `source`.
        """

        if not is_transition_allowed(source, target):
            raise InvalidJobTransitionError(
                f"Job {job_id}: transition {source.value} -> {target.value} is not allowed",
            )
        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.job_id) == job_id,
                    col(Job.status) == source.value,
                )
                .values(
                    status=target.value,
                    updated_at=to_db_datetime(now),
                    **values,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type=event_type,
                status_from=source,
                status_to=target,
                details=details or {},
            )
            session.commit()
            return True

    def mark_running(self, job_id: str, *, source: JobStatus = JobStatus.SCHEDULED) -> bool:
        """Start a new attempt: bump `attempt`, stamp start and heartbeat."""

        now = to_db_datetime(utc_now())
        return self.transition(
            job_id=job_id,
            source=source,
            target=JobStatus.RUNNING,
            event_type="running",
            attempt=col(Job.attempt) + 1,
            started_at=now,
            heartbeat_at=now,
            completed_at=None,
        )

    def complete(self, job_id: str, *, result: dict[str, Any]) -> bool:
        now = to_db_datetime(utc_now())
        return self.transition(
            job_id=job_id,
            source=JobStatus.RUNNING,
            target=JobStatus.COMPLETED,
            event_type="completed",
            details={"summary": str(result.get("summary", ""))[:200]},
            result_json=dump_json(result),
            error_json=None,
            completed_at=now,
            heartbeat_at=now,
        )

    def fail(
        self,
        job_id: str,
        *,
        error: dict[str, Any],
        source: JobStatus = JobStatus.RUNNING,
        result: dict[str, Any] | None = None,
    ) -> bool:
        return self.transition(
            job_id=job_id,
            source=source,
            target=JobStatus.FAILED,
            event_type="failed",
            details=error,
            error_json=dump_json(error),
            result_json=dump_json(result),
            completed_at=to_db_datetime(utc_now()),
        )

    def mark_timed_out(
        self,
        job_id: str,
        *,
        error: dict[str, Any],
        result: dict[str, Any] | None = None,
    ) -> bool:
        return self.transition(
            job_id=job_id,
            source=JobStatus.RUNNING,
            target=JobStatus.TIMED_OUT,
            event_type="timed_out",
            details=error,
            error_json=dump_json(error),
            result_json=dump_json(result),
            completed_at=to_db_datetime(utc_now()),
        )

    def schedule_retry(
        self,
        job_id: str,
        *,
        error: dict[str, Any],
        run_at: datetime,
        source: JobStatus = JobStatus.RUNNING,
    ) -> bool:
        """Park a failed attempt in RETRYING until `run_at`.

        From SCHEDULED the attempt never reached RUNNING, so it is counted here.
        """

        values: dict[str, Any] = {}
        if source is JobStatus.SCHEDULED:
            values["attempt"] = col(Job.attempt) + 1
        return self.transition(
            job_id=job_id,
            source=source,
            target=JobStatus.RETRYING,
            event_type="retry_scheduled",
            details={**error, "run_at": to_utc_aware_datetime(run_at).isoformat()},
            error_json=dump_json(error),
            heartbeat_at=None,
            **values,
        )

    def reschedule(self, job_id: str) -> bool:
        """Release a RETRYING job back to SCHEDULED once its backoff elapsed."""

        return self.transition(
            job_id=job_id,
            source=JobStatus.RETRYING,
            target=JobStatus.SCHEDULED,
            event_type="rescheduled",
        )

    def dead_letter(
        self,
        job_id: str,
        *,
        error: dict[str, Any],
        source: JobStatus = JobStatus.RUNNING,
    ) -> bool:
        values: dict[str, Any] = {}
        if source is JobStatus.SCHEDULED:
            values["attempt"] = col(Job.attempt) + 1
        return self.transition(
            job_id=job_id,
            source=source,
            target=JobStatus.DEAD_LETTER,
            event_type="dead_lettered",
            details=error,
            error_json=dump_json(error),
            completed_at=to_db_datetime(utc_now()),
            **values,
        )

    def enter_approval(self, job_id: str, *, expires_at: datetime) -> bool:
        return self.transition(
            job_id=job_id,
            source=JobStatus.RUNNING,
            target=JobStatus.WAITING_FOR_APPROVAL,
            event_type="approval_requested",
            details={"approval_expires_at": to_utc_aware_datetime(expires_at).isoformat()},
            approval_expires_at=to_db_datetime(expires_at),
            heartbeat_at=None,
        )

    def apply_approval_decision(
        self,
        job_id: str,
        *,
        approved: bool,
        decided_by: str | None = None,
        now: datetime | None = None,
    ) -> JobStatus:
        """Resolve a pending approval and return the status the job moved to.

        An approval that arrives after `approval_expires_at` expires the job.
        """

        job = self.require_job(job_id)
        if job.status is not JobStatus.WAITING_FOR_APPROVAL:
            raise InvalidJobTransitionError(
                f"Job {job_id} is {job.status.value}, not waiting for approval",
            )
        now = now or utc_now()
        expired = job.approval_expires_at is not None and job.approval_expires_at <= now
        if approved and not expired:
            changed = self.transition(
                job_id=job_id,
                source=JobStatus.WAITING_FOR_APPROVAL,
                target=JobStatus.RUNNING,
                event_type="approved",
                details={"decided_by": decided_by},
                approved_at=to_db_datetime(now),
                heartbeat_at=to_db_datetime(now),
            )
            target = JobStatus.RUNNING
        else:
            reason = "approval_expired" if expired else "approval_rejected"
            changed = self.fail(
                job_id,
                source=JobStatus.WAITING_FOR_APPROVAL,
                error={
                    "classification": "permanent",
                    "reason_code": reason,
                    "message": f"Approval {'expired' if expired else 'rejected'}",
                    "decided_by": decided_by,
                },
            )
            target = JobStatus.FAILED
        if not changed:
            raise InvalidJobTransitionError(
                f"Job {job_id} changed concurrently while applying the approval decision",
            )
        return target

    def expire_approvals(self, *, now: datetime | None = None) -> list[str]:
        """Fail every waiting job whose approval window has closed."""

        now = now or utc_now()
        with Session(self.engine) as session:
            rows = session.exec(
                select(Job).where(
                    Job.status == JobStatus.WAITING_FOR_APPROVAL.value,
                    col(Job.approval_expires_at) <= to_db_datetime(now),
                ),
            ).all()
            candidates = [row.job_id for row in rows]
        return [
            job_id
            for job_id in candidates
            if self.fail(
                job_id,
                source=JobStatus.WAITING_FOR_APPROVAL,
                error={
                    "classification": "permanent",
                    "reason_code": "approval_expired",
                    "message": "Approval expired",
                },
            )
        ]

    def touch_heartbeat(self, job_id: str) -> bool:
        """Refresh `heartbeat_at` of a RUNNING job."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.job_id) == job_id,
                    col(Job.status) == JobStatus.RUNNING.value,
                )
                .values(heartbeat_at=now, updated_at=now),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def reap_zombie_jobs(
        self,
        *,
        threshold_seconds: float,
        now: datetime | None = None,
    ) -> list[str]:
        """Fail RUNNING jobs whose heartbeat is older than `threshold_seconds`."""

        now = now or utc_now()
        cutoff = to_db_datetime(now - timedelta(seconds=threshold_seconds))
        with Session(self.engine) as session:
            rows = session.exec(
                select(Job).where(
                    Job.status == JobStatus.RUNNING.value,
                    col(Job.heartbeat_at) < cutoff,
                ),
            ).all()
            candidates = [row.job_id for row in rows]
        return [
            job_id
            for job_id in candidates
            if self.fail(
                job_id,
                error={
                    "classification": "transient",
                    "reason_code": "zombie",
                    "message": f"No heartbeat for more than {threshold_seconds:g}s",
                },
            )
        ]

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        event_type: str,
        status_from: JobStatus | None,
        status_to: JobStatus | None,
        details: dict[str, Any],
    ) -> None:
        session.add(
            JobEvent(
                job_id=job_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=dump_json(details) if details else None,
                created_at=utc_now(),
            ),
        )


def _to_agent_view(row: Agent) -> AgentView:
    return AgentView(
        agent_id=row.agent_id,
        name=row.name,
        config=AgentConfig.from_dict(load_json(row.config_json)),
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_job_view(row: Job) -> JobView:
    return JobView(
        job_id=row.job_id,
        agent_id=row.agent_id,
        status=JobStatus(row.status),
        priority=row.priority,
        payload=load_json(row.payload_json) or {},
        result=load_json(row.result_json),
        error=load_json(row.error_json),
        attempt=row.attempt,
        max_attempts=row.max_attempts,
        timeout_seconds=row.timeout_seconds,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        started_at=optional_utc(row.started_at),
        completed_at=optional_utc(row.completed_at),
        heartbeat_at=optional_utc(row.heartbeat_at),
        approval_expires_at=optional_utc(row.approval_expires_at),
        approved_at=optional_utc(row.approved_at),
    )
