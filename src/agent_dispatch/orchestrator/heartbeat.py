"""Periodic liveness stamps for running jobs."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from types import TracebackType

from agent_dispatch.orchestrator.repository import JobRepository

logger = logging.getLogger(__name__)


class JobHeartbeat:
    """Refresh `heartbeat_at` of one job every `interval_seconds` while entered."""

    def __init__(
        self,
        repository: JobRepository,
        job_id: str,
        *,
        interval_seconds: float,
    ) -> None:
        self.repository = repository
        self.job_id = job_id
        self.interval_seconds = interval_seconds
        self.beats = 0
        self._task: asyncio.Task[None] | None = None

    async def __aenter__(self) -> JobHeartbeat:
        if self.interval_seconds > 0:
            self._task = asyncio.create_task(self._run(), name=f"heartbeat-{self.job_id}")
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                # Off the event loop; a locked database may block for the busy timeout.
                touched = await asyncio.to_thread(self.repository.touch_heartbeat, self.job_id)
            except Exception:  # noqa: BLE001
                logger.warning("Heartbeat write failed for job %s", self.job_id, exc_info=True)
                continue
            if not touched:
                logger.debug("Job %s is no longer running; heartbeat stops", self.job_id)
                return
            self.beats += 1
