"""Queue worker driving jobs through the execution lifecycle."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
import signal
from collections.abc import Iterator
from dataclasses import dataclass, fields
from datetime import timedelta
from typing import Any
from uuid import uuid4

from agent_dispatch.config import RetrySettings, WorkerSettings
from agent_dispatch.orchestrator.backend.base import (
    DEFAULT_MAX_TURNS,
    ExecutionHandle,
    ExecutionResult,
    ExecutionStatus,
    ExecutionTask,
    TaskConstraints,
    TaskContext,
    TaskInstruction,
    event_to_dict,
    failed_result,
)
from agent_dispatch.orchestrator.broadcaster import (
    AGENT_COMPLETE,
    AGENT_OUTPUT,
    LoggingBroadcaster,
    StreamBroadcaster,
)
from agent_dispatch.orchestrator.errors import (
    BackendNotFoundError,
    NoProviderAvailableError,
    SemaphoreTimeoutError,
)
from agent_dispatch.orchestrator.failure_classifier import classify_exception
from agent_dispatch.orchestrator.heartbeat import JobHeartbeat
from agent_dispatch.orchestrator.models import (
    TERMINAL_STATUSES,
    AgentView,
    ErrorClassification,
    JobStatus,
    JobView,
)
from agent_dispatch.orchestrator.queue import AGENT_EXECUTE, QueueEntry, SqliteJobQueue
from agent_dispatch.orchestrator.registry import BackendRegistry
from agent_dispatch.orchestrator.repository import JobRepository
from agent_dispatch.orchestrator.retry import compute_retry_delay
from agent_dispatch.orchestrator.routing import RouteResult
from agent_dispatch.storage.common import utc_now

logger = logging.getLogger(__name__)

EVENT_DRAIN_SECONDS = 5.0


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    timeouts: int = 0
    dead_lettered: int = 0
    waiting_approval: int = 0
    idle_polls: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        for item in fields(self):
            setattr(self, item.name, getattr(self, item.name) + getattr(other, item.name))


def job_queue_key(job_id: str) -> str:
    return f"job:{job_id}"


class OrchestratorWorker:
    """Claims queued jobs and runs each attempt against a routed backend."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        queue: SqliteJobQueue,
        registry: BackendRegistry,
        broadcaster: StreamBroadcaster | None = None,
        settings: WorkerSettings | None = None,
        retry_settings: RetrySettings | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.repository = repository
        self.queue = queue
        self.registry = registry
        self.broadcaster = broadcaster or LoggingBroadcaster()
        self.settings = settings or WorkerSettings()
        self.retry_settings = retry_settings or RetrySettings()
        self._random = rng or random.Random()  # noqa: S311
        self._stop_event = asyncio.Event()

    @property
    def worker_id(self) -> str:
        return self.settings.worker_id

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def request_stop(self) -> None:
        if not self._stop_event.is_set():
            logger.info("Worker %s stop requested", self.worker_id)
        self._stop_event.set()

    async def run_once(self) -> WorkerRunSummary:
        """Process at most one due queue entry."""

        entry = None if self.stop_requested else self._claim()
        if entry is None:
            return WorkerRunSummary(idle_polls=1)
        return await self._process_entry(entry)

    async def run_loop(
        self,
        *,
        concurrency: int | None = None,
        max_jobs: int | None = None,
        max_idle_polls: int | None = None,
    ) -> WorkerRunSummary:
        """Keep up to `concurrency` jobs in flight until idle, stopped or `max_jobs` reached."""

        concurrency = max(1, concurrency or self.settings.concurrency)
        idle_limit = max(1, max_idle_polls or self.settings.max_idle_polls)
        aggregate = WorkerRunSummary()
        in_flight: set[asyncio.Task[WorkerRunSummary]] = set()
        started = 0
        consecutive_idle = 0

        with self._signal_handlers():
            try:
                while not self.stop_requested:
                    if max_jobs is not None and started >= max_jobs:
                        break
                    if len(in_flight) >= concurrency:
                        in_flight = await self._harvest(in_flight, aggregate)
                        continue

                    entry = self._claim()
                    if entry is None:
                        if in_flight:
                            in_flight = await self._harvest(
                                in_flight,
                                aggregate,
                                timeout=self.settings.poll_interval_seconds,
                            )
                            continue
                        consecutive_idle += 1
                        aggregate.idle_polls += 1
                        if consecutive_idle >= idle_limit:
                            break
                        await self._sleep_with_stop(self.settings.poll_interval_seconds)
                        continue

                    consecutive_idle = 0
                    started += 1
                    in_flight.add(
                        asyncio.create_task(
                            self._process_entry(entry),
                            name=f"job-{entry.payload.get('job_id')}",
                        ),
                    )
            finally:
                for summary in await asyncio.gather(*in_flight):
                    aggregate.add(summary)
        return aggregate

    async def execute_job(self, job_id: str) -> JobStatus | None:
        """Run one attempt of `job_id`; returns the status the job ended in."""

        job = self.repository.get_job(job_id)
        if job is None:
            logger.warning("Queued job %s no longer exists", job_id)
            return None
        if job.status is JobStatus.RETRYING:
            self.repository.reschedule(job_id)
            job = self.repository.require_job(job_id)

        resume = job.status is JobStatus.RUNNING and job.approved_at is not None
        if job.status is not JobStatus.SCHEDULED and not resume:
            logger.info("Job %s is %s; nothing to execute", job_id, job.status.value)
            return job.status

        agent = self.repository.get_agent(job.agent_id)
        if agent is None:
            return self._settle_failed(
                job,
                source=job.status,
                error={
                    "classification": ErrorClassification.PERMANENT.value,
                    "reason_code": "agent_not_found",
                    "message": f"Agent not found: {job.agent_id}",
                },
            )

        if not resume and agent.config.requires_approval and job.approved_at is None:
            return self._enter_approval(job, agent)

        task = self._build_task(job, agent)
        return await self._run_attempt(job, agent, task, resume=resume)

    async def _process_entry(self, entry: QueueEntry) -> WorkerRunSummary:
        summary = WorkerRunSummary(processed=1)
        try:
            if entry.identifier != AGENT_EXECUTE or "job_id" not in entry.payload:
                logger.warning("Dropping unsupported queue entry %s", entry.identifier)
                return summary
            status = await self.execute_job(str(entry.payload["job_id"]))
        finally:
            self.queue.complete(entry.queue_id)

        if status is JobStatus.COMPLETED:
            summary.succeeded = 1
        elif status is JobStatus.FAILED:
            summary.failed = 1
        elif status is JobStatus.TIMED_OUT:
            summary.timeouts = 1
        elif status is JobStatus.DEAD_LETTER:
            summary.dead_lettered = 1
        elif status is JobStatus.RETRYING:
            summary.retried = 1
        elif status is JobStatus.WAITING_FOR_APPROVAL:
            summary.waiting_approval = 1
        return summary

    def _claim(self) -> QueueEntry | None:
        self._recover_stale_jobs()
        return self.queue.claim_due(worker_id=self.worker_id)

    def _recover_stale_jobs(self) -> None:
        reaped = self.repository.reap_zombie_jobs(
            threshold_seconds=self.settings.zombie_threshold_seconds,
        )
        for job_id in reaped:
            logger.warning("Reaped zombie job %s", job_id)
        for job_id in self.repository.expire_approvals():
            logger.info("Approval expired for job %s", job_id)

    def _enter_approval(self, job: JobView, agent: AgentView) -> JobStatus:
        if not self.repository.mark_running(job.job_id):
            return self._current_status(job.job_id)
        timeout_seconds = (
            agent.config.approval_timeout_seconds or self.settings.approval_timeout_seconds
        )
        expires_at = utc_now() + timedelta(seconds=timeout_seconds)
        if not self.repository.enter_approval(job.job_id, expires_at=expires_at):
            return self._current_status(job.job_id)
        logger.info("Job %s waits for approval until %s", job.job_id, expires_at.isoformat())
        return JobStatus.WAITING_FOR_APPROVAL

    async def _run_attempt(
        self,
        job: JobView,
        agent: AgentView,
        task: ExecutionTask,
        *,
        resume: bool,
    ) -> JobStatus:
        source = JobStatus.RUNNING if resume else JobStatus.SCHEDULED
        try:
            route = self.registry.route_task(
                task,
                preferred_backend_id=agent.config.backend_id,
            )
        except (NoProviderAvailableError, BackendNotFoundError) as error:
            return self._handle_infra_failure(job, source=source, error=error, code="no_provider")

        # A HALF_OPEN slot taken by routing is freed by the recorded outcome
        # or, on every other exit including cancellation, by `release_route`.
        recorded = False
        try:
            try:
                permit = await self.registry.acquire_permit(
                    route.provider_id,
                    self.settings.acquire_timeout_seconds,
                )
            except SemaphoreTimeoutError as error:
                return self._handle_infra_failure(
                    job,
                    source=source,
                    error=error,
                    code="semaphore_timeout",
                )

            async with permit:
                if not resume and not self.repository.mark_running(job.job_id):
                    return self._current_status(job.job_id)
                job = self.repository.require_job(job.job_id)
                logger.info(
                    "Job %s attempt %d/%d on %s",
                    job.job_id,
                    job.attempt,
                    job.max_attempts,
                    route.provider_id,
                )
                async with JobHeartbeat(
                    self.repository,
                    job.job_id,
                    interval_seconds=self.settings.heartbeat_interval_seconds,
                ):
                    result, timed_out = await self._execute_on_backend(route, task, job)
            recorded = True
            return self._finalize(job, route, result, timed_out=timed_out)
        finally:
            if not recorded:
                self.registry.release_route(route)

    async def _execute_on_backend(
        self,
        route: RouteResult,
        task: ExecutionTask,
        job: JobView,
    ) -> tuple[ExecutionResult, bool]:
        try:
            handle = await route.backend.execute_task(task)
        except Exception as error:  # noqa: BLE001
            classified = classify_exception(error)
            logger.warning(
                "Backend %s rejected task %s: %s (%s)",
                route.provider_id,
                task.id,
                error,
                classified.classification.value,
            )
            return (
                failed_result(
                    task_id=task.id,
                    message=f"{type(error).__name__}: {error}",
                    classification=classified.classification,
                    code=classified.reason_code,
                ),
                False,
            )

        forwarder = asyncio.create_task(self._forward_events(handle, job))
        timed_out = False
        try:
            try:
                async with asyncio.timeout(job.timeout_seconds):
                    result = await handle.result()
            except TimeoutError:
                timed_out = True
                await handle.cancel("timeout")
                result = await handle.result()
        except asyncio.CancelledError:
            await handle.cancel("worker stopped")
            forwarder.cancel()
            raise
        done, _ = await asyncio.wait({forwarder}, timeout=EVENT_DRAIN_SECONDS)
        if not done:
            forwarder.cancel()
        return result, timed_out

    async def _forward_events(self, handle: ExecutionHandle, job: JobView) -> None:
        async for event in handle.events():
            self._broadcast(
                job.agent_id,
                AGENT_OUTPUT,
                {"job_id": job.job_id, "task_id": handle.task_id, "event": event_to_dict(event)},
            )

    def _finalize(
        self,
        job: JobView,
        route: RouteResult,
        result: ExecutionResult,
        *,
        timed_out: bool,
    ) -> JobStatus:
        provider_id = route.provider_id
        if timed_out:
            self.registry.record_outcome(
                provider_id,
                success=False,
                classification=ErrorClassification.TIMEOUT,
            )
            error = _error_payload(result, job, provider_id)
            error["message"] = f"Job exceeded its {job.timeout_seconds}s timeout"
            return self._settle(
                job,
                JobStatus.TIMED_OUT,
                self.repository.mark_timed_out(job.job_id, error=error, result=result.to_dict()),
                summary=error["message"],
            )

        if result.status is ExecutionStatus.COMPLETED:
            self.registry.record_outcome(provider_id, success=True)
            return self._settle(
                job,
                JobStatus.COMPLETED,
                self.repository.complete(job.job_id, result=result.to_dict()),
                summary=result.summary,
            )

        if result.status is ExecutionStatus.CANCELLED:
            classification = ErrorClassification.PERMANENT
        elif result.error is not None:
            classification = result.error.classification
        elif result.status is ExecutionStatus.TIMED_OUT:
            classification = ErrorClassification.TIMEOUT
        else:
            classification = ErrorClassification.TRANSIENT
        self.registry.record_outcome(provider_id, success=False, classification=classification)

        error = _error_payload(result, job, provider_id)
        error["classification"] = classification.value
        if not classification.retryable:
            return self._settle_failed(
                job,
                source=JobStatus.RUNNING,
                error=error,
                result=result.to_dict(),
            )
        return self._retry_or_dead_letter(job, source=JobStatus.RUNNING, error=error)

    def _handle_infra_failure(
        self,
        job: JobView,
        *,
        source: JobStatus,
        error: Exception,
        code: str,
    ) -> JobStatus:
        logger.warning("Job %s could not start an attempt: %s", job.job_id, error)
        payload: dict[str, Any] = {
            "classification": ErrorClassification.TRANSIENT.value,
            "reason_code": code,
            "message": str(error),
        }
        if isinstance(error, NoProviderAvailableError):
            payload["provider_states"] = error.provider_states
        return self._retry_or_dead_letter(job, source=source, error=payload)

    def _retry_or_dead_letter(
        self,
        job: JobView,
        *,
        source: JobStatus,
        error: dict[str, Any],
    ) -> JobStatus:
        attempts_used = job.attempt + (1 if source is JobStatus.SCHEDULED else 0)
        if attempts_used >= job.max_attempts:
            return self._settle(
                job,
                JobStatus.DEAD_LETTER,
                self.repository.dead_letter(job.job_id, source=source, error=error),
                summary=str(error.get("message", "")),
            )

        delay_seconds = compute_retry_delay(attempts_used, self.retry_settings, self._random)
        run_at = utc_now() + timedelta(seconds=delay_seconds)
        if not self.repository.schedule_retry(
            job.job_id,
            source=source,
            error=error,
            run_at=run_at,
        ):
            return self._current_status(job.job_id)
        self.queue.add_job(
            AGENT_EXECUTE,
            {"job_id": job.job_id},
            job_key=job_queue_key(job.job_id),
            run_at=run_at,
            max_attempts=1,
        )
        logger.warning(
            "Job %s attempt %d/%d failed (%s); retrying in %.1fs",
            job.job_id,
            attempts_used,
            job.max_attempts,
            error.get("classification"),
            delay_seconds,
        )
        return JobStatus.RETRYING

    def _settle_failed(
        self,
        job: JobView,
        *,
        source: JobStatus,
        error: dict[str, Any],
        result: dict[str, Any] | None = None,
    ) -> JobStatus:
        return self._settle(
            job,
            JobStatus.FAILED,
            self.repository.fail(job.job_id, source=source, error=error, result=result),
            summary=str(error.get("message", "")),
        )

    def _settle(self, job: JobView, status: JobStatus, written: bool, *, summary: str) -> JobStatus:
        if not written:
            current = self._current_status(job.job_id)
            logger.warning(
                "Job %s changed concurrently; wanted %s, found %s",
                job.job_id,
                status.value,
                current.value if current is not None else None,
            )
            return current
        logger.info("Job %s finalized as %s", job.job_id, status.value)
        if status in TERMINAL_STATUSES:
            self._broadcast(
                job.agent_id,
                AGENT_COMPLETE,
                {"job_id": job.job_id, "status": status.value, "summary": summary},
            )
        return status

    def _current_status(self, job_id: str) -> JobStatus:
        return self.repository.require_job(job_id).status

    def _broadcast(self, channel: str, event_type: str, payload: dict[str, Any]) -> None:
        try:
            self.broadcaster.broadcast(channel, event_type, payload)
        except Exception:  # noqa: BLE001
            logger.warning("Broadcast of %s to %s failed", event_type, channel, exc_info=True)

    def _build_task(self, job: JobView, agent: AgentView) -> ExecutionTask:
        payload = job.payload
        config = agent.config
        return ExecutionTask(
            id=str(uuid4()),
            job_id=job.job_id,
            agent_id=job.agent_id,
            instruction=TaskInstruction(
                prompt=str(payload.get("prompt", "")),
                goal_type=payload.get("goal_type") or "code_generate",
                target_files=list(payload.get("target_files") or []),
            ),
            context=TaskContext(
                workspace_path=payload.get("workspace_path") or ".",
                system_prompt=config.system_prompt or "",
                environment=dict(payload.get("environment") or {}),
            ),
            constraints=TaskConstraints(
                timeout_seconds=float(job.timeout_seconds),
                model=config.model or "",
                allowed_tools=list(config.allowed_tools),
                denied_tools=list(config.denied_tools),
                max_turns=config.max_turns or DEFAULT_MAX_TURNS,
                network_access=config.network_access,
                shell_access=config.shell_access,
            ),
        )

    async def _harvest(
        self,
        in_flight: set[asyncio.Task[WorkerRunSummary]],
        aggregate: WorkerRunSummary,
        *,
        timeout: float | None = None,
    ) -> set[asyncio.Task[WorkerRunSummary]]:
        done, pending = await asyncio.wait(
            in_flight,
            timeout=timeout,
            return_when=asyncio.FIRST_COMPLETED,
        )
        for task in done:
            aggregate.add(task.result())
        return set(pending)

    async def _sleep_with_stop(self, seconds: float) -> None:
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._stop_event.wait(), timeout=max(0.0, seconds))

    @contextlib.contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        loop = asyncio.get_running_loop()
        installed: list[signal.Signals] = []
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, self.request_stop)
            except (NotImplementedError, RuntimeError, ValueError):
                # Only the main thread of a Unix event loop can own signal handlers.
                continue
            installed.append(signum)
        try:
            yield
        finally:
            for signum in installed:
                loop.remove_signal_handler(signum)


def _error_payload(result: ExecutionResult, job: JobView, provider_id: str) -> dict[str, Any]:
    error = result.error
    return {
        "classification": (
            error.classification.value if error is not None else ErrorClassification.TRANSIENT.value
        ),
        "reason_code": (error.code if error is not None else None) or result.status.value,
        "message": error.message if error is not None else result.summary,
        "partial_execution": error.partial_execution if error is not None else False,
        "exit_code": result.exit_code,
        "backend_id": provider_id,
        "attempt": job.attempt,
    }
