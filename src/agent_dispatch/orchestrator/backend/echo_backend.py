"""Stub backends for smoke runs, failover drills and tests."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any

from agent_dispatch.orchestrator.backend.base import (
    ALL_GOAL_TYPES,
    BackendCapabilities,
    BackendHealthReport,
    ExecutionResult,
    ExecutionStatus,
    ExecutionTask,
    HealthStatus,
    OutputEvent,
    TextEvent,
    failed_result,
)
from agent_dispatch.orchestrator.backend.handle import ChannelExecutionHandle, Emit
from agent_dispatch.orchestrator.errors import BackendNotStartedError
from agent_dispatch.orchestrator.models import ErrorClassification
from agent_dispatch.storage.common import utc_now

logger = logging.getLogger(__name__)


class EchoBackend:
    """Echo the prompt back after an optional delay, failing at a configured rate.

    Config keys accepted by `start()`: ``latency_seconds``, ``failure_rate``
    (clamped to 0..1) and ``failure_classification``.
    """

    def __init__(self, backend_id: str = "echo", *, rng: random.Random | None = None) -> None:
        self._backend_id = backend_id
        self._rng = rng or random.Random()  # noqa: S311
        self.latency_seconds = 0.0
        self.failure_rate = 0.0
        self.failure_classification = ErrorClassification.TRANSIENT
        self._started = False

    @property
    def backend_id(self) -> str:
        return self._backend_id

    async def start(self, config: dict[str, Any]) -> None:
        self.configure(
            latency_seconds=config.get("latency_seconds"),
            failure_rate=config.get("failure_rate"),
            failure_classification=config.get("failure_classification"),
        )
        self._started = True

    def configure(
        self,
        *,
        latency_seconds: float | None = None,
        failure_rate: float | None = None,
        failure_classification: ErrorClassification | str | None = None,
    ) -> None:
        """Adjust failure behavior at runtime."""

        if latency_seconds is not None:
            self.latency_seconds = max(0.0, float(latency_seconds))
        if failure_rate is not None:
            self.failure_rate = max(0.0, min(1.0, float(failure_rate)))
        if failure_classification is not None:
            self.failure_classification = ErrorClassification(failure_classification)

    async def stop(self) -> None:
        self._started = False

    async def health_check(self) -> BackendHealthReport:
        return BackendHealthReport(
            backend_id=self._backend_id,
            status=HealthStatus.HEALTHY if self._started else HealthStatus.UNHEALTHY,
            reason=None if self._started else "Backend not started",
            checked_at=utc_now(),
            details={
                "latency_seconds": self.latency_seconds,
                "failure_rate": self.failure_rate,
            },
        )

    async def execute_task(self, task: ExecutionTask) -> ChannelExecutionHandle:
        if not self._started:
            raise BackendNotStartedError(f"Backend {self._backend_id} is not started")
        should_fail = self._rng.random() < self.failure_rate
        return ChannelExecutionHandle(
            task_id=task.id,
            producer=lambda emit: self._run(task, should_fail=should_fail, emit=emit),
        )

    def get_capabilities(self) -> BackendCapabilities:
        return BackendCapabilities(
            supports_streaming=False,
            supports_file_edit=False,
            supports_shell_execution=False,
            reports_token_usage=False,
            supports_cancellation=True,
            supported_goal_types=ALL_GOAL_TYPES,
            max_context_tokens=100_000,
        )

    async def _run(self, task: ExecutionTask, *, should_fail: bool, emit: Emit) -> ExecutionResult:
        if self.latency_seconds > 0:
            await asyncio.sleep(self.latency_seconds)
        if should_fail:
            result = failed_result(
                task_id=task.id,
                message="Echo backend simulated failure",
                classification=self.failure_classification,
                code="simulated_failure",
                exit_code=1,
            )
            result.stderr = "Simulated failure"
            return result

        prompt = task.instruction.prompt
        await emit(TextEvent(content=prompt))
        return ExecutionResult(
            task_id=task.id,
            status=ExecutionStatus.COMPLETED,
            exit_code=0,
            summary=prompt,
            stdout=prompt,
        )


@dataclass(slots=True)
class ScriptedRun:
    """One scripted execution: raise from `execute_task`, or replay events then a result."""

    events: list[OutputEvent] = field(default_factory=list)
    result: ExecutionResult | None = None
    raises: Exception | None = None
    delay_seconds: float = 0.0


class ScriptedBackend:
    """Replay scripted runs in order; the last run repeats once the script is exhausted."""

    def __init__(
        self,
        runs: list[ScriptedRun] | None = None,
        *,
        backend_id: str = "scripted",
        health: HealthStatus = HealthStatus.HEALTHY,
    ) -> None:
        self._backend_id = backend_id
        self._runs = list(runs or [ScriptedRun()])
        self.health = health
        self.started = False
        self.stopped = False
        self.executed: list[ExecutionTask] = []
        self.active = 0
        self.max_active = 0

    @property
    def backend_id(self) -> str:
        return self._backend_id

    async def start(self, config: dict[str, Any]) -> None:
        self.started = True

    async def stop(self) -> None:
        self.started = False
        self.stopped = True

    async def health_check(self) -> BackendHealthReport:
        return BackendHealthReport(
            backend_id=self._backend_id,
            status=self.health,
            checked_at=utc_now(),
        )

    async def execute_task(self, task: ExecutionTask) -> ChannelExecutionHandle:
        if not self.started:
            raise BackendNotStartedError(f"Backend {self._backend_id} is not started")
        run = self._runs.pop(0) if len(self._runs) > 1 else self._runs[0]
        self.executed.append(task)
        if run.raises is not None:
            raise run.raises
        return ChannelExecutionHandle(
            task_id=task.id,
            producer=lambda emit: self._replay(task, run, emit),
        )

    def get_capabilities(self) -> BackendCapabilities:
        return BackendCapabilities(
            supports_streaming=True,
            supports_file_edit=False,
            supports_shell_execution=False,
            reports_token_usage=True,
            supports_cancellation=True,
            supported_goal_types=ALL_GOAL_TYPES,
            max_context_tokens=100_000,
        )

    async def _replay(self, task: ExecutionTask, run: ScriptedRun, emit: Emit) -> ExecutionResult:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        started = time.monotonic()
        try:
            for event in run.events:
                await emit(event)
            if run.delay_seconds > 0:
                await asyncio.sleep(run.delay_seconds)
        finally:
            self.active -= 1
        if run.result is None:
            return ExecutionResult(
                task_id=task.id,
                status=ExecutionStatus.COMPLETED,
                exit_code=0,
                summary=task.instruction.prompt,
                stdout=task.instruction.prompt,
                duration_ms=int((time.monotonic() - started) * 1000),
            )
        return dataclasses.replace(run.result, task_id=task.id)
