"""Channel-backed execution handle shared by every backend variant.

A backend supplies a producer coroutine that emits events through an
``emit`` callback and returns the terminal `ExecutionResult`. The handle owns
the bounded event channel, the settle-once result future and cancellation:

* the producer starts lazily on the first ``events()`` or ``result()`` call;
* ``result()`` resolves exactly once, first settlement wins;
* ``cancel()`` settles the result to ``cancelled`` when nothing settled yet,
  stops the producer and closes the read side of the channel;
* an exception escaping the producer is captured into a failed result.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable

from agent_dispatch.orchestrator.backend.base import (
    CompleteEvent,
    ExecutionResult,
    ExecutionStatus,
    OutputEvent,
    failed_result,
)
from agent_dispatch.orchestrator.failure_classifier import classify_exception
from agent_dispatch.orchestrator.models import ErrorClassification

logger = logging.getLogger(__name__)

DEFAULT_MAX_BUFFERED_EVENTS = 256
DEFAULT_CANCEL_GRACE_SECONDS = 5.0

Emit = Callable[[OutputEvent], Awaitable[None]]
Producer = Callable[[Emit], Awaitable[ExecutionResult]]
CancelHook = Callable[[str], Awaitable[None]]

_END = object()


class ChannelExecutionHandle:
    """Live handle over a producer coroutine and a bounded event channel."""

    def __init__(
        self,
        *,
        task_id: str,
        producer: Producer,
        on_cancel: CancelHook | None = None,
        max_buffered_events: int = DEFAULT_MAX_BUFFERED_EVENTS,
        cancel_grace_seconds: float = DEFAULT_CANCEL_GRACE_SECONDS,
    ) -> None:
        self._task_id = task_id
        self._producer = producer
        self._on_cancel = on_cancel
        self._cancel_grace_seconds = cancel_grace_seconds
        self._queue: asyncio.Queue[object] = asyncio.Queue(maxsize=max_buffered_events)
        self._result: asyncio.Future[ExecutionResult] = (
            asyncio.get_running_loop().create_future()
        )
        self._producer_task: asyncio.Task[None] | None = None
        self._events_claimed = False
        self._consumer_attached = False
        self._cancelled = False
        self._cancel_reason: str | None = None
        self._started_monotonic = time.monotonic()
        self._settle_callbacks: list[Callable[[ChannelExecutionHandle], None]] = []

    @property
    def task_id(self) -> str:
        return self._task_id

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def settled(self) -> bool:
        return self._result.done()

    def add_settle_callback(self, callback: Callable[[ChannelExecutionHandle], None]) -> None:
        """Run `callback` once the result settles (immediately if already settled)."""

        if self._result.done():
            callback(self)
            return
        self._settle_callbacks.append(callback)

    async def events(self) -> AsyncIterator[OutputEvent]:
        if self._events_claimed:
            raise RuntimeError(f"Event stream for task {self._task_id} was already consumed")
        self._events_claimed = True
        self._consumer_attached = True
        self._ensure_started()
        try:
            while not self._cancelled:
                item = await self._queue.get()
                if item is _END or self._cancelled:
                    return
                yield item  # type: ignore[misc]
                if isinstance(item, CompleteEvent):
                    return
        finally:
            self._consumer_attached = False

    async def result(self) -> ExecutionResult:
        self._ensure_started()
        return await asyncio.shield(self._result)

    async def cancel(self, reason: str) -> None:
        if self._cancelled or self._result.done():
            return
        self._cancelled = True
        self._cancel_reason = reason
        logger.debug("Cancelling task %s: %s", self._task_id, reason)

        self._settle(
            failed_result(
                task_id=self._task_id,
                message=f"Cancelled: {reason}",
                classification=(
                    ErrorClassification.TIMEOUT
                    if reason == "timeout"
                    else ErrorClassification.PERMANENT
                ),
                status=ExecutionStatus.CANCELLED,
                code="cancelled",
                duration_ms=self._elapsed_ms(),
            ),
        )
        self._close_read_side()

        if self._on_cancel is not None:
            try:
                await self._on_cancel(reason)
            except Exception:
                logger.warning("Cancel hook failed for task %s", self._task_id, exc_info=True)

        task = self._producer_task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait({task}, timeout=self._cancel_grace_seconds)

    def _ensure_started(self) -> None:
        if self._producer_task is not None or self._cancelled:
            return
        self._started_monotonic = time.monotonic()
        self._producer_task = asyncio.get_running_loop().create_task(
            self._run_producer(),
            name=f"execution-{self._task_id}",
        )

    async def _run_producer(self) -> None:
        try:
            result = await self._producer(self._emit)
        except asyncio.CancelledError:
            if not self._result.done():
                self._settle(
                    failed_result(
                        task_id=self._task_id,
                        message="Execution task was cancelled",
                        classification=ErrorClassification.PERMANENT,
                        status=ExecutionStatus.CANCELLED,
                        code="cancelled",
                        duration_ms=self._elapsed_ms(),
                    ),
                )
                self._close_read_side()
            raise
        except Exception as error:  # noqa: BLE001
            classified = classify_exception(error)
            logger.warning(
                "Backend producer for task %s raised %s (%s)",
                self._task_id,
                type(error).__name__,
                classified.classification.value,
            )
            result = failed_result(
                task_id=self._task_id,
                message=f"{type(error).__name__}: {error}",
                classification=classified.classification,
                code=classified.reason_code,
                duration_ms=self._elapsed_ms(),
            )

        if self._result.done():
            return
        if not result.duration_ms:
            result.duration_ms = self._elapsed_ms()
        self._settle(result)
        await self._offer(CompleteEvent(result=result))
        await self._offer(_END)

    async def _emit(self, event: OutputEvent) -> None:
        if self._cancelled:
            return
        await self._offer(event)

    async def _offer(self, item: object) -> None:
        if self._consumer_attached and not self._cancelled:
            await self._queue.put(item)
            return
        # Nobody is reading: keep the newest events instead of blocking the producer.
        if self._queue.full():
            with contextlib.suppress(asyncio.QueueEmpty):
                self._queue.get_nowait()
        self._queue.put_nowait(item)

    def _close_read_side(self) -> None:
        if self._queue.full():
            with contextlib.suppress(asyncio.QueueEmpty):
                self._queue.get_nowait()
        self._queue.put_nowait(_END)

    def _settle(self, result: ExecutionResult) -> None:
        if self._result.done():
            return
        self._result.set_result(result)
        callbacks, self._settle_callbacks = self._settle_callbacks, []
        for callback in callbacks:
            callback(self)

    def _elapsed_ms(self) -> int:
        return int((time.monotonic() - self._started_monotonic) * 1000)
