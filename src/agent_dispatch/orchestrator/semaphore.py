"""Per-backend work-in-progress limiter with FIFO waiters."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from types import TracebackType

from agent_dispatch.orchestrator.errors import SemaphoreTimeoutError

logger = logging.getLogger(__name__)


class Permit:
    """One granted execution slot; release exactly once."""

    def __init__(self, semaphore: BackendSemaphore) -> None:
        self._semaphore = semaphore
        self._released = False

    @property
    def backend_id(self) -> str:
        return self._semaphore.backend_id

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        if self._released:
            raise RuntimeError(f"Permit for backend {self.backend_id} was already released")
        self._released = True
        self._semaphore._release_slot()  # noqa: SLF001

    async def __aenter__(self) -> Permit:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        if not self._released:
            self.release()


class BackendSemaphore:
    """Counting semaphore granting slots in arrival order.

    A waiter that times out is removed from the queue and fails with
    `SemaphoreTimeoutError`; a waiter cancelled by its caller raises
    `asyncio.CancelledError`. On release the slot transfers directly to the
    oldest live waiter, so the active count never exceeds the cap.
    """

    def __init__(self, backend_id: str, max_concurrent: int) -> None:
        if max_concurrent <= 0:
            raise ValueError(f"max_concurrent must be positive, got {max_concurrent}")
        self.backend_id = backend_id
        self.max_concurrent = max_concurrent
        self._active = 0
        self._waiters: deque[asyncio.Future[None]] = deque()

    @property
    def active(self) -> int:
        return self._active

    @property
    def waiting(self) -> int:
        return sum(1 for waiter in self._waiters if not waiter.done())

    async def acquire(self, timeout_seconds: float | None = None) -> Permit:
        """Wait for a slot; `None` waits indefinitely."""

        if self._active < self.max_concurrent and not self.waiting:
            self._active += 1
            return Permit(self)

        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            async with asyncio.timeout(timeout_seconds):
                await waiter
        except TimeoutError as error:
            self._abandon(waiter)
            logger.debug(
                "Permit wait on %s timed out after %.2fs",
                self.backend_id,
                timeout_seconds or 0.0,
            )
            raise SemaphoreTimeoutError(self.backend_id, timeout_seconds or 0.0) from error
        except asyncio.CancelledError:
            self._abandon(waiter)
            raise
        return Permit(self)

    def _abandon(self, waiter: asyncio.Future[None]) -> None:
        granted = waiter.done() and not waiter.cancelled()
        if not waiter.done():
            waiter.cancel()
        try:
            self._waiters.remove(waiter)
        except ValueError:
            pass
        if granted:
            # The slot was handed over while the waiter was giving up.
            self._release_slot()

    def _release_slot(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
        if self._active <= 0:
            raise RuntimeError(f"Semaphore for backend {self.backend_id} released too often")
        self._active -= 1
