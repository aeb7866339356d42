"""TTL-memoized backend health probes."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

from agent_dispatch.orchestrator.backend.base import BackendHealthReport, HealthStatus
from agent_dispatch.storage.common import utc_now

logger = logging.getLogger(__name__)

DEFAULT_HEALTH_TTL_SECONDS = 30.0
DEFAULT_HEALTH_TIMEOUT_SECONDS = 5.0


class CachedHealthCheck:
    """Serve the last health report until it is older than the TTL."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        backend_id: str,
        probe: Callable[[], Awaitable[BackendHealthReport]],
        ttl_seconds: float = DEFAULT_HEALTH_TTL_SECONDS,
        timeout_seconds: float = DEFAULT_HEALTH_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.backend_id = backend_id
        self._probe = probe
        self.ttl_seconds = ttl_seconds
        self.timeout_seconds = timeout_seconds
        self._clock = clock
        self._cached: BackendHealthReport | None = None
        self._cached_at: float | None = None

    async def get(self) -> BackendHealthReport:
        now = self._clock()
        if (
            self._cached is not None
            and self._cached_at is not None
            and now - self._cached_at < self.ttl_seconds
        ):
            return self._cached

        report = await self._run_probe()
        self._cached = report
        self._cached_at = self._clock()
        return report

    def invalidate(self) -> None:
        self._cached = None
        self._cached_at = None

    async def _run_probe(self) -> BackendHealthReport:
        started = time.monotonic()
        try:
            async with asyncio.timeout(self.timeout_seconds):
                return await self._probe()
        except TimeoutError:
            reason = f"health check exceeded {self.timeout_seconds:.1f}s"
        except Exception as error:  # noqa: BLE001
            reason = f"health check raised {type(error).__name__}: {error}"
        logger.warning("Health probe for %s failed: %s", self.backend_id, reason)
        return BackendHealthReport(
            backend_id=self.backend_id,
            status=HealthStatus.UNHEALTHY,
            reason=reason,
            checked_at=utc_now(),
            latency_ms=int((time.monotonic() - started) * 1000),
        )
