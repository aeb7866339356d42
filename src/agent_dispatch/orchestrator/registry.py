"""Backend registry composing health cache, WIP limiter and circuit breaker per backend."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any

from agent_dispatch.orchestrator.backend.base import (
    BackendHealthReport,
    ExecutionBackend,
    ExecutionTask,
)
from agent_dispatch.orchestrator.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
    Clock,
)
from agent_dispatch.orchestrator.errors import (
    BackendNotFoundError,
    BackendRegistrationError,
    RegistryClosedError,
)
from agent_dispatch.orchestrator.health import DEFAULT_HEALTH_TTL_SECONDS, CachedHealthCheck
from agent_dispatch.orchestrator.models import ErrorClassification
from agent_dispatch.orchestrator.routing import ProviderEntry, ProviderRouter, RouteResult
from agent_dispatch.orchestrator.semaphore import BackendSemaphore, Permit

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _RegisteredBackend:
    backend: ExecutionBackend
    config: dict[str, Any]
    health: CachedHealthCheck
    semaphore: BackendSemaphore
    breaker: CircuitBreaker


class BackendRegistry:
    """Own every registered backend and the per-backend guards around it.

    The first registered backend is the default. Once `stop_all()` ran the
    registry is closed and every further call raises `RegistryClosedError`.
    """

    def __init__(
        self,
        *,
        health_ttl_seconds: float = DEFAULT_HEALTH_TTL_SECONDS,
        clock: Clock = time.monotonic,
    ) -> None:
        self._health_ttl_seconds = health_ttl_seconds
        self._clock = clock
        self._entries: dict[str, _RegisteredBackend] = {}
        self._default_backend_id: str | None = None
        self._router: ProviderRouter | None = None
        self._closed = False

    @property
    def router(self) -> ProviderRouter | None:
        return self._router

    async def register(
        self,
        backend: ExecutionBackend,
        config: dict[str, Any] | None = None,
        *,
        max_concurrent: int = 1,
        circuit_breaker_config: CircuitBreakerConfig | None = None,
    ) -> None:
        """Start `backend` and index it with its guards; duplicate ids raise."""

        self._ensure_open()
        backend_id = backend.backend_id
        if backend_id in self._entries:
            raise BackendRegistrationError(f"Backend {backend_id!r} already registered")

        resolved_config = dict(config or {})
        # Guards are built first so invalid limits never leave a started backend behind.
        entry = _RegisteredBackend(
            backend=backend,
            config=resolved_config,
            health=CachedHealthCheck(
                backend_id=backend_id,
                probe=backend.health_check,
                ttl_seconds=self._health_ttl_seconds,
                clock=self._clock,
            ),
            semaphore=BackendSemaphore(backend_id, max_concurrent),
            breaker=CircuitBreaker(circuit_breaker_config, name=backend_id, clock=self._clock),
        )
        await backend.start(resolved_config)
        if backend_id in self._entries or self._closed:
            # Lost a concurrent registration or stop_all() race while starting.
            await backend.stop()
            self._ensure_open()
            raise BackendRegistrationError(f"Backend {backend_id!r} already registered")

        self._entries[backend_id] = entry
        if self._default_backend_id is None:
            self._default_backend_id = backend_id
        logger.info("Registered backend %s (max_concurrent=%d)", backend_id, max_concurrent)

    def configure_router(self, router: ProviderRouter | None = None) -> ProviderRouter:
        """Adopt `router`, or build one over every backend in registration order."""

        self._ensure_open()
        if router is None:
            router = ProviderRouter(clock=self._clock)
            for priority, (backend_id, entry) in enumerate(self._entries.items()):
                router.add_provider(
                    ProviderEntry(
                        provider_id=backend_id,
                        backend=entry.backend,
                        priority=priority,
                        breaker=entry.breaker,
                    ),
                )
        self._router = router
        return router

    def get(self, backend_id: str) -> ExecutionBackend | None:
        self._ensure_open()
        entry = self._entries.get(backend_id)
        return entry.backend if entry is not None else None

    def get_default(self) -> ExecutionBackend | None:
        self._ensure_open()
        if self._default_backend_id is None:
            return None
        return self._entries[self._default_backend_id].backend

    def get_config(self, backend_id: str) -> dict[str, Any] | None:
        self._ensure_open()
        entry = self._entries.get(backend_id)
        return dict(entry.config) if entry is not None else None

    def list(self) -> list[str]:
        self._ensure_open()
        return list(self._entries)

    def route_task(
        self,
        task: ExecutionTask,
        *,
        preferred_backend_id: str | None = None,
    ) -> RouteResult:
        """Resolve the backend for one attempt."""

        self._ensure_open()
        if self._router is not None:
            return self._router.route(task, preferred_provider_id=preferred_backend_id)

        if preferred_backend_id is not None and preferred_backend_id in self._entries:
            entry = self._entries[preferred_backend_id]
            return RouteResult(backend=entry.backend, provider_id=preferred_backend_id)
        if self._default_backend_id is not None:
            entry = self._entries[self._default_backend_id]
            return RouteResult(backend=entry.backend, provider_id=self._default_backend_id)
        raise BackendNotFoundError(
            f"No backend resolves for task {task.id} "
            f"(preferred={preferred_backend_id!r}, none registered)",
        )

    def record_outcome(
        self,
        provider_id: str,
        *,
        success: bool,
        classification: ErrorClassification | None = None,
    ) -> None:
        self._ensure_open()
        if self._router is not None:
            self._router.record_outcome(
                provider_id,
                success=success,
                classification=classification,
            )
            return
        entry = self._entries.get(provider_id)
        if entry is None:
            return
        if success:
            entry.breaker.record_success()
        else:
            entry.breaker.record_failure(classification or ErrorClassification.TRANSIENT)

    def release_route(self, route: RouteResult) -> None:
        """Give back a HALF_OPEN probe slot for a route that never executed."""

        if not route.probe or self._closed:
            return
        if self._router is not None:
            self._router.release_probe(route.provider_id)
            return
        entry = self._entries.get(route.provider_id)
        if entry is not None:
            entry.breaker.release_probe()

    async def acquire_permit(self, backend_id: str, timeout_seconds: float | None) -> Permit:
        self._ensure_open()
        entry = self._entries.get(backend_id)
        if entry is None:
            raise BackendNotFoundError(f"No semaphore for backend {backend_id!r}")
        return await entry.semaphore.acquire(timeout_seconds)

    def get_semaphore(self, backend_id: str) -> BackendSemaphore | None:
        self._ensure_open()
        entry = self._entries.get(backend_id)
        return entry.semaphore if entry is not None else None

    async def get_health(self, backend_id: str) -> BackendHealthReport | None:
        self._ensure_open()
        entry = self._entries.get(backend_id)
        if entry is None:
            return None
        return await entry.health.get()

    async def get_all_health(self) -> list[BackendHealthReport]:
        self._ensure_open()
        return list(await asyncio.gather(*(entry.health.get() for entry in self._entries.values())))

    def invalidate_health(self, backend_id: str) -> None:
        self._ensure_open()
        entry = self._entries.get(backend_id)
        if entry is not None:
            entry.health.invalidate()

    def get_circuit_states(self) -> dict[str, CircuitState]:
        self._ensure_open()
        if self._router is not None:
            return self._router.get_circuit_states()
        return {backend_id: entry.breaker.state for backend_id, entry in self._entries.items()}

    def get_circuit_breaker(self, backend_id: str) -> CircuitBreaker | None:
        self._ensure_open()
        if self._router is not None:
            return self._router.get_circuit_breaker(backend_id)
        entry = self._entries.get(backend_id)
        return entry.breaker if entry is not None else None

    async def stop_all(self) -> None:
        """Stop every backend independently, then clear all state."""

        if self._closed:
            return
        entries = list(self._entries.items())
        results = await asyncio.gather(
            *(entry.backend.stop() for _, entry in entries),
            return_exceptions=True,
        )
        for (backend_id, _), outcome in zip(entries, results, strict=True):
            if isinstance(outcome, BaseException):
                logger.warning("Backend %s failed to stop: %s", backend_id, outcome)
            else:
                logger.info("Stopped backend %s", backend_id)
        self._entries.clear()
        self._default_backend_id = None
        self._router = None
        self._closed = True

    def _ensure_open(self) -> None:
        if self._closed:
            raise RegistryClosedError("Backend registry was stopped and cannot be reused")
