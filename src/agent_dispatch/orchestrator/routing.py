"""Priority- and health-aware provider selection with failover."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal

from agent_dispatch.orchestrator.backend.base import ExecutionBackend, ExecutionTask
from agent_dispatch.orchestrator.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
    Clock,
)
from agent_dispatch.orchestrator.errors import BackendRegistrationError, NoProviderAvailableError
from agent_dispatch.orchestrator.models import ErrorClassification
from agent_dispatch.storage.common import utc_now

logger = logging.getLogger(__name__)

RoutingEventType = Literal["route_selected", "route_failover", "route_skipped", "route_exhausted"]


@dataclass(slots=True)
class ProviderEntry:
    """One routable provider.

    `breaker` lets a caller share an existing breaker instance; when omitted
    the router builds one from `circuit_breaker_config`.
    """

    provider_id: str
    backend: ExecutionBackend
    priority: int = 0
    circuit_breaker_config: CircuitBreakerConfig | None = None
    breaker: CircuitBreaker | None = None


@dataclass(slots=True)
class RouteResult:
    backend: ExecutionBackend
    provider_id: str
    probe: bool = False


@dataclass(slots=True)
class RoutingEvent:
    type: RoutingEventType
    provider_id: str
    reason: str | None = None
    timestamp: datetime = field(default_factory=utc_now)


RoutingEventListener = Callable[[RoutingEvent], None]


class ProviderRouter:
    """Route each task to the lowest-priority provider whose circuit admits it."""

    def __init__(self, *, clock: Clock = time.monotonic) -> None:
        self._clock = clock
        self._providers: list[ProviderEntry] = []
        self._breakers: dict[str, CircuitBreaker] = {}
        self._listeners: list[RoutingEventListener] = []

    def add_provider(self, entry: ProviderEntry) -> None:
        if entry.provider_id in self._breakers:
            raise BackendRegistrationError(f"Provider {entry.provider_id!r} already added")
        breaker = entry.breaker or CircuitBreaker(
            entry.circuit_breaker_config,
            name=entry.provider_id,
            clock=self._clock,
        )
        self._breakers[entry.provider_id] = breaker
        self._providers.append(entry)
        # Stable sort keeps registration order for equal priorities.
        self._providers.sort(key=lambda provider: provider.priority)

    def route(
        self,
        task: ExecutionTask,
        *,
        preferred_provider_id: str | None = None,
    ) -> RouteResult:
        """Select a provider, skipping OPEN circuits and saturated HALF_OPEN probes.

        A preferred provider, when given and known, is tried before the
        priority order.
        """

        skipped: list[str] = []
        states: dict[str, str] = {}
        for entry in self._candidates(preferred_provider_id):
            breaker = self._breakers[entry.provider_id]
            state = breaker.state
            states[entry.provider_id] = state.value
            if not breaker.try_acquire():
                reason = "circuit_open" if state is CircuitState.OPEN else "half_open_at_capacity"
                self._emit(
                    RoutingEvent(
                        type="route_skipped",
                        provider_id=entry.provider_id,
                        reason=reason,
                    ),
                )
                skipped.append(entry.provider_id)
                continue

            if skipped:
                self._emit(
                    RoutingEvent(
                        type="route_failover",
                        provider_id=entry.provider_id,
                        reason=f"failover from {skipped[-1]}",
                    ),
                )
            else:
                self._emit(RoutingEvent(type="route_selected", provider_id=entry.provider_id))
            logger.debug("Routed task %s to %s", task.id, entry.provider_id)
            return RouteResult(
                backend=entry.backend,
                provider_id=entry.provider_id,
                probe=state is CircuitState.HALF_OPEN,
            )

        self._emit(RoutingEvent(type="route_exhausted", provider_id="", reason="all_circuits_open"))
        raise NoProviderAvailableError(states)

    def record_outcome(
        self,
        provider_id: str,
        *,
        success: bool,
        classification: ErrorClassification | None = None,
    ) -> None:
        breaker = self._breakers.get(provider_id)
        if breaker is None:
            return
        if success:
            breaker.record_success()
        else:
            breaker.record_failure(classification or ErrorClassification.TRANSIENT)

    def release_probe(self, provider_id: str) -> None:
        """Return a HALF_OPEN probe slot that was routed but never executed."""

        breaker = self._breakers.get(provider_id)
        if breaker is not None:
            breaker.release_probe()

    def get_circuit_states(self) -> dict[str, CircuitState]:
        return {provider_id: breaker.state for provider_id, breaker in self._breakers.items()}

    def get_circuit_breaker(self, provider_id: str) -> CircuitBreaker | None:
        return self._breakers.get(provider_id)

    def get_provider_ids(self) -> list[str]:
        return [entry.provider_id for entry in self._providers]

    def on_routing_event(self, listener: RoutingEventListener) -> None:
        self._listeners.append(listener)

    def _candidates(self, preferred_provider_id: str | None) -> list[ProviderEntry]:
        if preferred_provider_id is None:
            return list(self._providers)
        preferred = [e for e in self._providers if e.provider_id == preferred_provider_id]
        rest = [e for e in self._providers if e.provider_id != preferred_provider_id]
        return preferred + rest

    def _emit(self, event: RoutingEvent) -> None:
        log = logger.info if event.type in {"route_failover", "route_exhausted"} else logger.debug
        log(
            "Routing event %s provider=%s reason=%s",
            event.type,
            event.provider_id or "-",
            event.reason or "-",
        )
        for listener in self._listeners:
            listener(event)
