from __future__ import annotations

import allure
import pytest
from conftest import make_task

from agent_dispatch.orchestrator.backend.echo_backend import ScriptedBackend
from agent_dispatch.orchestrator.circuit_breaker import CircuitBreakerConfig, CircuitState
from agent_dispatch.orchestrator.errors import BackendRegistrationError, NoProviderAvailableError
from agent_dispatch.orchestrator.models import ErrorClassification
from agent_dispatch.orchestrator.routing import ProviderEntry, ProviderRouter, RoutingEvent

pytestmark = [
    allure.epic("Backend Guards"),
    allure.feature("Provider Routing"),
]

TRIP_ON_FIRST = CircuitBreakerConfig(failure_threshold=1, open_duration_seconds=30.0)


def _router(clock, *priorities: tuple[str, int]) -> ProviderRouter:
    router = ProviderRouter(clock=clock)
    for provider_id, priority in priorities:
        router.add_provider(
            ProviderEntry(
                provider_id=provider_id,
                backend=ScriptedBackend(backend_id=provider_id),
                priority=priority,
                circuit_breaker_config=TRIP_ON_FIRST,
            ),
        )
    return router


def test_routes_to_lowest_priority_value_first(clock) -> None:
    router = _router(clock, ("slow", 5), ("fast", 1), ("mid", 3))

    assert router.get_provider_ids() == ["fast", "mid", "slow"]
    assert router.route(make_task()).provider_id == "fast"


def test_duplicate_provider_is_rejected(clock) -> None:
    router = _router(clock, ("a", 0))

    with pytest.raises(BackendRegistrationError):
        router.add_provider(ProviderEntry(provider_id="a", backend=ScriptedBackend()))


def test_preferred_provider_is_tried_first(clock) -> None:
    router = _router(clock, ("a", 0), ("b", 1))

    assert router.route(make_task(), preferred_provider_id="b").provider_id == "b"


def test_open_circuit_fails_over_and_emits_events(clock) -> None:
    router = _router(clock, ("a", 0), ("b", 1))
    events: list[RoutingEvent] = []
    router.on_routing_event(events.append)
    router.record_outcome("a", success=False, classification=ErrorClassification.RESOURCE)

    route = router.route(make_task())

    assert route.provider_id == "b"
    assert [event.type for event in events] == ["route_skipped", "route_failover"]
    assert events[0].reason == "circuit_open"


def test_all_open_raises_with_provider_states(clock) -> None:
    router = _router(clock, ("a", 0), ("b", 1))
    router.record_outcome("a", success=False)
    router.record_outcome("b", success=False)

    with pytest.raises(NoProviderAvailableError) as error:
        router.route(make_task())

    assert error.value.provider_states == {"a": "OPEN", "b": "OPEN"}


def test_half_open_probe_route_is_marked_and_slot_can_be_released(clock) -> None:
    router = _router(clock, ("a", 0))
    router.record_outcome("a", success=False)
    clock.advance(30)

    route = router.route(make_task())
    assert route.probe
    with pytest.raises(NoProviderAvailableError):
        router.route(make_task())

    router.release_probe("a")
    assert router.route(make_task()).probe


def test_permanent_failure_does_not_open_circuit(clock) -> None:
    router = _router(clock, ("a", 0))
    router.record_outcome("a", success=False, classification=ErrorClassification.PERMANENT)

    assert router.get_circuit_states() == {"a": CircuitState.CLOSED}
