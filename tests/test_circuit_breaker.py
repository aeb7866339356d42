from __future__ import annotations

import allure

from agent_dispatch.orchestrator.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
)
from agent_dispatch.orchestrator.models import ErrorClassification

pytestmark = [
    allure.epic("Backend Guards"),
    allure.feature("Circuit Breaker"),
]


def _breaker(clock, **overrides) -> CircuitBreaker:
    config = CircuitBreakerConfig(
        failure_threshold=overrides.get("failure_threshold", 3),
        window_seconds=overrides.get("window_seconds", 60.0),
        open_duration_seconds=overrides.get("open_duration_seconds", 30.0),
        half_open_max_attempts=overrides.get("half_open_max_attempts", 1),
        success_threshold_to_close=overrides.get("success_threshold_to_close", 2),
    )
    return CircuitBreaker(config, name="test", clock=clock)


def test_opens_after_threshold_transient_failures(clock) -> None:
    breaker = _breaker(clock)
    for _ in range(2):
        breaker.record_failure(ErrorClassification.TRANSIENT)
    assert breaker.state is CircuitState.CLOSED

    breaker.record_failure("resource")

    assert breaker.state is CircuitState.OPEN
    assert not breaker.can_execute()


def test_permanent_and_timeout_failures_never_trip(clock) -> None:
    breaker = _breaker(clock)
    for _ in range(10):
        breaker.record_failure(ErrorClassification.PERMANENT)
        breaker.record_failure(ErrorClassification.TIMEOUT)

    assert breaker.state is CircuitState.CLOSED
    assert breaker.get_stats().window_failure_count == 0


def test_failures_outside_window_do_not_count(clock) -> None:
    breaker = _breaker(clock, window_seconds=10.0)
    breaker.record_failure(ErrorClassification.TRANSIENT)
    breaker.record_failure(ErrorClassification.TRANSIENT)
    clock.advance(11)
    breaker.record_failure(ErrorClassification.TRANSIENT)

    assert breaker.state is CircuitState.CLOSED
    assert breaker.get_stats().window_failure_count == 1


def test_open_moves_to_half_open_lazily_after_duration(clock) -> None:
    breaker = _breaker(clock, failure_threshold=1)
    breaker.record_failure(ErrorClassification.TRANSIENT)
    clock.advance(29.9)
    assert breaker.state is CircuitState.OPEN

    clock.advance(0.1)

    assert breaker.state is CircuitState.HALF_OPEN
    assert breaker.can_execute()


def test_half_open_bounds_concurrent_probes(clock) -> None:
    breaker = _breaker(clock, failure_threshold=1, half_open_max_attempts=1)
    breaker.record_failure(ErrorClassification.TRANSIENT)
    clock.advance(30)

    assert breaker.try_acquire()
    assert not breaker.try_acquire()

    breaker.release_probe()
    assert breaker.try_acquire()


def test_half_open_closes_after_consecutive_successes(clock) -> None:
    breaker = _breaker(clock, failure_threshold=1, success_threshold_to_close=2)
    breaker.record_failure(ErrorClassification.TRANSIENT)
    clock.advance(30)

    assert breaker.try_acquire()
    breaker.record_success()
    assert breaker.state is CircuitState.HALF_OPEN
    assert breaker.try_acquire()
    breaker.record_success()

    assert breaker.state is CircuitState.CLOSED
    stats = breaker.get_stats()
    assert stats.window_total_calls == 0
    assert stats.consecutive_half_open_successes == 0


def test_half_open_failure_reopens_and_restarts_timer(clock) -> None:
    breaker = _breaker(clock, failure_threshold=1)
    breaker.record_failure(ErrorClassification.TRANSIENT)
    clock.advance(30)
    assert breaker.try_acquire()

    breaker.record_failure(ErrorClassification.TRANSIENT)

    assert breaker.state is CircuitState.OPEN
    clock.advance(29)
    assert breaker.state is CircuitState.OPEN
    clock.advance(1)
    assert breaker.state is CircuitState.HALF_OPEN


def test_half_open_permanent_failure_frees_probe_without_reopening(clock) -> None:
    breaker = _breaker(clock, failure_threshold=1)
    breaker.record_failure(ErrorClassification.TRANSIENT)
    clock.advance(30)
    assert breaker.try_acquire()

    breaker.record_failure(ErrorClassification.PERMANENT)

    assert breaker.state is CircuitState.HALF_OPEN
    assert breaker.try_acquire()
