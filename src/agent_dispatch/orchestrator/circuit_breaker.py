"""Sliding-window circuit breaker isolating failing backends."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from agent_dispatch.orchestrator.models import ErrorClassification
from agent_dispatch.storage.common import utc_now

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass(slots=True, frozen=True)
class CircuitBreakerConfig:
    """Thresholds for one breaker; durations in seconds."""

    failure_threshold: int = 5
    window_seconds: float = 60.0
    open_duration_seconds: float = 30.0
    half_open_max_attempts: int = 1
    success_threshold_to_close: int = 3


DEFAULT_CIRCUIT_BREAKER_CONFIG = CircuitBreakerConfig()


@dataclass(slots=True)
class CircuitStats:
    state: CircuitState
    window_failure_count: int
    window_total_calls: int
    consecutive_half_open_successes: int
    last_state_change: datetime


class CircuitBreaker:
    """Three-state breaker: CLOSED, OPEN and HALF_OPEN.

    Only transient and resource failures count toward tripping. OPEN moves
    to HALF_OPEN lazily on the first state query after the open duration.
    HALF_OPEN admits a bounded number of probes; enough consecutive probe
    successes close the circuit, any counted probe failure reopens it.
    """

    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        *,
        name: str = "breaker",
        clock: Clock = time.monotonic,
    ) -> None:
        self.config = config or DEFAULT_CIRCUIT_BREAKER_CONFIG
        self.name = name
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures: deque[float] = deque()
        self._successes: deque[float] = deque()
        self._opened_at: float | None = None
        self._half_open_active = 0
        self._consecutive_half_open_successes = 0
        self._last_state_change = utc_now()

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._maybe_transition()
            return self._state

    def can_execute(self) -> bool:
        """Admission check; applies the lazy OPEN -> HALF_OPEN transition."""

        with self._lock:
            self._maybe_transition()
            return self._admits()

    def try_acquire(self) -> bool:
        """Admit one call and occupy a probe slot when HALF_OPEN."""

        with self._lock:
            self._maybe_transition()
            if not self._admits():
                return False
            if self._state is CircuitState.HALF_OPEN:
                self._half_open_active += 1
            return True

    def record_success(self) -> None:
        with self._lock:
            self._maybe_transition()
            now = self._clock()
            self._successes.append(now)
            self._prune_window(now)
            if self._state is not CircuitState.HALF_OPEN:
                return
            self._release_probe_slot()
            self._consecutive_half_open_successes += 1
            if self._consecutive_half_open_successes >= self.config.success_threshold_to_close:
                self._transition_to(CircuitState.CLOSED)

    def record_failure(self, classification: ErrorClassification | str) -> None:
        classification = ErrorClassification(classification)
        with self._lock:
            self._maybe_transition()
            now = self._clock()
            if not classification.counts_toward_breaker:
                if self._state is CircuitState.HALF_OPEN:
                    self._release_probe_slot()
                return

            self._failures.append(now)
            self._prune_window(now)
            if self._state is CircuitState.HALF_OPEN:
                self._release_probe_slot()
                self._consecutive_half_open_successes = 0
                self._transition_to(CircuitState.OPEN)
                return
            if (
                self._state is CircuitState.CLOSED
                and len(self._failures) >= self.config.failure_threshold
            ):
                self._transition_to(CircuitState.OPEN)

    def release_probe(self) -> None:
        """Free a HALF_OPEN probe slot without recording an outcome."""

        with self._lock:
            if self._state is CircuitState.HALF_OPEN:
                self._release_probe_slot()

    def get_stats(self) -> CircuitStats:
        with self._lock:
            self._maybe_transition()
            self._prune_window(self._clock())
            return CircuitStats(
                state=self._state,
                window_failure_count=len(self._failures),
                window_total_calls=len(self._failures) + len(self._successes),
                consecutive_half_open_successes=self._consecutive_half_open_successes,
                last_state_change=self._last_state_change,
            )

    def _admits(self) -> bool:
        if self._state is CircuitState.CLOSED:
            return True
        if self._state is CircuitState.OPEN:
            return False
        return self._half_open_active < self.config.half_open_max_attempts

    def _release_probe_slot(self) -> None:
        self._half_open_active = max(0, self._half_open_active - 1)

    def _maybe_transition(self) -> None:
        if self._state is not CircuitState.OPEN or self._opened_at is None:
            return
        if self._clock() - self._opened_at >= self.config.open_duration_seconds:
            self._transition_to(CircuitState.HALF_OPEN)

    def _transition_to(self, new_state: CircuitState) -> None:
        previous = self._state
        self._state = new_state
        self._last_state_change = utc_now()
        if new_state is CircuitState.OPEN:
            self._opened_at = self._clock()
        elif new_state is CircuitState.CLOSED:
            self._opened_at = None
            self._failures.clear()
            self._successes.clear()
            self._half_open_active = 0
            self._consecutive_half_open_successes = 0
        else:
            self._half_open_active = 0
            self._consecutive_half_open_successes = 0
        logger.info(
            "Circuit %s transitioned %s -> %s",
            self.name,
            previous.value,
            new_state.value,
        )

    def _prune_window(self, now: float) -> None:
        cutoff = now - self.config.window_seconds
        while self._failures and self._failures[0] <= cutoff:
            self._failures.popleft()
        while self._successes and self._successes[0] <= cutoff:
            self._successes.popleft()
