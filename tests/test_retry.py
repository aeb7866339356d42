from __future__ import annotations

import random

import allure

from agent_dispatch.config import RetrySettings
from agent_dispatch.orchestrator.retry import compute_retry_delay

pytestmark = [
    allure.epic("Job Lifecycle"),
    allure.feature("Retry Policy"),
]


def test_delay_grows_exponentially_without_jitter() -> None:
    settings = RetrySettings(base_seconds=1.0, multiplier=2.0, max_seconds=300.0, jitter_ratio=0)

    delays = [compute_retry_delay(attempt, settings) for attempt in (1, 2, 3, 4)]

    assert delays == [1.0, 2.0, 4.0, 8.0]


def test_delay_is_capped() -> None:
    settings = RetrySettings(base_seconds=1.0, multiplier=2.0, max_seconds=10.0, jitter_ratio=0)

    assert compute_retry_delay(20, settings) == 10.0


def test_jitter_stays_within_ratio_and_cap() -> None:
    settings = RetrySettings(base_seconds=4.0, multiplier=2.0, max_seconds=8.0, jitter_ratio=0.25)
    rng = random.Random(7)

    for _ in range(200):
        first = compute_retry_delay(1, settings, rng)
        assert 3.0 <= first <= 5.0
        capped = compute_retry_delay(5, settings, rng)
        assert 6.0 <= capped <= 8.0


def test_zero_base_means_immediate_retry() -> None:
    settings = RetrySettings(base_seconds=0.0, multiplier=2.0, max_seconds=0.0, jitter_ratio=0)

    assert compute_retry_delay(3, settings) == 0.0
