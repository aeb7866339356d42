"""Retry backoff policy for failed attempts."""

from __future__ import annotations

import random

from agent_dispatch.config import RetrySettings


def compute_retry_delay(
    attempt: int,
    settings: RetrySettings,
    rng: random.Random | None = None,
) -> float:
    """Capped exponential delay in seconds before retrying after `attempt`.

    ``base * multiplier ** (attempt - 1)`` capped at ``max_seconds``, then
    spread by +/- ``jitter_ratio`` and clamped to ``[0, max_seconds]``.
    """

    rng = rng or random.Random()  # noqa: S311
    exponent = max(attempt - 1, 0)
    delay = min(settings.max_seconds, settings.base_seconds * settings.multiplier**exponent)
    if settings.jitter_ratio > 0:
        delay *= 1 + rng.uniform(-settings.jitter_ratio, settings.jitter_ratio)
    return max(0.0, min(delay, settings.max_seconds))
