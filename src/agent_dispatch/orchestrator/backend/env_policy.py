"""Environment policy for backend child processes.

Worker process secrets are not inherited. Only a small OS/runtime allowlist
is copied from the worker environment; task-scoped variables are the only
channel for handing agent-specific secrets to a child process.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping

logger = logging.getLogger(__name__)

BACKEND_ENV_ALLOWLIST: tuple[str, ...] = ("PATH", "HOME", "NODE_PATH", "LANG", "TERM")


def build_backend_spawn_env(
    task_environment: Mapping[str, str],
    *,
    source: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Return the allowlisted environment overlaid with task overrides."""

    base = os.environ if source is None else source
    env = {key: base[key] for key in BACKEND_ENV_ALLOWLIST if base.get(key)}
    env.update(task_environment)
    logger.debug("Backend child env keys: %s", sorted(env))
    return env
