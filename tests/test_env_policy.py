from __future__ import annotations

import allure

from agent_dispatch.orchestrator.backend.env_policy import build_backend_spawn_env

pytestmark = [
    allure.epic("Execution Backends"),
    allure.feature("Child Process Environment"),
]


def test_only_allowlisted_keys_are_inherited() -> None:
    source = {
        "PATH": "/usr/bin",
        "HOME": "/home/agent",
        "ANTHROPIC_API_KEY": "secret",
        "AGENT_DISPATCH_DB_PATH": "/tmp/x.db",
        "TERM": "",
    }

    env = build_backend_spawn_env({}, source=source)

    assert env == {"PATH": "/usr/bin", "HOME": "/home/agent"}


def test_task_environment_overrides_and_extends() -> None:
    env = build_backend_spawn_env(
        {"PATH": "/opt/agent/bin", "ANTHROPIC_API_KEY": "task-scoped"},
        source={"PATH": "/usr/bin"},
    )

    assert env == {"PATH": "/opt/agent/bin", "ANTHROPIC_API_KEY": "task-scoped"}
