from __future__ import annotations

import allure
import pytest

from agent_dispatch.config import BackendSettings, Settings
from agent_dispatch.orchestrator.backend.cli_backend import CliAgentBackend
from agent_dispatch.orchestrator.backend.echo_backend import EchoBackend
from agent_dispatch.orchestrator.backend.http_llm import HttpLlmBackend
from agent_dispatch.orchestrator.errors import BackendStartError
from agent_dispatch.orchestrator.runtime import (
    backend_configs,
    build_registry,
    create_backend,
)

pytestmark = [
    allure.epic("Backend Guards"),
    allure.feature("Runtime Wiring"),
]


def test_create_backend_maps_supported_ids() -> None:
    assert isinstance(create_backend("claude-code"), CliAgentBackend)
    assert isinstance(create_backend("http-llm"), HttpLlmBackend)
    assert isinstance(create_backend("echo"), EchoBackend)
    with pytest.raises(ValueError, match="Unsupported backend"):
        create_backend("teleport")


def test_backend_configs_follow_settings() -> None:
    settings = Settings(
        backends=BackendSettings(
            cli_binary_path="/usr/local/bin/claude",
            http_provider="openai",
            http_api_key="sk-test",
            echo_latency_seconds=0.5,
        ),
    )

    configs = backend_configs(settings)

    assert configs["claude-code"]["binary_path"] == "/usr/local/bin/claude"
    assert configs["http-llm"]["provider"] == "openai"
    assert configs["http-llm"]["api_key"] == "sk-test"
    assert configs["echo"]["latency_seconds"] == 0.5


@pytest.mark.asyncio
async def test_build_registry_skips_backends_that_fail_to_start(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    for name in ("LLM_API_KEY", "ANTHROPIC_API_KEY", "LLM_PROVIDER"):
        monkeypatch.delenv(name, raising=False)
    settings = Settings(
        backends=BackendSettings(enabled=("http-llm", "echo"), max_concurrent={"echo": 3}),
    )

    registry = await build_registry(settings)

    assert registry.list() == ["echo"]
    assert registry.router is not None
    assert registry.router.get_provider_ids() == ["echo"]
    semaphore = registry.get_semaphore("echo")
    assert semaphore is not None
    assert semaphore.max_concurrent == 3
    await registry.stop_all()


@pytest.mark.asyncio
async def test_build_registry_strict_mode_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("LLM_API_KEY", "ANTHROPIC_API_KEY", "LLM_PROVIDER"):
        monkeypatch.delenv(name, raising=False)
    settings = Settings(backends=BackendSettings(enabled=("echo", "http-llm")))

    with pytest.raises(BackendStartError, match="LLM_API_KEY"):
        await build_registry(settings, strict=True)
    with pytest.raises(BackendStartError, match="No configured backend"):
        await build_registry(Settings(backends=BackendSettings(enabled=("http-llm",))))
