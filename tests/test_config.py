from __future__ import annotations

from pathlib import Path

import allure
import pytest

from agent_dispatch.config import BackendSettings, Settings, WorkerSettings

pytestmark = [
    allure.epic("Operations"),
    allure.feature("Configuration"),
]


def test_defaults_are_valid() -> None:
    settings = Settings()
    settings.validate()

    assert settings.backends.enabled == ("echo",)
    assert settings.worker.approval_timeout_seconds == 86_400
    assert settings.backends.max_concurrent_for("echo") == 2


def test_from_env_reads_prefixed_variables(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("AGENT_DISPATCH_BACKENDS", "http-llm, ECHO,echo")
    monkeypatch.setenv("AGENT_DISPATCH_BACKEND_LIMITS", "http-llm=5, echo=1")
    monkeypatch.setenv("AGENT_DISPATCH_CONCURRENCY", "8")
    monkeypatch.setenv("AGENT_DISPATCH_RETRY_BASE_SECONDS", "0.5")
    monkeypatch.setenv("AGENT_DISPATCH_HTTP_PROVIDER", " OpenAI ")

    settings = Settings.from_env(db_path=tmp_path / "x.db")

    assert settings.db_path == tmp_path / "x.db"
    assert settings.backends.enabled == ("http-llm", "echo")
    assert settings.backends.max_concurrent_for("http-llm") == 5
    assert settings.backends.max_concurrent_for("echo") == 1
    assert settings.backends.max_concurrent_for("claude-code") == 2
    assert settings.worker.concurrency == 8
    assert settings.retry.base_seconds == 0.5
    assert settings.backends.http_provider == "openai"


def test_invalid_integer_names_the_variable(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AGENT_DISPATCH_CONCURRENCY", "many")

    with pytest.raises(ValueError, match="AGENT_DISPATCH_CONCURRENCY"):
        Settings.from_env()


def test_malformed_backend_limits_are_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AGENT_DISPATCH_BACKEND_LIMITS", "echo:3")

    with pytest.raises(ValueError, match="Expected format"):
        Settings.from_env()


def test_unknown_backend_is_rejected() -> None:
    settings = Settings(backends=BackendSettings(enabled=("gpt-cli",)))

    with pytest.raises(ValueError, match="Unsupported backend"):
        settings.validate()


def test_zombie_threshold_must_exceed_heartbeat_interval() -> None:
    settings = Settings(
        worker=WorkerSettings(heartbeat_interval_seconds=30.0, zombie_threshold_seconds=30.0),
    )

    with pytest.raises(ValueError, match="ZOMBIE_THRESHOLD_SECONDS"):
        settings.validate()


def test_base_url_must_be_absolute_http() -> None:
    settings = Settings(backends=BackendSettings(http_base_url="api.example.com"))

    with pytest.raises(ValueError, match="HTTP_BASE_URL"):
        settings.validate()
