"""Wiring of configured backends into a ready registry."""

from __future__ import annotations

import logging
from typing import Any

from agent_dispatch.config import Settings
from agent_dispatch.orchestrator.backend.base import ExecutionBackend
from agent_dispatch.orchestrator.backend.cli_backend import CliAgentBackend
from agent_dispatch.orchestrator.backend.echo_backend import EchoBackend
from agent_dispatch.orchestrator.backend.http_llm import HttpLlmBackend
from agent_dispatch.orchestrator.circuit_breaker import CircuitBreakerConfig
from agent_dispatch.orchestrator.errors import BackendStartError
from agent_dispatch.orchestrator.registry import BackendRegistry

logger = logging.getLogger(__name__)


def backend_configs(settings: Settings) -> dict[str, dict[str, Any]]:
    """Per-backend `start()` config derived from settings."""

    backends = settings.backends
    return {
        "claude-code": {
            "binary_path": backends.cli_binary_path,
            "command_template": backends.cli_command_template,
            "credential_env": backends.cli_credential_env,
        },
        "http-llm": {
            "provider": backends.http_provider,
            "model": backends.http_model,
            "base_url": backends.http_base_url,
            "api_key": backends.http_api_key,
        },
        "echo": {
            "latency_seconds": backends.echo_latency_seconds,
            "failure_rate": backends.echo_failure_rate,
        },
    }


def create_backend(backend_id: str) -> ExecutionBackend:
    if backend_id == "claude-code":
        return CliAgentBackend(backend_id)
    if backend_id == "http-llm":
        return HttpLlmBackend(backend_id)
    if backend_id == "echo":
        return EchoBackend(backend_id)
    raise ValueError(f"Unsupported backend: {backend_id!r}")


def circuit_breaker_config(settings: Settings) -> CircuitBreakerConfig:
    breaker = settings.circuit_breaker
    return CircuitBreakerConfig(
        failure_threshold=breaker.failure_threshold,
        window_seconds=breaker.window_seconds,
        open_duration_seconds=breaker.open_duration_seconds,
        half_open_max_attempts=breaker.half_open_max_attempts,
        success_threshold_to_close=breaker.success_threshold_to_close,
    )


async def build_registry(
    settings: Settings,
    *,
    strict: bool = False,
) -> BackendRegistry:
    """Start every enabled backend, in configured order, behind a router.

    A backend that fails to start is skipped with a warning unless `strict`.
    """

    registry = BackendRegistry()
    configs = backend_configs(settings)
    breaker_config = circuit_breaker_config(settings)
    for backend_id in settings.backends.enabled:
        try:
            await registry.register(
                create_backend(backend_id),
                configs[backend_id],
                max_concurrent=settings.backends.max_concurrent_for(backend_id),
                circuit_breaker_config=breaker_config,
            )
        except BackendStartError as error:
            if strict:
                await registry.stop_all()
                raise
            logger.warning("Backend %s not started: %s", backend_id, error)
    if not registry.list():
        await registry.stop_all()
        raise BackendStartError("No configured backend could be started")
    registry.configure_router()
    return registry
