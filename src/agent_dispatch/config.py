"""Runtime configuration for the dispatch worker and its backends."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

ENV_PREFIX = "AGENT_DISPATCH_"
SUPPORTED_BACKENDS = ("claude-code", "http-llm", "echo")
SUPPORTED_HTTP_PROVIDERS = ("anthropic", "openai")


@dataclass(slots=True)
class WorkerSettings:
    """Job lifecycle worker settings."""

    worker_id: str = "worker-1"
    poll_interval_seconds: float = 1.0
    concurrency: int = 4
    acquire_timeout_seconds: float = 30.0
    heartbeat_interval_seconds: float = 30.0
    zombie_threshold_seconds: float = 90.0
    approval_timeout_seconds: int = 86_400
    max_idle_polls: int = 1


@dataclass(slots=True)
class RetrySettings:
    """Capped exponential backoff for failed attempts."""

    base_seconds: float = 1.0
    multiplier: float = 2.0
    max_seconds: float = 300.0
    jitter_ratio: float = 0.25


@dataclass(slots=True)
class CircuitBreakerSettings:
    """Default circuit-breaker thresholds applied to every backend."""

    failure_threshold: int = 5
    window_seconds: float = 60.0
    open_duration_seconds: float = 30.0
    half_open_max_attempts: int = 1
    success_threshold_to_close: int = 3


@dataclass(slots=True)
class BackendSettings:
    """Backend selection and per-backend options."""

    enabled: tuple[str, ...] = ("echo",)
    max_concurrent: dict[str, int] = field(default_factory=dict)
    default_max_concurrent: int = 2
    cli_binary_path: str = "claude"
    cli_command_template: str | None = None
    cli_credential_env: str = "ANTHROPIC_API_KEY"
    http_provider: str = "anthropic"
    http_model: str = "claude-sonnet-4-20250514"
    http_base_url: str | None = None
    http_api_key: str | None = None
    echo_latency_seconds: float = 0.0
    echo_failure_rate: float = 0.0

    def max_concurrent_for(self, backend_id: str) -> int:
        """Return the configured WIP cap for one backend id."""

        return self.max_concurrent.get(backend_id, self.default_max_concurrent)


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".agent_dispatch.db")
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    circuit_breaker: CircuitBreakerSettings = field(default_factory=CircuitBreakerSettings)
    backends: BackendSettings = field(default_factory=BackendSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        settings = cls(
            db_path=db_path or Path(_env("DB_PATH", ".agent_dispatch.db")),
            worker=WorkerSettings(
                worker_id=_env("WORKER_ID", "worker-1"),
                poll_interval_seconds=_env_float("POLL_INTERVAL_SECONDS", 1.0),
                concurrency=_env_int("CONCURRENCY", 4),
                acquire_timeout_seconds=_env_float("ACQUIRE_TIMEOUT_SECONDS", 30.0),
                heartbeat_interval_seconds=_env_float("HEARTBEAT_INTERVAL_SECONDS", 30.0),
                zombie_threshold_seconds=_env_float("ZOMBIE_THRESHOLD_SECONDS", 90.0),
                approval_timeout_seconds=_env_int("APPROVAL_TIMEOUT_SECONDS", 86_400),
                max_idle_polls=_env_int("MAX_IDLE_POLLS", 1),
            ),
            retry=RetrySettings(
                base_seconds=_env_float("RETRY_BASE_SECONDS", 1.0),
                multiplier=_env_float("RETRY_MULTIPLIER", 2.0),
                max_seconds=_env_float("RETRY_MAX_SECONDS", 300.0),
                jitter_ratio=_env_float("RETRY_JITTER_RATIO", 0.25),
            ),
            circuit_breaker=CircuitBreakerSettings(
                failure_threshold=_env_int("BREAKER_FAILURE_THRESHOLD", 5),
                window_seconds=_env_float("BREAKER_WINDOW_SECONDS", 60.0),
                open_duration_seconds=_env_float("BREAKER_OPEN_SECONDS", 30.0),
                half_open_max_attempts=_env_int("BREAKER_HALF_OPEN_MAX_ATTEMPTS", 1),
                success_threshold_to_close=_env_int("BREAKER_SUCCESS_THRESHOLD", 3),
            ),
            backends=BackendSettings(
                enabled=_env_csv("BACKENDS", ("echo",)),
                max_concurrent=_collect_max_concurrent(),
                default_max_concurrent=_env_int("BACKEND_MAX_CONCURRENT", 2),
                cli_binary_path=_env("CLI_BINARY_PATH", "claude"),
                cli_command_template=_env_optional("CLI_COMMAND_TEMPLATE"),
                cli_credential_env=_env("CLI_CREDENTIAL_ENV", "ANTHROPIC_API_KEY"),
                http_provider=_env("HTTP_PROVIDER", "anthropic").strip().lower(),
                http_model=_env("HTTP_MODEL", "claude-sonnet-4-20250514"),
                http_base_url=_env_optional("HTTP_BASE_URL"),
                http_api_key=_env_optional("HTTP_API_KEY"),
                echo_latency_seconds=_env_float("ECHO_LATENCY_SECONDS", 0.0),
                echo_failure_rate=_env_float("ECHO_FAILURE_RATE", 0.0),
            ),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        """Raise configuration error naming the offending variable."""

        if self.worker.concurrency <= 0:
            raise ValueError(f"{ENV_PREFIX}CONCURRENCY must be > 0.")
        if self.worker.acquire_timeout_seconds <= 0:
            raise ValueError(f"{ENV_PREFIX}ACQUIRE_TIMEOUT_SECONDS must be > 0.")
        if self.worker.heartbeat_interval_seconds <= 0:
            raise ValueError(f"{ENV_PREFIX}HEARTBEAT_INTERVAL_SECONDS must be > 0.")
        if self.worker.zombie_threshold_seconds <= self.worker.heartbeat_interval_seconds:
            raise ValueError(
                f"{ENV_PREFIX}ZOMBIE_THRESHOLD_SECONDS must exceed the heartbeat interval.",
            )
        if self.worker.approval_timeout_seconds <= 0:
            raise ValueError(f"{ENV_PREFIX}APPROVAL_TIMEOUT_SECONDS must be > 0.")
        if self.retry.base_seconds < 0 or self.retry.max_seconds < self.retry.base_seconds:
            raise ValueError(
                f"{ENV_PREFIX}RETRY_MAX_SECONDS must be >= {ENV_PREFIX}RETRY_BASE_SECONDS >= 0.",
            )
        if not 0 <= self.retry.jitter_ratio < 1:
            raise ValueError(f"{ENV_PREFIX}RETRY_JITTER_RATIO must be in [0, 1).")
        if self.circuit_breaker.failure_threshold <= 0:
            raise ValueError(f"{ENV_PREFIX}BREAKER_FAILURE_THRESHOLD must be > 0.")
        if self.circuit_breaker.half_open_max_attempts <= 0:
            raise ValueError(f"{ENV_PREFIX}BREAKER_HALF_OPEN_MAX_ATTEMPTS must be > 0.")
        if not self.backends.enabled:
            raise ValueError(f"At least one backend is required. Set {ENV_PREFIX}BACKENDS.")
        for backend_id in self.backends.enabled:
            if backend_id not in SUPPORTED_BACKENDS:
                raise ValueError(
                    f"Unsupported backend in {ENV_PREFIX}BACKENDS: {backend_id!r}. "
                    f"Expected one of {', '.join(SUPPORTED_BACKENDS)}.",
                )
        for backend_id, limit in self.backends.max_concurrent.items():
            if limit <= 0:
                raise ValueError(
                    f"Per-backend concurrency must be positive: {backend_id!r} -> {limit}",
                )
        if self.backends.http_provider not in SUPPORTED_HTTP_PROVIDERS:
            raise ValueError(
                f"Unsupported {ENV_PREFIX}HTTP_PROVIDER: {self.backends.http_provider!r}",
            )
        if self.backends.http_base_url is not None:
            _validate_base_url(self.backends.http_base_url)
        if not 0 <= self.backends.echo_failure_rate <= 1:
            raise ValueError(f"{ENV_PREFIX}ECHO_FAILURE_RATE must be in [0, 1].")


def _env(name: str, default: str) -> str:
    return os.getenv(f"{ENV_PREFIX}{name}", default)


def _env_optional(name: str) -> str | None:
    value = os.getenv(f"{ENV_PREFIX}{name}", "").strip()
    return value or None


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(f"{ENV_PREFIX}{name}")
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {ENV_PREFIX}{name}: {raw!r}") from error


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(f"{ENV_PREFIX}{name}")
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as error:
        raise ValueError(f"Invalid number value for {ENV_PREFIX}{name}: {raw!r}") from error


def _env_csv(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(f"{ENV_PREFIX}{name}", "").strip()
    if not raw:
        return default
    values: list[str] = []
    for part in raw.split(","):
        token = part.strip().lower()
        if token and token not in values:
            values.append(token)
    return tuple(values)


def _collect_max_concurrent() -> dict[str, int]:
    raw = os.getenv(f"{ENV_PREFIX}BACKEND_LIMITS", "").strip()
    if not raw:
        return {}

    limits: dict[str, int] = {}
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        if "=" not in token:
            raise ValueError(
                f"Invalid {ENV_PREFIX}BACKEND_LIMITS entry: "
                f"{token!r}. Expected format '<backend_id>=<limit>'.",
            )
        backend_id, limit_raw = token.split("=", 1)
        try:
            limits[backend_id.strip().lower()] = int(limit_raw.strip())
        except ValueError as error:
            raise ValueError(
                f"Invalid {ENV_PREFIX}BACKEND_LIMITS value for {backend_id!r}: {limit_raw!r}",
            ) from error
    return limits


def _validate_base_url(value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            f"Invalid {ENV_PREFIX}HTTP_BASE_URL: "
            f"{value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )
