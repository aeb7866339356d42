"""Exception hierarchy for backend orchestration and job lifecycle."""

from __future__ import annotations


class AgentDispatchError(RuntimeError):
    """Base class for orchestration errors."""


class BackendStartError(AgentDispatchError):
    """Backend failed to start because of fatal misconfiguration."""


class BackendNotStartedError(AgentDispatchError):
    """Backend received work before `start()` completed."""


class BackendRegistrationError(AgentDispatchError):
    """Backend id is already registered."""


class RegistryClosedError(AgentDispatchError):
    """Registry was used after `stop_all()`."""


class BackendNotFoundError(AgentDispatchError):
    """No backend resolves for the requested id."""


class NoProviderAvailableError(AgentDispatchError):
    """Every provider is unavailable because its circuit does not admit work."""

    def __init__(self, provider_states: dict[str, str]) -> None:
        summary = ", ".join(f"{key}={value}" for key, value in provider_states.items())
        super().__init__(f"No provider available ({summary or 'no providers registered'})")
        self.provider_states = provider_states


class SemaphoreTimeoutError(AgentDispatchError):
    """Permit was not granted before the acquire timeout elapsed."""

    def __init__(self, backend_id: str, timeout_seconds: float) -> None:
        super().__init__(
            f"Timed out after {timeout_seconds:.1f}s waiting for a {backend_id} permit",
        )
        self.backend_id = backend_id
        self.timeout_seconds = timeout_seconds


class InvalidJobTransitionError(AgentDispatchError):
    """Requested job status transition is not allowed."""


class JobNotFoundError(AgentDispatchError):
    """Job row does not exist."""
