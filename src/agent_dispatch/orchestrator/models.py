"""Domain models for the job lifecycle and agent configuration."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    SCHEDULED = "SCHEDULED"
    RUNNING = "RUNNING"
    WAITING_FOR_APPROVAL = "WAITING_FOR_APPROVAL"
    RETRYING = "RETRYING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    TIMED_OUT = "TIMED_OUT"
    DEAD_LETTER = "DEAD_LETTER"


class ErrorClassification(str, Enum):
    """Failure taxonomy shared by backends, breaker and retry policy."""

    TRANSIENT = "transient"
    RESOURCE = "resource"
    TIMEOUT = "timeout"
    PERMANENT = "permanent"

    @property
    def retryable(self) -> bool:
        return self is not ErrorClassification.PERMANENT

    @property
    def counts_toward_breaker(self) -> bool:
        return self in {ErrorClassification.TRANSIENT, ErrorClassification.RESOURCE}


TERMINAL_STATUSES = frozenset(
    {
        JobStatus.COMPLETED,
        JobStatus.FAILED,
        JobStatus.TIMED_OUT,
        JobStatus.DEAD_LETTER,
    },
)

ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.SCHEDULED: frozenset(
        {JobStatus.RUNNING, JobStatus.RETRYING, JobStatus.FAILED, JobStatus.DEAD_LETTER},
    ),
    JobStatus.RUNNING: frozenset(
        {
            JobStatus.COMPLETED,
            JobStatus.FAILED,
            JobStatus.TIMED_OUT,
            JobStatus.WAITING_FOR_APPROVAL,
            JobStatus.RETRYING,
            JobStatus.DEAD_LETTER,
        },
    ),
    JobStatus.WAITING_FOR_APPROVAL: frozenset({JobStatus.RUNNING, JobStatus.FAILED}),
    JobStatus.RETRYING: frozenset({JobStatus.SCHEDULED, JobStatus.DEAD_LETTER}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.TIMED_OUT: frozenset(),
    JobStatus.DEAD_LETTER: frozenset(),
}


def is_transition_allowed(source: JobStatus, target: JobStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[source]


@dataclass(slots=True)
class AgentConfig:
    """Per-agent execution policy stored in `agents.config_json`."""

    backend_id: str | None = None
    requires_approval: bool = False
    approval_timeout_seconds: int | None = None
    system_prompt: str | None = None
    model: str | None = None
    allowed_tools: list[str] = field(default_factory=list)
    denied_tools: list[str] = field(default_factory=list)
    max_turns: int | None = None
    network_access: bool = False
    shell_access: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "backend_id": self.backend_id,
            "requires_approval": self.requires_approval,
            "approval_timeout_seconds": self.approval_timeout_seconds,
            "system_prompt": self.system_prompt,
            "model": self.model,
            "allowed_tools": list(self.allowed_tools),
            "denied_tools": list(self.denied_tools),
            "max_turns": self.max_turns,
            "network_access": self.network_access,
            "shell_access": self.shell_access,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> AgentConfig:
        if not payload:
            return cls()
        return cls(
            backend_id=payload.get("backend_id"),
            requires_approval=bool(payload.get("requires_approval", False)),
            approval_timeout_seconds=payload.get("approval_timeout_seconds"),
            system_prompt=payload.get("system_prompt"),
            model=payload.get("model"),
            allowed_tools=list(payload.get("allowed_tools") or []),
            denied_tools=list(payload.get("denied_tools") or []),
            max_turns=payload.get("max_turns"),
            network_access=bool(payload.get("network_access", False)),
            shell_access=bool(payload.get("shell_access", False)),
        )


@dataclass(slots=True)
class AgentView:
    """Readable agent row."""

    agent_id: str
    name: str
    config: AgentConfig
    created_at: datetime


@dataclass(slots=True)
class JobCreate:
    """Input payload for submitting a job."""

    agent_id: str
    prompt: str
    goal_type: str = "code_generate"
    job_id: str | None = None
    priority: int = 0
    max_attempts: int = 3
    timeout_seconds: int = 300
    workspace_path: str | None = None
    target_files: list[str] = field(default_factory=list)
    environment: dict[str, str] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        return {
            "prompt": self.prompt,
            "goal_type": self.goal_type,
            "workspace_path": self.workspace_path,
            "target_files": list(self.target_files),
            "environment": dict(self.environment),
        }


@dataclass(slots=True)
class JobView:
    """Readable job view for CLI and worker logic."""

    job_id: str
    agent_id: str
    status: JobStatus
    priority: int
    payload: dict[str, Any]
    result: dict[str, Any] | None
    error: dict[str, Any] | None
    attempt: int
    max_attempts: int
    timeout_seconds: int
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    heartbeat_at: datetime | None
    approval_expires_at: datetime | None
    approved_at: datetime | None

    @property
    def attempts_exhausted(self) -> bool:
        return self.attempt >= self.max_attempts


@dataclass(slots=True)
class JobEventView:
    """Job event entry for audit trail."""

    event_id: int
    job_id: str
    event_type: str
    status_from: JobStatus | None
    status_to: JobStatus | None
    created_at: datetime
    details: dict[str, Any]


@dataclass(slots=True)
class JobDetails:
    """Job with its audit trail."""

    job: JobView
    events: list[JobEventView]
