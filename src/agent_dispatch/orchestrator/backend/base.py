"""Backend interface for orchestrator task execution."""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Literal, Protocol

from agent_dispatch.orchestrator.models import ErrorClassification
from agent_dispatch.storage.common import utc_now

GoalType = Literal["code_edit", "code_generate", "code_review", "shell_command", "research"]
FileOperation = Literal["created", "modified", "deleted"]

DEFAULT_MAX_TURNS = 10

ALL_GOAL_TYPES: tuple[GoalType, ...] = (
    "code_edit",
    "code_generate",
    "code_review",
    "shell_command",
    "research",
)


class ExecutionStatus(str, Enum):
    """Terminal status of one task execution."""

    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass(slots=True)
class ConversationTurn:
    role: Literal["user", "assistant"]
    content: str


@dataclass(slots=True)
class TaskInstruction:
    """What the agent should do."""

    prompt: str
    goal_type: GoalType = "code_generate"
    target_files: list[str] = field(default_factory=list)
    conversation_history: list[ConversationTurn] = field(default_factory=list)


@dataclass(slots=True)
class TaskContext:
    """Where and with what background the agent works."""

    workspace_path: str = "."
    system_prompt: str = ""
    memories: list[str] = field(default_factory=list)
    relevant_files: dict[str, str] = field(default_factory=dict)
    environment: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class TaskConstraints:
    """Limits applied to one execution."""

    timeout_seconds: float = 300.0
    max_tokens: int = 4096
    model: str = ""
    allowed_tools: list[str] = field(default_factory=list)
    denied_tools: list[str] = field(default_factory=list)
    max_turns: int = DEFAULT_MAX_TURNS
    network_access: bool = False
    shell_access: bool = False


@dataclass(slots=True)
class ExecutionTask:
    """One unit of agentic work, created per attempt."""

    id: str
    job_id: str
    agent_id: str
    instruction: TaskInstruction
    context: TaskContext = field(default_factory=TaskContext)
    constraints: TaskConstraints = field(default_factory=TaskConstraints)


@dataclass(slots=True)
class FileChange:
    path: str
    operation: FileOperation
    diff: str | None = None


@dataclass(slots=True)
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    cache_read_tokens: int = 0
    cache_creation_tokens: int = 0

    def add(self, other: TokenUsage) -> None:
        """Accumulate another usage sample in place."""

        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens
        self.cost_usd += other.cost_usd
        self.cache_read_tokens += other.cache_read_tokens
        self.cache_creation_tokens += other.cache_creation_tokens


@dataclass(slots=True)
class ExecutionArtifact:
    type: str
    name: str
    content: str
    mime_type: str = "text/plain"


@dataclass(slots=True)
class ExecutionError:
    """Failure details attached to a failed result."""

    message: str
    classification: ErrorClassification
    code: str | None = None
    partial_execution: bool = False


@dataclass(slots=True)
class ExecutionResult:
    """Terminal outcome of one task execution."""

    task_id: str
    status: ExecutionStatus
    exit_code: int | None = None
    summary: str = ""
    file_changes: list[FileChange] = field(default_factory=list)
    stdout: str = ""
    stderr: str = ""
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    artifacts: list[ExecutionArtifact] = field(default_factory=list)
    duration_ms: int = 0
    error: ExecutionError | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize for job persistence and broadcasting."""

        payload = asdict(self)
        payload["status"] = self.status.value
        if self.error is not None:
            payload["error"]["classification"] = self.error.classification.value
        return payload


def failed_result(  # noqa: PLR0913
    *,
    task_id: str,
    message: str,
    classification: ErrorClassification,
    status: ExecutionStatus = ExecutionStatus.FAILED,
    code: str | None = None,
    partial_execution: bool = False,
    exit_code: int | None = None,
    duration_ms: int = 0,
) -> ExecutionResult:
    """Build a non-completed result carrying one error."""

    return ExecutionResult(
        task_id=task_id,
        status=status,
        exit_code=exit_code,
        summary=message,
        duration_ms=duration_ms,
        error=ExecutionError(
            message=message,
            classification=classification,
            code=code,
            partial_execution=partial_execution,
        ),
    )


@dataclass(slots=True)
class TextEvent:
    content: str
    timestamp: datetime = field(default_factory=utc_now)
    type: ClassVar[str] = "text"


@dataclass(slots=True)
class ToolUseEvent:
    tool_name: str
    tool_input: dict[str, Any]
    timestamp: datetime = field(default_factory=utc_now)
    type: ClassVar[str] = "tool_use"


@dataclass(slots=True)
class ToolResultEvent:
    tool_name: str
    output: str
    is_error: bool = False
    timestamp: datetime = field(default_factory=utc_now)
    type: ClassVar[str] = "tool_result"


@dataclass(slots=True)
class FileChangeEvent:
    path: str
    operation: FileOperation
    timestamp: datetime = field(default_factory=utc_now)
    type: ClassVar[str] = "file_change"


@dataclass(slots=True)
class ProgressEvent:
    message: str
    percent: float | None = None
    timestamp: datetime = field(default_factory=utc_now)
    type: ClassVar[str] = "progress"


@dataclass(slots=True)
class UsageEvent:
    token_usage: TokenUsage
    timestamp: datetime = field(default_factory=utc_now)
    type: ClassVar[str] = "usage"


@dataclass(slots=True)
class ErrorEvent:
    message: str
    classification: ErrorClassification
    timestamp: datetime = field(default_factory=utc_now)
    type: ClassVar[str] = "error"


@dataclass(slots=True)
class CompleteEvent:
    result: ExecutionResult
    timestamp: datetime = field(default_factory=utc_now)
    type: ClassVar[str] = "complete"


OutputEvent = (
    TextEvent
    | ToolUseEvent
    | ToolResultEvent
    | FileChangeEvent
    | ProgressEvent
    | UsageEvent
    | ErrorEvent
    | CompleteEvent
)


def event_to_dict(event: OutputEvent) -> dict[str, Any]:
    """Serialize one output event into a JSON-friendly mapping."""

    if isinstance(event, CompleteEvent):
        payload: dict[str, Any] = {"result": event.result.to_dict()}
    else:
        payload = asdict(event)
        payload.pop("timestamp", None)
        if isinstance(event, ErrorEvent):
            payload["classification"] = event.classification.value
    payload["type"] = event.type
    payload["timestamp"] = event.timestamp.isoformat()
    return payload


@dataclass(slots=True)
class BackendHealthReport:
    backend_id: str
    status: HealthStatus
    checked_at: datetime
    latency_ms: int = 0
    reason: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class BackendCapabilities:
    """Static descriptor for display and negotiation, never for admission."""

    supports_streaming: bool
    supports_file_edit: bool
    supports_shell_execution: bool
    reports_token_usage: bool
    supports_cancellation: bool
    supported_goal_types: tuple[GoalType, ...]
    max_context_tokens: int


class ExecutionHandle(Protocol):
    """Live handle for one in-flight task."""

    @property
    def task_id(self) -> str:
        """Id of the task this handle drives."""

    def events(self) -> AsyncIterator[OutputEvent]:
        """Yield events in emission order, ending with one `complete` event."""

    async def result(self) -> ExecutionResult:
        """Resolve to the terminal result, identical for every caller."""

    async def cancel(self, reason: str) -> None:
        """Request cancellation; idempotent and best-effort."""


class ExecutionBackend(Protocol):
    """Protocol implemented by every execution backend variant."""

    @property
    def backend_id(self) -> str:
        """Stable registry id."""

    async def start(self, config: dict[str, Any]) -> None:
        """Validate configuration and prepare resources; raise on fatal misconfiguration."""

    async def stop(self) -> None:
        """Terminate active executions; safe to call when idle."""

    async def health_check(self) -> BackendHealthReport:
        """Probe backend health within a few seconds without raising."""

    async def execute_task(self, task: ExecutionTask) -> ExecutionHandle:
        """Return a live handle immediately; raise if not started."""

    def get_capabilities(self) -> BackendCapabilities:
        """Return the static capability descriptor."""
