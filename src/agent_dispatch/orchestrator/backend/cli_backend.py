"""Subprocess-based backend for coding CLI agents emitting stream-json lines."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import shlex
import shutil
import time
from pathlib import Path
from typing import Any

from agent_dispatch.orchestrator.backend.base import (
    ALL_GOAL_TYPES,
    BackendCapabilities,
    BackendHealthReport,
    ExecutionResult,
    ExecutionStatus,
    ExecutionTask,
    FileChange,
    FileChangeEvent,
    HealthStatus,
    OutputEvent,
    TextEvent,
    TokenUsage,
    ToolResultEvent,
    ToolUseEvent,
    UsageEvent,
    failed_result,
)
from agent_dispatch.orchestrator.backend.env_policy import build_backend_spawn_env
from agent_dispatch.orchestrator.backend.handle import ChannelExecutionHandle, Emit
from agent_dispatch.orchestrator.errors import BackendNotStartedError, BackendStartError
from agent_dispatch.orchestrator.failure_classifier import (
    SIGTERM_EXIT_CODE,
    classify_exception,
    classify_exit_code,
)
from agent_dispatch.orchestrator.models import ErrorClassification
from agent_dispatch.storage.common import utc_now

logger = logging.getLogger(__name__)

VERSION_TIMEOUT_SECONDS = 10.0
HEALTH_VERSION_TIMEOUT_SECONDS = 5.0
DEGRADED_LATENCY_MS = 3000
GIT_TIMEOUT_SECONDS = 5.0
TERMINATE_GRACE_SECONDS = 5.0
SUMMARY_TAIL_CHARS = 500
STREAM_LINE_LIMIT_BYTES = 16 * 1024 * 1024


class BackendRunError(RuntimeError):
    """Backend execution error with its failure classification."""

    def __init__(self, message: str, *, classification: ErrorClassification) -> None:
        super().__init__(message)
        self.classification = classification


class CliAgentBackend:
    """Run a coding CLI per task and normalize its stream-json output.

    Config keys accepted by `start()`: ``binary_path``, ``command_template``
    (placeholders ``{prompt}``, ``{model}``, ``{max_turns}``) and
    ``credential_env``.
    """

    def __init__(self, backend_id: str = "claude-code") -> None:
        self._backend_id = backend_id
        self.binary_path = "claude"
        self.command_template: str | None = None
        self.credential_env = "ANTHROPIC_API_KEY"
        self._started = False
        self._handles: set[ChannelExecutionHandle] = set()

    @property
    def backend_id(self) -> str:
        return self._backend_id

    async def start(self, config: dict[str, Any]) -> None:
        self.binary_path = str(config.get("binary_path") or self.binary_path)
        template = config.get("command_template")
        self.command_template = str(template) if template else None
        self.credential_env = str(config.get("credential_env") or self.credential_env)
        if self.command_template is not None and "{prompt}" not in self.command_template:
            raise BackendStartError("CLI backend command template must include {prompt}.")

        try:
            exit_code, stdout, _ = await _run_short_command(
                [self.binary_path, "--version"],
                timeout_seconds=VERSION_TIMEOUT_SECONDS,
            )
        except FileNotFoundError as error:
            raise BackendStartError(
                f"CLI backend binary not found: {self.binary_path}",
            ) from error
        except (OSError, TimeoutError) as error:
            raise BackendStartError(
                f"CLI backend binary {self.binary_path} failed to report a version: {error}",
            ) from error
        if exit_code != 0 or not stdout.strip():
            raise BackendStartError(
                f"CLI backend binary at {self.binary_path!r} returned empty version",
            )
        self._started = True
        logger.info("CLI backend %s started (%s)", self._backend_id, stdout.strip())

    async def stop(self) -> None:
        handles = list(self._handles)
        if handles:
            await asyncio.gather(*(handle.cancel("backend stopped") for handle in handles))
        self._handles.clear()
        self._started = False

    async def health_check(self) -> BackendHealthReport:
        started = time.monotonic()
        try:
            if shutil.which(self.binary_path) is None and not os.access(self.binary_path, os.X_OK):
                raise FileNotFoundError(f"{self.binary_path} is not an executable on PATH")
            _, stdout, _ = await _run_short_command(
                [self.binary_path, "--version"],
                timeout_seconds=HEALTH_VERSION_TIMEOUT_SECONDS,
            )
        except (OSError, TimeoutError) as error:
            return BackendHealthReport(
                backend_id=self._backend_id,
                status=HealthStatus.UNHEALTHY,
                reason=str(error) or type(error).__name__,
                checked_at=utc_now(),
                latency_ms=_elapsed_ms(started),
            )

        latency_ms = _elapsed_ms(started)
        has_credentials = bool(os.environ.get(self.credential_env))
        details = {"version": stdout.strip(), "has_credentials": has_credentials}
        if not has_credentials:
            return BackendHealthReport(
                backend_id=self._backend_id,
                status=HealthStatus.UNHEALTHY,
                reason=f"{self.credential_env} not configured",
                checked_at=utc_now(),
                latency_ms=latency_ms,
                details=details,
            )
        slow = latency_ms > DEGRADED_LATENCY_MS
        return BackendHealthReport(
            backend_id=self._backend_id,
            status=HealthStatus.DEGRADED if slow else HealthStatus.HEALTHY,
            reason=f"Health check slow: {latency_ms}ms" if slow else None,
            checked_at=utc_now(),
            latency_ms=latency_ms,
            details=details,
        )

    async def execute_task(self, task: ExecutionTask) -> ChannelExecutionHandle:
        if not self._started:
            raise BackendNotStartedError(f"Backend {self._backend_id} is not started")

        run_args = _build_run_args(
            binary_path=self.binary_path,
            command_template=self.command_template,
            task=task,
            prompt=_build_prompt(task),
        )
        handle = ChannelExecutionHandle(
            task_id=task.id,
            producer=lambda emit: self._run(task=task, run_args=run_args, emit=emit),
        )
        self._handles.add(handle)
        handle.add_settle_callback(self._handles.discard)
        return handle

    def get_capabilities(self) -> BackendCapabilities:
        return BackendCapabilities(
            supports_streaming=True,
            supports_file_edit=True,
            supports_shell_execution=True,
            reports_token_usage=True,
            supports_cancellation=True,
            supported_goal_types=ALL_GOAL_TYPES,
            max_context_tokens=200_000,
        )

    async def _run(  # noqa: C901
        self,
        *,
        task: ExecutionTask,
        run_args: list[str],
        emit: Emit,
    ) -> ExecutionResult:
        started = time.monotonic()
        workspace = task.context.workspace_path or "."
        try:
            process = await asyncio.create_subprocess_exec(
                *run_args,
                cwd=workspace,
                env=build_backend_spawn_env(task.context.environment),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LINE_LIMIT_BYTES,
            )
        except FileNotFoundError:
            return failed_result(
                task_id=task.id,
                message=f"CLI backend command not found: {run_args[0]}",
                classification=ErrorClassification.PERMANENT,
                code="command_not_found",
            )
        except OSError as error:
            classified = classify_exception(error)
            return failed_result(
                task_id=task.id,
                message=f"CLI backend failed to start: {error}",
                classification=classified.classification,
                code=classified.reason_code,
            )

        stream = _StreamState()
        stderr_reader = asyncio.create_task(_read_all(process.stderr))
        timed_out = False
        try:
            try:
                async with asyncio.timeout(task.constraints.timeout_seconds):
                    if process.stdout is not None:
                        async for raw_line in process.stdout:
                            text = raw_line.decode("utf-8", errors="replace")
                            for event in stream.consume(text):
                                await emit(event)
                    exit_code = await process.wait()
            except TimeoutError:
                timed_out = True
                await _terminate(process)
                exit_code = SIGTERM_EXIT_CODE
        finally:
            if process.returncode is None:
                await _terminate(process)
            stderr_text = await _finish_reader(stderr_reader)

        file_changes = await _collect_file_changes(Path(workspace))
        for change in file_changes:
            await emit(FileChangeEvent(path=change.path, operation=change.operation))

        duration_ms = _elapsed_ms(started)
        if timed_out:
            result = failed_result(
                task_id=task.id,
                message=f"Process timed out after {task.constraints.timeout_seconds:g}s",
                classification=ErrorClassification.TIMEOUT,
                status=ExecutionStatus.TIMED_OUT,
                code="process_timeout",
                partial_execution=True,
                exit_code=exit_code,
                duration_ms=duration_ms,
            )
        elif exit_code == 0:
            return ExecutionResult(
                task_id=task.id,
                status=ExecutionStatus.COMPLETED,
                exit_code=0,
                summary=stream.summary(),
                file_changes=file_changes,
                stdout=stream.stdout,
                stderr=stderr_text,
                token_usage=stream.token_usage,
                duration_ms=duration_ms,
            )
        else:
            classified = classify_exit_code(exit_code)
            result = failed_result(
                task_id=task.id,
                message=stderr_text.strip() or f"Process exited with code {exit_code}",
                classification=classified.classification,
                status=(
                    ExecutionStatus.TIMED_OUT
                    if classified.classification is ErrorClassification.TIMEOUT
                    else ExecutionStatus.FAILED
                ),
                code=classified.reason_code,
                partial_execution=bool(stream.stdout),
                exit_code=exit_code,
                duration_ms=duration_ms,
            )
        result.file_changes = file_changes
        result.stdout = stream.stdout
        result.stderr = stderr_text
        result.token_usage = stream.token_usage
        return result


class _StreamState:
    """Accumulates stdout text, usage and the final result line."""

    def __init__(self) -> None:
        self.stdout = ""
        self.token_usage = TokenUsage()
        self.result_text: str | None = None

    def summary(self) -> str:
        if self.result_text is not None:
            return self.result_text
        return self.stdout[-SUMMARY_TAIL_CHARS:]

    def consume(self, line: str) -> list[OutputEvent]:
        stripped = line.strip()
        if not stripped:
            return []
        try:
            parsed = json.loads(stripped)
        except json.JSONDecodeError:
            parsed = None
        if not isinstance(parsed, dict):
            self.stdout += stripped + "\n"
            return [TextEvent(content=stripped)]
        return self._map_event(parsed)

    def _map_event(self, payload: dict[str, Any]) -> list[OutputEvent]:
        event_type = payload.get("type")
        if event_type == "assistant":
            message = payload.get("message") or {}
            text = "".join(
                block.get("text", "")
                for block in message.get("content", [])
                if isinstance(block, dict) and block.get("type") == "text"
            )
            if not text:
                return []
            self.stdout += text
            return [TextEvent(content=text)]

        if event_type == "tool_use":
            tool = payload.get("tool") or {}
            if not tool:
                return []
            return [
                ToolUseEvent(tool_name=tool.get("name", ""), tool_input=tool.get("input") or {}),
            ]

        if event_type == "tool_result":
            tool = payload.get("tool") or {}
            if not tool:
                return []
            return [
                ToolResultEvent(
                    tool_name=tool.get("name", ""),
                    output=str(tool.get("output", "")),
                    is_error=bool(tool.get("is_error", False)),
                ),
            ]

        if event_type == "result":
            usage = payload.get("usage") or {}
            self.token_usage = TokenUsage(
                input_tokens=int(usage.get("input_tokens", 0)),
                output_tokens=int(usage.get("output_tokens", 0)),
                cost_usd=float(payload.get("total_cost_usd", 0.0) or 0.0),
                cache_read_tokens=int(usage.get("cache_read_input_tokens", 0)),
                cache_creation_tokens=int(usage.get("cache_creation_input_tokens", 0)),
            )
            if isinstance(payload.get("result"), str):
                self.result_text = payload["result"]
            return [UsageEvent(token_usage=self.token_usage)]

        return []


def _build_prompt(task: ExecutionTask) -> str:
    parts: list[str] = []
    if task.context.system_prompt:
        parts.append(task.context.system_prompt)
    parts.extend(f"<memory>\n{memory}\n</memory>" for memory in task.context.memories)
    if task.instruction.conversation_history:
        parts.append("Previous conversation:")
        parts.extend(
            f"{turn.role}: {turn.content}" for turn in task.instruction.conversation_history
        )
    if task.instruction.target_files:
        parts.append(f"Focus on these files: {', '.join(task.instruction.target_files)}")
    parts.append(task.instruction.prompt)
    return "\n\n".join(parts)


def _build_run_args(
    *,
    binary_path: str,
    command_template: str | None,
    task: ExecutionTask,
    prompt: str,
) -> list[str]:
    constraints = task.constraints
    if command_template is None:
        args = [
            binary_path,
            "--print",
            "--output-format",
            "stream-json",
            "--verbose",
            "--max-turns",
            str(constraints.max_turns),
        ]
        if constraints.model:
            args.extend(["--model", constraints.model])
        for tool in constraints.allowed_tools:
            args.extend(["--allowedTools", tool])
        for tool in constraints.denied_tools:
            args.extend(["--disallowedTools", tool])
        args.append(prompt)
        return args

    stripped = command_template.strip()
    if "{prompt}" not in stripped:
        raise BackendRunError(
            "CLI backend command template must include {prompt}.",
            classification=ErrorClassification.PERMANENT,
        )
    try:
        rendered = stripped.format(
            prompt=shlex.quote(prompt),
            model=shlex.quote(constraints.model),
            max_turns=shlex.quote(str(constraints.max_turns)),
        )
    except KeyError as error:
        raise BackendRunError(
            f"Unsupported command template placeholder: {error}",
            classification=ErrorClassification.PERMANENT,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise BackendRunError(
            "CLI backend command template rendered empty command.",
            classification=ErrorClassification.PERMANENT,
        )
    return argv


async def _run_short_command(
    args: list[str],
    *,
    timeout_seconds: float,
    cwd: Path | None = None,
) -> tuple[int, str, str]:
    process = await asyncio.create_subprocess_exec(
        *args,
        cwd=str(cwd) if cwd is not None else None,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout_seconds)
    except TimeoutError:
        await _terminate(process)
        raise
    return (
        process.returncode if process.returncode is not None else -1,
        stdout.decode("utf-8", errors="replace"),
        stderr.decode("utf-8", errors="replace"),
    )


async def _collect_file_changes(workspace: Path) -> list[FileChange]:
    """List workspace changes from git; an unusable workspace yields none."""

    if not (workspace / ".git").exists():
        return []
    try:
        exit_code, diff_output, _ = await _run_short_command(
            ["git", "diff", "--name-status", "HEAD"],
            timeout_seconds=GIT_TIMEOUT_SECONDS,
            cwd=workspace,
        )
        untracked_code, untracked_output, _ = await _run_short_command(
            ["git", "ls-files", "--others", "--exclude-standard"],
            timeout_seconds=GIT_TIMEOUT_SECONDS,
            cwd=workspace,
        )
    except (OSError, TimeoutError) as error:
        logger.debug("git change collection failed in %s: %s", workspace, error)
        return []

    changes: list[FileChange] = []
    if exit_code == 0:
        for line in diff_output.splitlines():
            if not line.strip():
                continue
            status, _, path = line.partition("\t")
            operation = {"A": "created", "D": "deleted"}.get(status[:1], "modified")
            changes.append(FileChange(path=path, operation=operation))  # type: ignore[arg-type]
    if untracked_code == 0:
        changes.extend(
            FileChange(path=path.strip(), operation="created")
            for path in untracked_output.splitlines()
            if path.strip()
        )
    return changes


async def _read_all(stream: asyncio.StreamReader | None) -> str:
    if stream is None:
        return ""
    data = await stream.read()
    return data.decode("utf-8", errors="replace")


async def _finish_reader(reader: asyncio.Task[str]) -> str:
    try:
        return await asyncio.wait_for(reader, timeout=1.0)
    except (TimeoutError, OSError, ValueError):
        return ""


async def _terminate(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    with contextlib.suppress(ProcessLookupError):
        process.terminate()
    try:
        await asyncio.wait_for(process.wait(), timeout=TERMINATE_GRACE_SECONDS)
    except TimeoutError:
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        await process.wait()


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
