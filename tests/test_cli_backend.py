from __future__ import annotations

import shutil
import subprocess
import sys
from pathlib import Path

import allure
import pytest
from conftest import fake_agent_template, make_task

from agent_dispatch.orchestrator.backend.base import (
    ExecutionStatus,
    FileChangeEvent,
    HealthStatus,
    TaskContext,
    TextEvent,
    ToolResultEvent,
    ToolUseEvent,
    UsageEvent,
)
from agent_dispatch.orchestrator.backend.cli_backend import (
    CliAgentBackend,
    _build_prompt,
    _build_run_args,
)
from agent_dispatch.orchestrator.errors import BackendNotStartedError, BackendStartError
from agent_dispatch.orchestrator.models import ErrorClassification

pytestmark = [
    allure.epic("Execution Backends"),
    allure.feature("CLI Agent Backend"),
]

SRC_DIR = Path(__file__).resolve().parents[1] / "src"


async def _started_backend(*agent_args: str) -> CliAgentBackend:
    backend = CliAgentBackend()
    await backend.start(
        {
            "binary_path": sys.executable,
            "command_template": fake_agent_template(*agent_args),
            "credential_env": "FAKE_AGENT_KEY",
        },
    )
    return backend


def _task_in(workspace: Path, prompt: str = "hello", **constraints: object):
    task = make_task(prompt, **constraints)
    task.context = TaskContext(
        workspace_path=str(workspace),
        environment={"PYTHONPATH": str(SRC_DIR)},
    )
    return task


def test_default_command_uses_stream_json_and_constraints() -> None:
    task = make_task("fix it", model="sonnet", max_turns=4, allowed_tools=["Read"])

    args = _build_run_args(
        binary_path="claude",
        command_template=None,
        task=task,
        prompt="fix it",
    )

    assert args[:5] == ["claude", "--print", "--output-format", "stream-json", "--verbose"]
    assert args[args.index("--max-turns") + 1] == "4"
    assert args[args.index("--model") + 1] == "sonnet"
    assert args[args.index("--allowedTools") + 1] == "Read"
    assert args[-1] == "fix it"


def test_template_placeholders_are_shell_quoted() -> None:
    args = _build_run_args(
        binary_path="unused",
        command_template="agent --model {model} {prompt}",
        task=make_task(model="m 1"),
        prompt="two words; rm -rf /",
    )

    assert args == ["agent", "--model", "m 1", "two words; rm -rf /"]


def test_prompt_includes_system_prompt_and_target_files() -> None:
    task = make_task("do it")
    task.context.system_prompt = "Be careful."
    task.instruction.target_files = ["a.py", "b.py"]

    prompt = _build_prompt(task)

    assert prompt.startswith("Be careful.")
    assert "Focus on these files: a.py, b.py" in prompt
    assert prompt.endswith("do it")


@pytest.mark.asyncio
async def test_start_rejects_missing_binary(tmp_path: Path) -> None:
    backend = CliAgentBackend()

    with pytest.raises(BackendStartError, match="not found"):
        await backend.start({"binary_path": str(tmp_path / "missing-agent")})


@pytest.mark.asyncio
async def test_start_rejects_template_without_prompt() -> None:
    backend = CliAgentBackend()

    with pytest.raises(BackendStartError, match="prompt"):
        await backend.start({"binary_path": sys.executable, "command_template": "agent --x"})


@pytest.mark.asyncio
async def test_execute_requires_start() -> None:
    with pytest.raises(BackendNotStartedError):
        await CliAgentBackend().execute_task(make_task())


@pytest.mark.asyncio
async def test_successful_run_streams_normalized_events(tmp_path: Path) -> None:
    backend = await _started_backend("--create", "a.txt", "--create", "b.txt")

    handle = await backend.execute_task(_task_in(tmp_path, "Create two files"))
    events = [event async for event in handle.events()]
    result = await handle.result()

    assert result.status is ExecutionStatus.COMPLETED
    assert result.exit_code == 0
    assert result.summary == "Created 2 files"
    assert result.stdout == "Create two files"
    assert result.token_usage.input_tokens == 12
    assert result.token_usage.output_tokens == 7
    assert (tmp_path / "a.txt").exists()
    assert isinstance(events[0], TextEvent)
    assert sum(isinstance(event, ToolUseEvent) for event in events) == 2
    assert sum(isinstance(event, ToolResultEvent) for event in events) == 2
    assert any(isinstance(event, UsageEvent) for event in events)
    assert events[-1].type == "complete"
    await backend.stop()


@pytest.mark.asyncio
@pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")
async def test_file_changes_are_collected_from_git(tmp_path: Path) -> None:
    subprocess.run(["git", "init", "-q", str(tmp_path)], check=True)  # noqa: S603, S607
    backend = await _started_backend("--create", "new.txt")

    handle = await backend.execute_task(_task_in(tmp_path))
    events = [event async for event in handle.events()]
    result = await handle.result()

    assert [change.path for change in result.file_changes] == ["new.txt"]
    assert result.file_changes[0].operation == "created"
    assert any(isinstance(event, FileChangeEvent) for event in events)


@pytest.mark.asyncio
async def test_nonzero_exit_is_permanent_failure_with_stderr(tmp_path: Path) -> None:
    backend = await _started_backend("--mode", "fail")

    result = await (await backend.execute_task(_task_in(tmp_path))).result()

    assert result.status is ExecutionStatus.FAILED
    assert result.exit_code == 2
    assert "model not found" in result.stderr
    assert result.error is not None
    assert result.error.classification is ErrorClassification.PERMANENT


@pytest.mark.asyncio
async def test_killed_process_is_resource_failure(tmp_path: Path) -> None:
    backend = await _started_backend("--mode", "killed")

    result = await (await backend.execute_task(_task_in(tmp_path))).result()

    assert result.exit_code == 137
    assert result.error is not None
    assert result.error.classification is ErrorClassification.RESOURCE


@pytest.mark.asyncio
async def test_raw_lines_become_text_events(tmp_path: Path) -> None:
    backend = await _started_backend("--mode", "raw")

    handle = await backend.execute_task(_task_in(tmp_path))
    events = [event async for event in handle.events()]
    result = await handle.result()

    assert any(
        isinstance(event, TextEvent) and event.content == "plain progress line" for event in events
    )
    assert result.summary == "raw done"


@pytest.mark.asyncio
async def test_hanging_process_times_out(tmp_path: Path) -> None:
    backend = await _started_backend("--mode", "hang")

    result = await (await backend.execute_task(_task_in(tmp_path, timeout_seconds=1.0))).result()

    assert result.status is ExecutionStatus.TIMED_OUT
    assert result.error is not None
    assert result.error.code == "process_timeout"
    assert result.error.partial_execution
    assert result.stdout == "working"


@pytest.mark.asyncio
async def test_cancel_terminates_running_process(tmp_path: Path) -> None:
    backend = await _started_backend("--mode", "hang")
    handle = await backend.execute_task(_task_in(tmp_path))
    events = handle.events()
    first = await events.__anext__()

    await handle.cancel("user requested")
    await events.aclose()
    result = await handle.result()

    assert isinstance(first, TextEvent)
    assert result.status is ExecutionStatus.CANCELLED
    await backend.stop()


@pytest.mark.asyncio
async def test_health_requires_credentials(monkeypatch: pytest.MonkeyPatch) -> None:
    backend = await _started_backend()
    monkeypatch.delenv("FAKE_AGENT_KEY", raising=False)

    missing = await backend.health_check()
    monkeypatch.setenv("FAKE_AGENT_KEY", "present")
    present = await backend.health_check()

    assert missing.status is HealthStatus.UNHEALTHY
    assert "FAKE_AGENT_KEY" in (missing.reason or "")
    assert present.status in {HealthStatus.HEALTHY, HealthStatus.DEGRADED}
    assert present.details["has_credentials"] is True
