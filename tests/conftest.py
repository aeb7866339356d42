"""Shared test fixtures."""

from __future__ import annotations

import sys
from collections.abc import Iterator
from pathlib import Path

import pytest

from agent_dispatch.orchestrator.backend.base import ExecutionTask, TaskConstraints, TaskInstruction
from agent_dispatch.orchestrator.queue import SqliteJobQueue
from agent_dispatch.orchestrator.repository import JobRepository

FAKE_AGENT_MODULE = "agent_dispatch.orchestrator.backend.fake_agent"


def fake_agent_template(*args: str) -> str:
    """Command template running the local fake agent with extra arguments."""

    return " ".join([sys.executable, "-m", FAKE_AGENT_MODULE, *args, "{prompt}"])


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[JobRepository]:
    repo = JobRepository(tmp_path / "dispatch.db")
    repo.init_schema()
    yield repo
    repo.close()


@pytest.fixture()
def job_queue(repository: JobRepository) -> SqliteJobQueue:
    return SqliteJobQueue(repository.engine)


def make_task(prompt: str = "Say hello", **constraints: object) -> ExecutionTask:
    return ExecutionTask(
        id="task-1",
        job_id="job-1",
        agent_id="agent-1",
        instruction=TaskInstruction(prompt=prompt),
        constraints=TaskConstraints(**constraints),  # type: ignore[arg-type]
    )
