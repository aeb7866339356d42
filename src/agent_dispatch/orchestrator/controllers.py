"""Controllers for dispatch CLI commands."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from agent_dispatch.config import Settings
from agent_dispatch.orchestrator.broadcaster import LoggingBroadcaster
from agent_dispatch.orchestrator.models import AgentConfig, JobDetails, JobStatus
from agent_dispatch.orchestrator.queue import SqliteJobQueue
from agent_dispatch.orchestrator.repository import JobRepository
from agent_dispatch.orchestrator.runtime import build_registry
from agent_dispatch.orchestrator.services import JobService, SubmitJob
from agent_dispatch.orchestrator.worker import OrchestratorWorker, WorkerRunSummary


@dataclass(slots=True)
class AgentAddCommand:
    """CLI input for agent registration."""

    db_path: Path | None
    name: str
    backend_id: str | None
    requires_approval: bool
    approval_timeout_seconds: int | None
    system_prompt: str | None
    model: str | None
    allowed_tools: tuple[str, ...]
    denied_tools: tuple[str, ...]
    max_turns: int | None
    network_access: bool = False
    shell_access: bool = False


@dataclass(slots=True)
class AgentListCommand:
    db_path: Path | None


@dataclass(slots=True)
class JobSubmitCommand:
    """CLI input for job submission."""

    db_path: Path | None
    agent_id: str
    prompt: str
    goal_type: str
    priority: int
    max_attempts: int
    timeout_seconds: int
    workspace_path: str | None
    target_files: tuple[str, ...]
    environment: tuple[str, ...] = ()


@dataclass(slots=True)
class JobListCommand:
    """CLI input for job listing."""

    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class JobShowCommand:
    """CLI input for job inspection."""

    db_path: Path | None
    job_id: str
    output_format: str = "text"


@dataclass(slots=True)
class JobDecisionCommand:
    """CLI input for approve/reject."""

    db_path: Path | None
    job_id: str
    approved: bool
    decided_by: str | None


@dataclass(slots=True)
class JobsReapCommand:
    db_path: Path | None


@dataclass(slots=True)
class WorkerRunCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    once: bool
    max_jobs: int | None
    concurrency: int | None = None
    max_idle_polls: int | None = None


@dataclass(slots=True)
class BackendsHealthCommand:
    db_path: Path | None


class DispatchCliController:
    """Coordinates agent, job, worker and backend CLI operations."""

    def add_agent(self, command: AgentAddCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        config = AgentConfig(
            backend_id=command.backend_id,
            requires_approval=command.requires_approval,
            approval_timeout_seconds=command.approval_timeout_seconds,
            system_prompt=command.system_prompt,
            model=command.model,
            allowed_tools=list(command.allowed_tools),
            denied_tools=list(command.denied_tools),
            max_turns=command.max_turns,
            network_access=command.network_access,
            shell_access=command.shell_access,
        )
        with _repository(settings) as repository:
            agent = repository.add_agent(name=command.name, config=config)
        return [
            f"Agent added: agent_id={agent.agent_id} name={agent.name} "
            f"backend={agent.config.backend_id or '-'} "
            f"requires_approval={agent.config.requires_approval}",
        ]

    def list_agents(self, command: AgentListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            agents = repository.list_agents()
        lines = [f"Agents: {len(agents)}"]
        for agent in agents:
            lines.append(
                f"  {agent.agent_id} name={agent.name} "
                f"backend={agent.config.backend_id or '-'} "
                f"requires_approval={agent.config.requires_approval}",
            )
        return lines

    def submit_job(self, command: JobSubmitCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        environment = _parse_environment(command.environment)
        with _repository(settings) as repository:
            service = JobService(repository=repository, queue=SqliteJobQueue(repository.engine))
            job = service.submit_job(
                SubmitJob(
                    agent_id=command.agent_id,
                    prompt=command.prompt,
                    goal_type=command.goal_type,
                    priority=command.priority,
                    max_attempts=command.max_attempts,
                    timeout_seconds=command.timeout_seconds,
                    workspace_path=command.workspace_path,
                    target_files=list(command.target_files),
                    environment=environment,
                ),
            )
        return [
            f"Job submitted: job_id={job.job_id} agent_id={job.agent_id} "
            f"status={job.status.value} max_attempts={job.max_attempts} "
            f"timeout={job.timeout_seconds}s",
        ]

    def list_jobs(self, command: JobListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with _repository(settings) as repository:
            jobs = repository.list_jobs(status=status_filter, limit=command.limit)

        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            lines.append(
                f"  {job.job_id} agent={job.agent_id} status={job.status.value} "
                f"priority={job.priority} attempt={job.attempt}/{job.max_attempts} "
                f"created_at={job.created_at.isoformat()}",
            )
        return lines

    def show_job(self, command: JobShowCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            details = repository.get_job_details(command.job_id)
        if details is None:
            return [f"Job not found: {command.job_id}"]
        if command.output_format == "json":
            return [_job_json(details)]

        job = details.job
        error = job.error or {}
        result = job.result or {}
        expires = job.approval_expires_at.isoformat() if job.approval_expires_at else "-"
        lines = [
            f"Job: {job.job_id}",
            f"Agent: {job.agent_id}",
            f"Status: {job.status.value}",
            f"Attempt: {job.attempt}/{job.max_attempts}",
            f"Timeout: {job.timeout_seconds}s",
            f"Approval expires: {expires}",
            f"Error: {error.get('reason_code') or '-'} {error.get('message') or ''}".rstrip(),
            f"Summary: {result.get('summary') or '-'}",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def decide_approval(self, command: JobDecisionCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            service = JobService(repository=repository, queue=SqliteJobQueue(repository.engine))
            status = service.decide_approval(
                command.job_id,
                approved=command.approved,
                decided_by=command.decided_by,
            )
        verb = "approved" if command.approved else "rejected"
        return [f"Job {verb}: job_id={command.job_id} status={status.value}"]

    def reap_jobs(self, command: JobsReapCommand) -> list[str]:
        """Fail zombie jobs and expired approvals without running a worker."""

        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            reaped = repository.reap_zombie_jobs(
                threshold_seconds=settings.worker.zombie_threshold_seconds,
            )
            expired = repository.expire_approvals()
        lines = [f"Reaped: zombies={len(reaped)} expired_approvals={len(expired)}"]
        lines.extend(f"  zombie {job_id}" for job_id in reaped)
        lines.extend(f"  expired {job_id}" for job_id in expired)
        return lines

    def run_worker(self, command: WorkerRunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            summary = asyncio.run(_run_worker(settings, repository, command))

        return [
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} retried={summary.retried} "
            f"timeouts={summary.timeouts} dead_lettered={summary.dead_lettered} "
            f"waiting_approval={summary.waiting_approval} idle_polls={summary.idle_polls}",
        ]

    def backends_health(self, command: BackendsHealthCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        return asyncio.run(_backends_health(settings))


async def _run_worker(
    settings: Settings,
    repository: JobRepository,
    command: WorkerRunCommand,
) -> WorkerRunSummary:
    registry = await build_registry(settings)
    try:
        worker = OrchestratorWorker(
            repository=repository,
            queue=SqliteJobQueue(repository.engine),
            registry=registry,
            broadcaster=LoggingBroadcaster(),
            settings=settings.worker,
            retry_settings=settings.retry,
        )
        if command.once:
            return await worker.run_once()
        return await worker.run_loop(
            concurrency=command.concurrency,
            max_jobs=command.max_jobs,
            max_idle_polls=command.max_idle_polls,
        )
    finally:
        await registry.stop_all()


async def _backends_health(settings: Settings) -> list[str]:
    registry = await build_registry(settings)
    try:
        reports = await registry.get_all_health()
        states = registry.get_circuit_states()
    finally:
        await registry.stop_all()

    lines = [f"Backends: {len(reports)}"]
    for report in reports:
        state = states.get(report.backend_id)
        lines.append(
            f"  {report.backend_id} status={report.status.value} "
            f"circuit={state.value if state is not None else '-'} "
            f"reason={report.reason or '-'}",
        )
    return lines


def _parse_status(value: str | None) -> JobStatus | None:
    if value is None:
        return None
    return JobStatus(value.strip().upper())


def _parse_environment(pairs: tuple[str, ...]) -> dict[str, str]:
    environment: dict[str, str] = {}
    for pair in pairs:
        if "=" not in pair:
            raise ValueError(f"Invalid environment entry {pair!r}; expected KEY=VALUE")
        key, value = pair.split("=", 1)
        environment[key.strip()] = value
    return environment


def _job_json(details: JobDetails) -> str:
    job = details.job
    return json.dumps(
        {
            "job_id": job.job_id,
            "agent_id": job.agent_id,
            "status": job.status.value,
            "attempt": job.attempt,
            "max_attempts": job.max_attempts,
            "payload": job.payload,
            "result": job.result,
            "error": job.error,
            "events": [
                {
                    "event_type": event.event_type,
                    "status_from": event.status_from.value if event.status_from else None,
                    "status_to": event.status_to.value if event.status_to else None,
                    "created_at": event.created_at.isoformat(),
                    "details": event.details,
                }
                for event in details.events
            ],
        },
        ensure_ascii=False,
        indent=2,
    )


@contextmanager
def _repository(settings: Settings) -> Iterator[JobRepository]:
    repository = JobRepository(settings.db_path)
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
