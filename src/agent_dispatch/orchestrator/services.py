"""Use-case services for agents and jobs."""

from __future__ import annotations

from dataclasses import dataclass, field

from agent_dispatch.orchestrator.models import (
    AgentConfig,
    AgentView,
    JobCreate,
    JobStatus,
    JobView,
)
from agent_dispatch.orchestrator.queue import AGENT_EXECUTE, JobQueue
from agent_dispatch.orchestrator.repository import JobRepository
from agent_dispatch.orchestrator.worker import job_queue_key


@dataclass(slots=True)
class SubmitJob:
    """High-level command to submit one prompt to an agent."""

    agent_id: str
    prompt: str
    goal_type: str = "code_generate"
    priority: int = 0
    max_attempts: int = 3
    timeout_seconds: int = 300
    workspace_path: str | None = None
    target_files: list[str] = field(default_factory=list)
    environment: dict[str, str] = field(default_factory=dict)


class JobService:
    """Coordinates job rows and queue entries."""

    def __init__(self, *, repository: JobRepository, queue: JobQueue) -> None:
        self.repository = repository
        self.queue = queue

    def add_agent(self, *, name: str, config: AgentConfig | None = None) -> AgentView:
        return self.repository.add_agent(name=name, config=config)

    def submit_job(self, command: SubmitJob) -> JobView:
        """Persist a SCHEDULED job and queue its first attempt."""

        if command.max_attempts <= 0:
            raise ValueError("max_attempts must be > 0")
        if command.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        job = self.repository.create_job(
            JobCreate(
                agent_id=command.agent_id,
                prompt=command.prompt,
                goal_type=command.goal_type,
                priority=command.priority,
                max_attempts=command.max_attempts,
                timeout_seconds=command.timeout_seconds,
                workspace_path=command.workspace_path,
                target_files=list(command.target_files),
                environment=dict(command.environment),
            ),
        )
        self.queue.add_job(
            AGENT_EXECUTE,
            {"job_id": job.job_id},
            job_key=job_queue_key(job.job_id),
            max_attempts=1,
        )
        return job

    def decide_approval(
        self,
        job_id: str,
        *,
        approved: bool,
        decided_by: str | None = None,
    ) -> JobStatus:
        """Apply a human decision; an approved job is queued to resume."""

        status = self.repository.apply_approval_decision(
            job_id,
            approved=approved,
            decided_by=decided_by,
        )
        if status is JobStatus.RUNNING:
            self.queue.add_job(
                AGENT_EXECUTE,
                {"job_id": job_id},
                job_key=job_queue_key(job_id),
                max_attempts=1,
            )
        return status
