from __future__ import annotations

from datetime import timedelta
from uuid import uuid4

import allure
import pytest

from agent_dispatch.orchestrator.errors import InvalidJobTransitionError, JobNotFoundError
from agent_dispatch.orchestrator.models import AgentConfig, JobCreate, JobStatus, JobView
from agent_dispatch.orchestrator.repository import JobRepository
from agent_dispatch.storage.common import utc_now

pytestmark = [
    allure.epic("Job Lifecycle"),
    allure.feature("Job Repository"),
]


def _create_job(repository: JobRepository, *, max_attempts: int = 3) -> JobView:
    agent = repository.add_agent(
        name=f"coder-{uuid4().hex[:8]}",
        config=AgentConfig(backend_id="echo"),
    )
    return repository.create_job(
        JobCreate(agent_id=agent.agent_id, prompt="Fix the bug", max_attempts=max_attempts),
    )


def _event_types(repository: JobRepository, job_id: str) -> list[str]:
    details = repository.get_job_details(job_id)
    assert details is not None
    return [event.event_type for event in details.events]


def test_agent_config_round_trips(repository: JobRepository) -> None:
    config = AgentConfig(
        backend_id="http-llm",
        requires_approval=True,
        approval_timeout_seconds=60,
        allowed_tools=["echo"],
        max_turns=3,
        network_access=True,
    )

    agent = repository.add_agent(name="reviewer", config=config)
    loaded = repository.get_agent(agent.agent_id)

    assert loaded is not None
    assert loaded.config == config
    assert [item.name for item in repository.list_agents()] == ["reviewer"]


def test_create_job_requires_existing_agent(repository: JobRepository) -> None:
    with pytest.raises(ValueError, match="Agent not found"):
        repository.create_job(JobCreate(agent_id="ghost", prompt="hi"))


def test_happy_path_records_attempt_and_events(repository: JobRepository) -> None:
    job = _create_job(repository)
    assert job.status is JobStatus.SCHEDULED
    assert job.attempt == 0
    assert job.payload["prompt"] == "Fix the bug"

    assert repository.mark_running(job.job_id)
    running = repository.require_job(job.job_id)
    assert running.attempt == 1
    assert running.started_at is not None
    assert running.heartbeat_at is not None

    assert repository.complete(job.job_id, result={"summary": "done"})
    completed = repository.require_job(job.job_id)
    assert completed.status is JobStatus.COMPLETED
    assert completed.result == {"summary": "done"}
    assert completed.completed_at is not None
    assert _event_types(repository, job.job_id) == ["scheduled", "running", "completed"]


def test_transition_from_stale_source_is_rejected_without_side_effects(
    repository: JobRepository,
) -> None:
    job = _create_job(repository)
    assert repository.mark_running(job.job_id)

    assert not repository.mark_running(job.job_id)
    assert repository.require_job(job.job_id).attempt == 1
    assert _event_types(repository, job.job_id) == ["scheduled", "running"]


def test_transition_outside_lifecycle_graph_raises(repository: JobRepository) -> None:
    job = _create_job(repository)

    with pytest.raises(InvalidJobTransitionError, match="SCHEDULED -> COMPLETED"):
        repository.transition(
            job_id=job.job_id,
            source=JobStatus.SCHEDULED,
            target=JobStatus.COMPLETED,
            event_type="completed",
        )
    with pytest.raises(InvalidJobTransitionError):
        repository.transition(
            job_id=job.job_id,
            source=JobStatus.FAILED,
            target=JobStatus.RUNNING,
            event_type="running",
        )


def test_retry_before_start_counts_the_attempt(repository: JobRepository) -> None:
    job = _create_job(repository)

    assert repository.schedule_retry(
        job.job_id,
        source=JobStatus.SCHEDULED,
        error={"classification": "transient", "reason_code": "no_provider"},
        run_at=utc_now() + timedelta(seconds=5),
    )
    retrying = repository.require_job(job.job_id)
    assert retrying.status is JobStatus.RETRYING
    assert retrying.attempt == 1
    assert retrying.error == {"classification": "transient", "reason_code": "no_provider"}

    assert repository.reschedule(job.job_id)
    assert repository.require_job(job.job_id).status is JobStatus.SCHEDULED


def test_dead_letter_after_running_keeps_attempt(repository: JobRepository) -> None:
    job = _create_job(repository, max_attempts=1)
    repository.mark_running(job.job_id)

    assert repository.dead_letter(job.job_id, error={"reason_code": "exhausted"})

    dead = repository.require_job(job.job_id)
    assert dead.status is JobStatus.DEAD_LETTER
    assert dead.attempt == 1


def _waiting_job(repository: JobRepository, *, expires_in: timedelta) -> JobView:
    job = _create_job(repository)
    assert repository.mark_running(job.job_id)
    assert repository.enter_approval(job.job_id, expires_at=utc_now() + expires_in)
    return repository.require_job(job.job_id)


def test_approval_moves_job_back_to_running(repository: JobRepository) -> None:
    job = _waiting_job(repository, expires_in=timedelta(hours=1))
    assert job.status is JobStatus.WAITING_FOR_APPROVAL
    assert job.approval_expires_at is not None
    assert job.heartbeat_at is None

    status = repository.apply_approval_decision(job.job_id, approved=True, decided_by="alice")

    approved = repository.require_job(job.job_id)
    assert status is JobStatus.RUNNING
    assert approved.status is JobStatus.RUNNING
    assert approved.approved_at is not None
    assert approved.attempt == 1
    assert _event_types(repository, job.job_id)[-1] == "approved"


def test_rejection_fails_job(repository: JobRepository) -> None:
    job = _waiting_job(repository, expires_in=timedelta(hours=1))

    status = repository.apply_approval_decision(job.job_id, approved=False, decided_by="bob")

    failed = repository.require_job(job.job_id)
    assert status is JobStatus.FAILED
    assert failed.error is not None
    assert failed.error["reason_code"] == "approval_rejected"
    assert failed.error["decided_by"] == "bob"


def test_late_approval_expires_job(repository: JobRepository) -> None:
    job = _waiting_job(repository, expires_in=timedelta(minutes=1))

    status = repository.apply_approval_decision(
        job.job_id,
        approved=True,
        now=utc_now() + timedelta(minutes=5),
    )

    assert status is JobStatus.FAILED
    error = repository.require_job(job.job_id).error
    assert error is not None
    assert error["reason_code"] == "approval_expired"


def test_decision_requires_waiting_job(repository: JobRepository) -> None:
    job = _create_job(repository)

    with pytest.raises(InvalidJobTransitionError, match="not waiting for approval"):
        repository.apply_approval_decision(job.job_id, approved=True)
    with pytest.raises(JobNotFoundError):
        repository.apply_approval_decision("missing", approved=True)


def test_expire_approvals_only_touches_closed_windows(repository: JobRepository) -> None:
    soon = _waiting_job(repository, expires_in=timedelta(minutes=1))
    later = _waiting_job(repository, expires_in=timedelta(hours=2))

    expired = repository.expire_approvals(now=utc_now() + timedelta(minutes=10))

    assert expired == [soon.job_id]
    assert repository.require_job(soon.job_id).status is JobStatus.FAILED
    assert repository.require_job(later.job_id).status is JobStatus.WAITING_FOR_APPROVAL


def test_reap_zombie_jobs_fails_silent_running_jobs(repository: JobRepository) -> None:
    job = _create_job(repository)
    repository.mark_running(job.job_id)

    assert repository.reap_zombie_jobs(threshold_seconds=90) == []
    reaped = repository.reap_zombie_jobs(
        threshold_seconds=90,
        now=utc_now() + timedelta(seconds=120),
    )

    assert reaped == [job.job_id]
    zombie = repository.require_job(job.job_id)
    assert zombie.status is JobStatus.FAILED
    assert zombie.error is not None
    assert zombie.error["reason_code"] == "zombie"


def test_touch_heartbeat_only_for_running_jobs(repository: JobRepository) -> None:
    job = _create_job(repository)
    assert not repository.touch_heartbeat(job.job_id)

    repository.mark_running(job.job_id)
    before = repository.require_job(job.job_id).heartbeat_at

    assert repository.touch_heartbeat(job.job_id)
    after = repository.require_job(job.job_id).heartbeat_at
    assert before is not None
    assert after is not None
    assert after >= before


def test_list_jobs_filters_by_status(repository: JobRepository) -> None:
    first = _create_job(repository)
    _create_job(repository)
    repository.mark_running(first.job_id)

    assert [job.job_id for job in repository.list_jobs(status=JobStatus.RUNNING)] == [
        first.job_id,
    ]
    assert len(repository.list_jobs()) == 2
    assert len(repository.list_jobs(limit=1)) == 1


def test_agent_names_are_unique(repository: JobRepository) -> None:
    repository.add_agent(name="coder")

    with pytest.raises(ValueError, match="Agent name already exists: coder"):
        repository.add_agent(name="coder")
