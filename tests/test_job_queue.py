from __future__ import annotations

from datetime import timedelta

import allure

from agent_dispatch.orchestrator.queue import AGENT_EXECUTE, SqliteJobQueue
from agent_dispatch.storage.common import utc_now

pytestmark = [
    allure.epic("Job Lifecycle"),
    allure.feature("Job Queue"),
]


def test_claim_due_returns_oldest_due_entry(job_queue: SqliteJobQueue) -> None:
    now = utc_now()
    job_queue.add_job(AGENT_EXECUTE, {"job_id": "later"}, run_at=now + timedelta(minutes=5))
    job_queue.add_job(AGENT_EXECUTE, {"job_id": "second"}, run_at=now - timedelta(seconds=1))
    job_queue.add_job(AGENT_EXECUTE, {"job_id": "first"}, run_at=now - timedelta(seconds=10))

    first = job_queue.claim_due(worker_id="w1")
    second = job_queue.claim_due(worker_id="w1")

    assert first is not None
    assert second is not None
    assert first.payload == {"job_id": "first"}
    assert first.attempts == 1
    assert second.payload == {"job_id": "second"}
    assert job_queue.claim_due(worker_id="w1") is None

    later = job_queue.claim_due(worker_id="w1", now=now + timedelta(minutes=6))
    assert later is not None
    assert later.payload == {"job_id": "later"}


def test_keyed_add_replaces_unlocked_entry(job_queue: SqliteJobQueue) -> None:
    job_queue.add_job(AGENT_EXECUTE, {"job_id": "a", "v": 1}, job_key="job:a")
    job_queue.add_job(AGENT_EXECUTE, {"job_id": "a", "v": 2}, job_key="job:a")

    pending = job_queue.pending()

    assert len(pending) == 1
    assert pending[0].payload == {"job_id": "a", "v": 2}


def test_keyed_add_while_locked_moves_key_to_new_entry(job_queue: SqliteJobQueue) -> None:
    job_queue.add_job(AGENT_EXECUTE, {"job_id": "a"}, job_key="job:a")
    claimed = job_queue.claim_due(worker_id="w1")
    assert claimed is not None
    assert claimed.job_key == "job:a"

    retry_at = utc_now() + timedelta(seconds=30)
    job_queue.add_job(AGENT_EXECUTE, {"job_id": "a"}, job_key="job:a", run_at=retry_at)
    job_queue.complete(claimed.queue_id)

    pending = job_queue.pending()
    assert len(pending) == 1
    assert pending[0].job_key == "job:a"
    assert pending[0].queue_id != claimed.queue_id
    assert pending[0].attempts == 0
    assert job_queue.claim_due(worker_id="w1") is None


def test_release_makes_entry_claimable_again(job_queue: SqliteJobQueue) -> None:
    job_queue.add_job(AGENT_EXECUTE, {"job_id": "a"})
    claimed = job_queue.claim_due(worker_id="w1")
    assert claimed is not None
    assert job_queue.claim_due(worker_id="w2") is None

    job_queue.release(claimed.queue_id)
    again = job_queue.claim_due(worker_id="w2")

    assert again is not None
    assert again.queue_id == claimed.queue_id
    assert again.attempts == 1


def test_entry_past_max_attempts_is_not_claimed(job_queue: SqliteJobQueue) -> None:
    job_queue.add_job(AGENT_EXECUTE, {"job_id": "a"}, max_attempts=1)
    claimed = job_queue.claim_due(worker_id="w1")
    assert claimed is not None
    assert claimed.max_attempts == 1

    job_queue.complete(claimed.queue_id)

    assert job_queue.pending() == []
    assert job_queue.claim_due(worker_id="w1") is None
