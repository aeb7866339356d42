from pathlib import Path

import allure
from sqlalchemy import inspect

from agent_dispatch.orchestrator.repository import JobRepository
from agent_dispatch.storage.alembic_runner import current_revision

pytestmark = [
    allure.epic("Job Lifecycle"),
    allure.feature("Persistence"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = JobRepository(tmp_path / "migrations.db")
    assert current_revision(repository.engine) is None

    repository.init_schema()

    assert current_revision(repository.engine) == "20261018_0001"
    inspector = inspect(repository.engine)
    assert {"agents", "jobs", "job_events", "job_queue"} <= set(inspector.get_table_names())
    job_indexes = {index["name"] for index in inspector.get_indexes("jobs")}
    assert "idx_jobs_status_priority" in job_indexes
    repository.close()


def test_init_schema_is_idempotent(tmp_path: Path) -> None:
    db_path = tmp_path / "migrations.db"
    first = JobRepository(db_path)
    first.init_schema()
    agent = first.add_agent(name="keeper")
    first.close()

    second = JobRepository(db_path)
    second.init_schema()

    assert second.get_agent(agent.agent_id) is not None
    second.close()
