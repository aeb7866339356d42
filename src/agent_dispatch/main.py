"""CLI entrypoint for agent-dispatch."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from agent_dispatch import __version__
from agent_dispatch.config import SUPPORTED_BACKENDS
from agent_dispatch.orchestrator.backend.base import ALL_GOAL_TYPES
from agent_dispatch.orchestrator.controllers import (
    AgentAddCommand,
    AgentListCommand,
    BackendsHealthCommand,
    DispatchCliController,
    JobDecisionCommand,
    JobListCommand,
    JobShowCommand,
    JobsReapCommand,
    JobSubmitCommand,
    WorkerRunCommand,
)
from agent_dispatch.orchestrator.errors import AgentDispatchError
from agent_dispatch.orchestrator.models import JobStatus

click.rich_click.USE_MARKDOWN = True
CONTROLLER = DispatchCliController()


@click.group()
@click.version_option(version=__version__, prog_name="agent-dispatch")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging level for orchestrator diagnostics.",
)
def agent_dispatch(log_level: str) -> None:
    """Agent job dispatch CLI.

    Jobs are queued in SQLite and executed by `worker run` against the backends
    listed in `AGENT_DISPATCH_BACKENDS`.
    """

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@agent_dispatch.group()
def agents() -> None:
    """Agent commands."""


@agents.command("add")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--name", required=True, help="Agent display name.")
@click.option(
    "--backend",
    "backend_id",
    type=click.Choice(list(SUPPORTED_BACKENDS), case_sensitive=False),
    default=None,
    help="Preferred backend; routing falls back to the others when it is unavailable.",
)
@click.option(
    "--requires-approval/--no-approval",
    default=False,
    show_default=True,
    help="Hold every job for a human decision before execution.",
)
@click.option(
    "--approval-timeout",
    "approval_timeout_seconds",
    type=click.IntRange(min=1),
    default=None,
    help="Seconds a job may wait for approval (default from settings).",
)
@click.option("--system-prompt", default=None, help="System prompt passed to the backend.")
@click.option("--model", default=None, help="Model override for the backend.")
@click.option("--allow-tool", "allowed_tools", multiple=True, help="Allowed tool. Repeatable.")
@click.option("--deny-tool", "denied_tools", multiple=True, help="Denied tool. Repeatable.")
@click.option(
    "--max-turns",
    type=click.IntRange(min=1),
    default=None,
    help="Agentic loop turn cap.",
)
@click.option("--network/--no-network", "network_access", default=False, show_default=True)
@click.option("--shell/--no-shell", "shell_access", default=False, show_default=True)
def agents_add(  # noqa: PLR0913
    db_path: Path | None,
    name: str,
    backend_id: str | None,
    requires_approval: bool,
    approval_timeout_seconds: int | None,
    system_prompt: str | None,
    model: str | None,
    allowed_tools: tuple[str, ...],
    denied_tools: tuple[str, ...],
    max_turns: int | None,
    network_access: bool,
    shell_access: bool,
) -> None:
    """Register an agent and its execution policy."""

    _emit_lines(
        _guard(
            lambda: CONTROLLER.add_agent(
                AgentAddCommand(
                    db_path=db_path,
                    name=name,
                    backend_id=backend_id.lower() if backend_id else None,
                    requires_approval=requires_approval,
                    approval_timeout_seconds=approval_timeout_seconds,
                    system_prompt=system_prompt,
                    model=model,
                    allowed_tools=allowed_tools,
                    denied_tools=denied_tools,
                    max_turns=max_turns,
                    network_access=network_access,
                    shell_access=shell_access,
                ),
            ),
        ),
    )


@agents.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def agents_list(db_path: Path | None) -> None:
    """List registered agents."""

    _emit_lines(CONTROLLER.list_agents(AgentListCommand(db_path=db_path)))


@agent_dispatch.group()
def jobs() -> None:
    """Job commands."""


@jobs.command("submit")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--agent-id", required=True, help="Agent id.")
@click.option("--prompt", required=True, help="Instruction for the agent.")
@click.option(
    "--goal-type",
    type=click.Choice(list(ALL_GOAL_TYPES), case_sensitive=False),
    default="code_generate",
    show_default=True,
    help="Goal type.",
)
@click.option("--priority", type=int, default=0, show_default=True, help="Job priority.")
@click.option(
    "--max-attempts",
    type=click.IntRange(min=1, max=20),
    default=3,
    show_default=True,
    help="Attempts before the job is dead-lettered.",
)
@click.option(
    "--timeout-seconds",
    type=click.IntRange(min=1),
    default=300,
    show_default=True,
    help="Per-attempt timeout.",
)
@click.option("--workspace", "workspace_path", default=None, help="Working directory.")
@click.option("--target-file", "target_files", multiple=True, help="Target file. Repeatable.")
@click.option("--env", "environment", multiple=True, help="KEY=VALUE for the agent. Repeatable.")
def jobs_submit(  # noqa: PLR0913
    db_path: Path | None,
    agent_id: str,
    prompt: str,
    goal_type: str,
    priority: int,
    max_attempts: int,
    timeout_seconds: int,
    workspace_path: str | None,
    target_files: tuple[str, ...],
    environment: tuple[str, ...],
) -> None:
    """Submit a job and queue its first attempt."""

    _emit_lines(
        _guard(
            lambda: CONTROLLER.submit_job(
                JobSubmitCommand(
                    db_path=db_path,
                    agent_id=agent_id,
                    prompt=prompt,
                    goal_type=goal_type.lower(),
                    priority=priority,
                    max_attempts=max_attempts,
                    timeout_seconds=timeout_seconds,
                    workspace_path=workspace_path,
                    target_files=target_files,
                    environment=environment,
                ),
            ),
        ),
    )


@jobs.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in JobStatus], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max jobs to print.",
)
def jobs_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List jobs, newest first."""

    _emit_lines(CONTROLLER.list_jobs(JobListCommand(db_path=db_path, status=status, limit=limit)))


@jobs.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["text", "json"], case_sensitive=False),
    default="text",
    show_default=True,
)
def jobs_show(db_path: Path | None, job_id: str, output_format: str) -> None:
    """Inspect one job with its event history."""

    _emit_lines(
        CONTROLLER.show_job(
            JobShowCommand(db_path=db_path, job_id=job_id, output_format=output_format.lower()),
        ),
    )


@jobs.command("approve")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
@click.option("--by", "decided_by", default=None, help="Who approved.")
def jobs_approve(db_path: Path | None, job_id: str, decided_by: str | None) -> None:
    """Approve a job waiting for approval and queue it to resume."""

    _emit_lines(
        _guard(
            lambda: CONTROLLER.decide_approval(
                JobDecisionCommand(
                    db_path=db_path,
                    job_id=job_id,
                    approved=True,
                    decided_by=decided_by,
                ),
            ),
        ),
    )


@jobs.command("reject")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
@click.option("--by", "decided_by", default=None, help="Who rejected.")
def jobs_reject(db_path: Path | None, job_id: str, decided_by: str | None) -> None:
    """Reject a job waiting for approval."""

    _emit_lines(
        _guard(
            lambda: CONTROLLER.decide_approval(
                JobDecisionCommand(
                    db_path=db_path,
                    job_id=job_id,
                    approved=False,
                    decided_by=decided_by,
                ),
            ),
        ),
    )


@jobs.command("reap")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def jobs_reap(db_path: Path | None) -> None:
    """Fail zombie jobs and expired approvals."""

    _emit_lines(CONTROLLER.reap_jobs(JobsReapCommand(db_path=db_path)))


@agent_dispatch.group()
def worker() -> None:
    """Worker commands."""


@worker.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--loop",
    default=True,
    show_default=True,
    help="Run one claim-execute cycle or loop until idle.",
)
@click.option(
    "--max-jobs",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for processed jobs in loop mode.",
)
@click.option(
    "--concurrency",
    type=click.IntRange(min=1),
    default=None,
    help="Jobs in flight at once (default from settings).",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=None,
    help="Stop the loop after this many empty polls.",
)
def worker_run(
    db_path: Path | None,
    once: bool,
    max_jobs: int | None,
    concurrency: int | None,
    max_idle_polls: int | None,
) -> None:
    """Run the job worker."""

    _emit_lines(
        _guard(
            lambda: CONTROLLER.run_worker(
                WorkerRunCommand(
                    db_path=db_path,
                    once=once,
                    max_jobs=max_jobs,
                    concurrency=concurrency,
                    max_idle_polls=max_idle_polls,
                ),
            ),
        ),
    )


@agent_dispatch.group()
def backends() -> None:
    """Backend commands."""


@backends.command("health")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def backends_health(db_path: Path | None) -> None:
    """Start the configured backends and print their health and circuit state."""

    _emit_lines(_guard(lambda: CONTROLLER.backends_health(BackendsHealthCommand(db_path=db_path))))


def _guard(action: Callable[[], list[str]]) -> list[str]:
    try:
        return action()
    except (AgentDispatchError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_dispatch()
