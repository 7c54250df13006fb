"""CLI entrypoint for ticket-agent."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from ticket_agent import __version__
from ticket_agent.engine.controllers import (
    AddProjectCommand,
    AnswerCommand,
    JobCommand,
    JobLogsCommand,
    JobsCliController,
    ListJobsCommand,
    PermissionCommand,
    SyncTicketsCommand,
    WorkerCommand,
)
from ticket_agent.engine.models import JobStatus, TicketProviderName, VcsProviderName
from ticket_agent.errors import TicketAgentError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = JobsCliController()

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


@click.group()
@click.version_option(version=__version__, prog_name="ticket-agent")
def ticket_agent() -> None:
    """Autonomous ticket-to-PR agent CLI."""


@ticket_agent.group()
def worker() -> None:
    """Queue worker commands."""


@worker.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--concurrency",
    type=click.IntRange(min=1),
    default=None,
    help="Parallel jobs per topic. Overrides TICKET_AGENT_WORKER_CONCURRENCY.",
)
@click.option(
    "--log-level",
    type=click.Choice(_LOG_LEVELS, case_sensitive=False),
    default="INFO",
    show_default=True,
)
def worker_run(db_path: Path | None, concurrency: int | None, log_level: str) -> None:
    """Consume job messages until SIGINT/SIGTERM."""

    _configure_logging(log_level)
    _emit_lines(
        _guarded(
            lambda: CONTROLLER.run_worker(
                WorkerCommand(db_path=db_path, concurrency=concurrency),
            ),
        ),
    )


@worker.command("recover")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--log-level",
    type=click.Choice(_LOG_LEVELS, case_sensitive=False),
    default="WARNING",
    show_default=True,
)
def worker_recover(db_path: Path | None, log_level: str) -> None:
    """Re-enqueue orphaned pending jobs and release stale running ones."""

    _configure_logging(log_level)
    _emit_lines(CONTROLLER.recover(WorkerCommand(db_path=db_path)))


@ticket_agent.group()
def projects() -> None:
    """Project registration commands."""


@projects.command("add")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--name", required=True, help="Project name (unique).")
@click.option("--repo-url", required=True, help="Git clone URL.")
@click.option(
    "--vcs-provider",
    type=click.Choice([provider.value for provider in VcsProviderName]),
    default=VcsProviderName.GITHUB.value,
    show_default=True,
)
@click.option(
    "--vcs-token",
    envvar="TICKET_AGENT_VCS_TOKEN",
    default="",
    help="Token embedded in the clone URL. Env: TICKET_AGENT_VCS_TOKEN.",
)
@click.option(
    "--ticket-provider",
    type=click.Choice([provider.value for provider in TicketProviderName]),
    required=True,
)
@click.option(
    "--ticket-provider-token",
    envvar="TICKET_AGENT_TICKET_PROVIDER_TOKEN",
    default="",
    help="Ticket tracker API token. Env: TICKET_AGENT_TICKET_PROVIDER_TOKEN.",
)
@click.option(
    "--ticket-provider-config",
    default=None,
    help='Provider config as JSON, for example `{"path": "tickets.json"}`.',
)
@click.option("--default-branch", default="main", show_default=True)
@click.option("--max-iterations", type=click.IntRange(min=1), default=None)
@click.option("--completion-promise", default=None, help="Phrase that signals task completion.")
@click.option(
    "--sandbox-base-path",
    type=click.Path(path_type=Path),
    default=None,
    help="Directory for this project's sandboxes.",
)
@click.option(
    "--instruction-file",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="File copied into each sandbox as agent instructions.",
)
def projects_add(  # noqa: PLR0913
    db_path: Path | None,
    name: str,
    repo_url: str,
    vcs_provider: str,
    vcs_token: str,
    ticket_provider: str,
    ticket_provider_token: str,
    ticket_provider_config: str | None,
    default_branch: str,
    max_iterations: int | None,
    completion_promise: str | None,
    sandbox_base_path: Path | None,
    instruction_file: Path | None,
) -> None:
    """Register a repository and its ticket tracker."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.add_project(
                AddProjectCommand(
                    db_path=db_path,
                    name=name,
                    repo_url=repo_url,
                    vcs_provider=vcs_provider,
                    vcs_token=vcs_token,
                    ticket_provider=ticket_provider,
                    ticket_provider_token=ticket_provider_token,
                    ticket_provider_config=ticket_provider_config,
                    default_branch=default_branch,
                    max_iterations=max_iterations,
                    completion_promise=completion_promise,
                    sandbox_base_path=sandbox_base_path,
                    instruction_file=instruction_file,
                ),
            ),
        ),
    )


@projects.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def projects_list(db_path: Path | None) -> None:
    """List registered projects."""

    _emit_lines(CONTROLLER.list_projects(WorkerCommand(db_path=db_path)))


@ticket_agent.group()
def tickets() -> None:
    """Ticket tracker commands."""


@tickets.command("sync")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--project-id", required=True, help="Project id.")
def tickets_sync(db_path: Path | None, project_id: str) -> None:
    """Fetch ready tickets and enqueue a job for each new one."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.sync_tickets(
                SyncTicketsCommand(db_path=db_path, project_id=project_id),
            ),
        ),
    )


@ticket_agent.group()
def jobs() -> None:
    """Job inspection and control commands."""


@jobs.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in JobStatus], case_sensitive=False),
    default=None,
)
@click.option("--project-id", default=None, help="Optional project filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
)
def jobs_list(
    db_path: Path | None,
    status: str | None,
    project_id: str | None,
    limit: int,
) -> None:
    """List jobs, newest first."""

    _emit_lines(
        CONTROLLER.list_jobs(
            ListJobsCommand(
                db_path=db_path,
                status=status,
                project_id=project_id,
                limit=limit,
            ),
        ),
    )


@jobs.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
def jobs_inspect(db_path: Path | None, job_id: str) -> None:
    """Inspect one job with its event history."""

    _emit_lines(CONTROLLER.inspect_job(JobCommand(db_path=db_path, job_id=job_id)))


@jobs.command("logs")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
@click.option("--iteration", type=click.IntRange(min=0), default=None)
@click.option(
    "--output-chars",
    type=click.IntRange(min=100),
    default=4_000,
    show_default=True,
    help="Tail size for agent output per log entry.",
)
def jobs_logs(
    db_path: Path | None,
    job_id: str,
    iteration: int | None,
    output_chars: int,
) -> None:
    """Print the job log stream including agent output."""

    _emit_lines(
        CONTROLLER.job_logs(
            JobLogsCommand(
                db_path=db_path,
                job_id=job_id,
                iteration=iteration,
                output_chars=output_chars,
            ),
        ),
    )


@jobs.command("retry")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
def jobs_retry(db_path: Path | None, job_id: str) -> None:
    """Re-queue a failed or cancelled job from iteration zero."""

    _emit_lines(_guarded(lambda: CONTROLLER.retry_job(JobCommand(db_path=db_path, job_id=job_id))))


@jobs.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
def jobs_cancel(db_path: Path | None, job_id: str) -> None:
    """Cancel a pending, running or paused job."""

    _emit_lines(
        _guarded(lambda: CONTROLLER.cancel_job(JobCommand(db_path=db_path, job_id=job_id))),
    )


@jobs.command("answer")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
@click.option("--answer", required=True, help="Answer to the agent's question.")
def jobs_answer(db_path: Path | None, job_id: str, answer: str) -> None:
    """Answer a clarification question and resume the job."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.answer(
                AnswerCommand(db_path=db_path, job_id=job_id, answer=answer),
            ),
        ),
    )


@jobs.command("permission")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
@click.option(
    "--decision",
    type=click.Choice(["approve", "deny"], case_sensitive=False),
    required=True,
    help="Grant or refuse the request.",
)
def jobs_permission(db_path: Path | None, job_id: str, decision: str) -> None:
    """Approve or deny a pending permission request."""

    approved = decision.lower() == "approve"
    _emit_lines(
        _guarded(
            lambda: CONTROLLER.permission(
                PermissionCommand(db_path=db_path, job_id=job_id, approved=approved),
            ),
        ),
    )


def _guarded(action: Callable[[], list[str]]) -> list[str]:
    try:
        return action()
    except (TicketAgentError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    ticket_agent()
