"""Controllers for job engine CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from ticket_agent.config import Settings
from ticket_agent.engine.dispatcher import JobDispatcher
from ticket_agent.engine.models import JobLogEvent, JobStatus, ProjectCreate
from ticket_agent.engine.repository import JobRepository
from ticket_agent.engine.services import JobService, TicketSyncService


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for the long-running worker."""

    db_path: Path | None
    concurrency: int | None = None


@dataclass(slots=True)
class ListJobsCommand:
    db_path: Path | None
    status: str | None
    project_id: str | None
    limit: int


@dataclass(slots=True)
class JobCommand:
    """CLI input for single-job inspection and mutation."""

    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class JobLogsCommand:
    db_path: Path | None
    job_id: str
    iteration: int | None
    output_chars: int


@dataclass(slots=True)
class AnswerCommand:
    db_path: Path | None
    job_id: str
    answer: str


@dataclass(slots=True)
class PermissionCommand:
    db_path: Path | None
    job_id: str
    approved: bool


@dataclass(slots=True)
class AddProjectCommand:
    """CLI input for project registration."""

    db_path: Path | None
    name: str
    repo_url: str
    vcs_provider: str
    vcs_token: str
    ticket_provider: str
    ticket_provider_token: str
    ticket_provider_config: str | None
    default_branch: str
    max_iterations: int | None
    completion_promise: str | None
    sandbox_base_path: Path | None
    instruction_file: Path | None


@dataclass(slots=True)
class SyncTicketsCommand:
    db_path: Path | None
    project_id: str


class JobsCliController:
    """Coordinates worker, ticket sync and job inspection CLI operations."""

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        if command.concurrency is not None:
            settings.worker.concurrency = command.concurrency
        settings.validate()
        with _engine(settings) as (_, dispatcher):
            dispatcher.run_forever()
        return [f"Worker stopped: worker_id={settings.worker.worker_id}"]

    def recover(self, command: WorkerCommand) -> list[str]:
        """Run the recovery pass once without consuming messages."""

        settings = Settings.from_env(db_path=command.db_path)
        with _engine(settings) as (_, dispatcher):
            summary = dispatcher.recover()
        return [
            "Recovery: "
            f"requeued={summary.requeued} released={summary.released} "
            f"purged_messages={summary.purged_messages}",
        ]

    def add_project(self, command: AddProjectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        config: dict[str, object] = {}
        if command.ticket_provider_config:
            parsed = json.loads(command.ticket_provider_config)
            if not isinstance(parsed, dict):
                raise ValueError("Ticket provider config must be a JSON object.")
            config = parsed
        instruction_template = (
            command.instruction_file.read_text("utf-8") if command.instruction_file else None
        )
        with _engine(settings) as (repository, dispatcher):
            project = JobService(repository=repository, dispatcher=dispatcher).create_project(
                ProjectCreate(
                    name=command.name,
                    repo_url=command.repo_url,
                    vcs_provider=command.vcs_provider,
                    vcs_token=command.vcs_token,
                    ticket_provider=command.ticket_provider,
                    ticket_provider_token=command.ticket_provider_token,
                    ticket_provider_config=config,
                    default_branch=command.default_branch,
                    sandbox_base_path=(
                        str(command.sandbox_base_path) if command.sandbox_base_path else None
                    ),
                    instruction_template=instruction_template,
                    max_iterations=command.max_iterations
                    or settings.loop.default_max_iterations,
                    completion_promise=command.completion_promise
                    or settings.loop.default_completion_promise,
                ),
            )
        return [
            f"Project created: project_id={project.project_id} name={project.name}",
            f"Repository: {project.repo_url} ({project.default_branch})",
            f"Ticket provider: {project.ticket_provider}",
        ]

    def list_projects(self, command: WorkerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _engine(settings) as (repository, _):
            projects = repository.list_projects()
        lines = [f"Projects: {len(projects)}"]
        for project in projects:
            lines.append(
                f"  {project.project_id} name={project.name} repo={project.repo_url} "
                f"tickets={project.ticket_provider} active={project.is_active}",
            )
        return lines

    def sync_tickets(self, command: SyncTicketsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _engine(settings) as (repository, dispatcher):
            summary = TicketSyncService(
                repository=repository,
                dispatcher=dispatcher,
            ).sync_project(command.project_id)
        lines = [
            "Ticket sync: "
            f"project_id={summary.project_id} fetched={summary.fetched} "
            f"upserted={summary.upserted} jobs_created={len(summary.created_job_ids)} "
            f"skipped={summary.skipped} removed={summary.removed}",
        ]
        lines.extend(f"  job enqueued: {job_id}" for job_id in summary.created_job_ids)
        return lines

    def list_jobs(self, command: ListJobsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with _engine(settings) as (repository, _):
            jobs = repository.list_jobs(
                status=status_filter,
                project_id=command.project_id,
                limit=command.limit,
            )

        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            lines.append(
                f"  {job.job_id} ticket={job.ticket_id} status={job.status.value} "
                f"iteration={job.iteration}/{job.max_iterations} "
                f"created_at={job.created_at.isoformat()}",
            )
        return lines

    def inspect_job(self, command: JobCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _engine(settings) as (repository, _):
            details = repository.get_job_details(command.job_id)
        if details is None:
            return [f"Job not found: {command.job_id}"]

        job = details.job
        lines = [
            f"Job: {job.job_id}",
            f"Project: {job.project_id}",
            f"Ticket: {job.ticket_id}",
            f"Status: {job.status.value}",
            f"Iteration: {job.iteration}/{job.max_iterations}",
            f"Worker: {job.worker_id or '-'}",
            f"Sandbox: {job.sandbox_path or '-'}",
            f"Branch: {job.branch_name or '-'}",
            f"PR: {job.pr_url or '-'}",
            f"Error: {job.error_message or '-'}",
        ]
        if job.status == JobStatus.NEEDS_CLARIFICATION:
            lines.append(f"Question: {job.clarification_question}")
        if job.status == JobStatus.NEEDS_PERMISSION:
            lines.append(f"Permission requested: {job.pending_permission_request}")
        lines.append(f"Log events: {len(details.logs)}")
        for log in details.logs:
            lines.append(
                f"  {log.created_at.isoformat()} #{log.iteration} {log.event_type}",
            )
        return lines

    def job_logs(self, command: JobLogsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _engine(settings) as (repository, _):
            logs = repository.list_job_logs(job_id=command.job_id)
        if command.iteration is not None:
            logs = [log for log in logs if log.iteration == command.iteration]

        lines: list[str] = []
        for log in logs:
            header = f"[{log.created_at.isoformat()}] #{log.iteration} {log.event_type}"
            if log.event_data and log.event_type != JobLogEvent.ITERATION_START.value:
                header += " " + json.dumps(log.event_data, ensure_ascii=False, sort_keys=True)
            lines.append(header)
            if log.agent_output:
                output = log.agent_output
                if len(output) > command.output_chars:
                    output = "..." + output[-command.output_chars :]
                lines.extend(f"    {line}" for line in output.splitlines())
        return lines or [f"No logs for job {command.job_id}"]

    def retry_job(self, command: JobCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _engine(settings) as (repository, dispatcher):
            JobService(repository=repository, dispatcher=dispatcher).retry_job(command.job_id)
        return [f"Job re-queued: {command.job_id}"]

    def cancel_job(self, command: JobCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _engine(settings) as (repository, dispatcher):
            JobService(repository=repository, dispatcher=dispatcher).cancel_job(command.job_id)
        return [f"Cancel requested: {command.job_id}"]

    def answer(self, command: AnswerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _engine(settings) as (repository, dispatcher):
            JobService(repository=repository, dispatcher=dispatcher).answer_clarification(
                command.job_id,
                command.answer,
            )
        return [f"Answer queued: {command.job_id}"]

    def permission(self, command: PermissionCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _engine(settings) as (repository, dispatcher):
            JobService(repository=repository, dispatcher=dispatcher).answer_permission(
                command.job_id,
                approved=command.approved,
            )
        verdict = "approved" if command.approved else "denied"
        return [f"Permission {verdict}: {command.job_id}"]


def _parse_status(value: str | None) -> JobStatus | None:
    if value is None:
        return None
    try:
        return JobStatus(value.lower())
    except ValueError as error:
        raise ValueError(f"Unsupported job status: {value!r}") from error


@contextmanager
def _engine(settings: Settings) -> Iterator[tuple[JobRepository, JobDispatcher]]:
    repository = JobRepository(
        settings.db_path,
        busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    dispatcher = JobDispatcher(settings=settings, repository=repository)
    dispatcher.declare_topics()
    try:
        yield repository, dispatcher
    finally:
        dispatcher.queue.close()
        repository.close()
