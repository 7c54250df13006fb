"""Persistence facade for projects, tickets, jobs and job logs."""

from __future__ import annotations

import json
from collections.abc import Iterable
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from ticket_agent.engine.models import (
    CANCELLABLE_STATUSES,
    RETRYABLE_STATUSES,
    JobDetails,
    JobLogEvent,
    JobLogView,
    JobSpec,
    JobStatus,
    JobView,
    ProjectCreate,
    ProjectView,
    TicketComment,
    TicketData,
    TicketView,
)
from ticket_agent.errors import JobStateError
from ticket_agent.storage.alembic_runner import upgrade_head
from ticket_agent.storage.common import (
    build_sqlite_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from ticket_agent.storage.sqlmodel_models import Job, JobLog, Project, Ticket


class JobRepository:
    """Job persistence backed by SQLModel + SQLite.

    Every status change is a compare-and-set on the expected previous status;
    transition methods return ``False`` when another writer got there first.
    """

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    # Projects and tickets

    def create_project(self, payload: ProjectCreate) -> ProjectView:
        now = utc_now()
        row = Project(
            project_id=payload.project_id or str(uuid4()),
            name=payload.name,
            repo_url=payload.repo_url,
            default_branch=payload.default_branch,
            vcs_provider=payload.vcs_provider,
            vcs_token=payload.vcs_token,
            ticket_provider=payload.ticket_provider,
            ticket_provider_token=payload.ticket_provider_token,
            ticket_provider_config_json=_dump_json(payload.ticket_provider_config),
            sandbox_base_path=payload.sandbox_base_path,
            instruction_template=payload.instruction_template,
            max_iterations=payload.max_iterations,
            completion_promise=payload.completion_promise,
            is_active=True,
            created_at=now,
            updated_at=now,
        )
        with Session(self.engine) as session:
            session.add(row)
            try:
                session.commit()
            except IntegrityError as error:
                session.rollback()
                raise JobStateError(f"Project already exists: {row.project_id}") from error
            session.refresh(row)
            return _to_project_view(row)

    def get_project(self, project_id: str) -> ProjectView | None:
        with Session(self.engine) as session:
            row = session.get(Project, project_id)
            return _to_project_view(row) if row is not None else None

    def list_projects(self, *, active_only: bool = False) -> list[ProjectView]:
        with Session(self.engine) as session:
            statement = select(Project).order_by(col(Project.created_at).asc())
            if active_only:
                statement = statement.where(col(Project.is_active).is_(True))
            rows = session.exec(statement).all()
        return [_to_project_view(row) for row in rows]

    def upsert_ticket(self, *, project_id: str, ticket: TicketData) -> TicketView:
        """Insert or refresh the local copy of an external ticket."""

        now = utc_now()
        comments = [
            {"body": c.body, "created_at": c.created_at, "author": c.author}
            for c in ticket.comments
        ]
        with Session(self.engine) as session:
            row = session.exec(
                select(Ticket).where(
                    Ticket.project_id == project_id,
                    Ticket.external_id == ticket.external_id,
                ),
            ).one_or_none()
            if row is None:
                row = Ticket(
                    ticket_id=str(uuid4()),
                    project_id=project_id,
                    external_id=ticket.external_id,
                    title=ticket.title,
                    created_at=now,
                    updated_at=now,
                    last_synced_at=now,
                )
            row.external_url = ticket.external_url
            row.title = ticket.title
            row.description = ticket.description
            row.priority = ticket.priority
            row.labels_json = _dump_json(ticket.labels)
            row.depends_on_json = _dump_json(ticket.depends_on)
            row.external_status = ticket.status
            row.comments_json = _dump_json(comments)
            row.last_synced_at = now
            row.updated_at = now
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_ticket_view(row)

    def get_ticket(self, ticket_id: str) -> TicketView | None:
        with Session(self.engine) as session:
            row = session.get(Ticket, ticket_id)
            return _to_ticket_view(row) if row is not None else None

    def prune_tickets(self, *, project_id: str, keep_external_ids: Iterable[str]) -> int:
        """Delete tickets no longer reported upstream; tickets with jobs are kept."""

        with_jobs = select(Job.ticket_id).distinct()
        statement = sa_delete(Ticket).where(
            col(Ticket.project_id) == project_id,
            col(Ticket.ticket_id).not_in(with_jobs),
        )
        keep = list(keep_external_ids)
        if keep:
            statement = statement.where(col(Ticket.external_id).not_in(keep))
        with Session(self.engine) as session:
            result = session.exec(statement)
            session.commit()
            return result.rowcount or 0

    # Job lifecycle

    def create_job(
        self,
        *,
        project_id: str,
        ticket_id: str,
        max_iterations: int,
        completion_promise: str | None,
        job_id: str | None = None,
    ) -> JobView:
        """Create a pending job; a ticket holds at most one non-terminal job."""

        now = utc_now()
        row = Job(
            job_id=job_id or str(uuid4()),
            project_id=project_id,
            ticket_id=ticket_id,
            status=JobStatus.PENDING.value,
            iteration=0,
            max_iterations=max_iterations,
            completion_promise=completion_promise,
            created_at=now,
            updated_at=now,
        )
        with Session(self.engine) as session:
            session.add(row)
            try:
                session.commit()
            except IntegrityError as error:
                session.rollback()
                raise JobStateError(
                    f"Ticket already has an active job (ticket_id={ticket_id}).",
                ) from error
            session.refresh(row)
            return _to_job_view(row)

    def get_job(self, job_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.get(Job, job_id)
            return _to_job_view(row) if row is not None else None

    def latest_job_for_ticket(self, ticket_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(Job)
                .where(Job.ticket_id == ticket_id)
                .order_by(col(Job.created_at).desc())
                .limit(1),
            ).one_or_none()
            return _to_job_view(row) if row is not None else None

    def claim_job(self, *, job_id: str, worker_id: str) -> JobView | None:
        """Atomically move a pending job to running; ``None`` if not pending."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.job_id) == job_id,
                    col(Job.status) == JobStatus.PENDING.value,
                )
                .values(
                    status=JobStatus.RUNNING.value,
                    worker_id=worker_id,
                    started_at=now,
                    completed_at=None,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            session.commit()
            row = session.exec(select(Job).where(Job.job_id == job_id)).one()
            return _to_job_view(row)

    def set_sandbox(self, *, job_id: str, sandbox_path: str, branch_name: str) -> None:
        self._update_fields(job_id, sandbox_path=sandbox_path, branch_name=branch_name)

    def set_iteration(self, *, job_id: str, iteration: int) -> bool:
        """Persist the iteration counter of a running job."""

        return self._transition(
            job_id=job_id,
            expected=(JobStatus.RUNNING,),
            target=JobStatus.RUNNING,
            values={"iteration": iteration},
        )

    def mark_completed(self, *, job_id: str, iteration: int, final_output: str | None) -> bool:
        return self._transition(
            job_id=job_id,
            expected=(JobStatus.RUNNING,),
            target=JobStatus.COMPLETED,
            values={"final_output": final_output, "completed_at": to_db_datetime(utc_now())},
            log=(iteration, JobLogEvent.COMPLETED, {}),
        )

    def mark_pr_created(
        self,
        *,
        job_id: str,
        iteration: int,
        pr_url: str,
        pr_number: int | None,
        final_output: str | None,
    ) -> bool:
        return self._transition(
            job_id=job_id,
            expected=(JobStatus.RUNNING,),
            target=JobStatus.PR_CREATED,
            values={
                "pr_url": pr_url,
                "pr_number": pr_number,
                "final_output": final_output,
                "completed_at": to_db_datetime(utc_now()),
            },
            log=(iteration, JobLogEvent.PR_CREATED, {"pr_url": pr_url, "pr_number": pr_number}),
        )

    def mark_needs_clarification(self, *, job_id: str, iteration: int, question: str) -> bool:
        return self._transition(
            job_id=job_id,
            expected=(JobStatus.RUNNING,),
            target=JobStatus.NEEDS_CLARIFICATION,
            values={"clarification_question": question, "clarification_answer": None},
            log=(iteration, JobLogEvent.CLARIFICATION_REQUESTED, {"question": question}),
        )

    def mark_needs_permission(self, *, job_id: str, iteration: int, command: str) -> bool:
        return self._transition(
            job_id=job_id,
            expected=(JobStatus.RUNNING,),
            target=JobStatus.NEEDS_PERMISSION,
            values={"pending_permission_request": command},
            log=(iteration, JobLogEvent.PERMISSION_REQUESTED, {"command": command}),
        )

    def resume_with_answer(self, *, job_id: str, answer: str) -> bool:
        """Record the human answer and move the job back to running."""

        return self._transition(
            job_id=job_id,
            expected=(JobStatus.NEEDS_CLARIFICATION,),
            target=JobStatus.RUNNING,
            values={"clarification_answer": answer},
        )

    def resume_with_permission(
        self,
        *,
        job_id: str,
        iteration: int,
        approved: bool,
        command: str,
    ) -> bool:
        event = JobLogEvent.PERMISSION_APPROVED if approved else JobLogEvent.PERMISSION_DENIED
        return self._transition(
            job_id=job_id,
            expected=(JobStatus.NEEDS_PERMISSION,),
            target=JobStatus.RUNNING,
            values={"pending_permission_request": None},
            log=(iteration, event, {"command": command}),
        )

    def mark_max_iterations(self, *, job_id: str, iteration: int, max_iterations: int) -> bool:
        return self._transition(
            job_id=job_id,
            expected=(JobStatus.RUNNING,),
            target=JobStatus.FAILED,
            values={
                "error_message": (
                    f"Max iterations ({max_iterations}) reached without completion"
                ),
                "error_stack": None,
                "completed_at": to_db_datetime(utc_now()),
            },
            log=(iteration, JobLogEvent.MAX_ITERATIONS_REACHED, {}),
        )

    def mark_failed(
        self,
        *,
        job_id: str,
        iteration: int,
        message: str,
        stack: str | None = None,
    ) -> bool:
        return self._transition(
            job_id=job_id,
            expected=(JobStatus.RUNNING,),
            target=JobStatus.FAILED,
            values={
                "error_message": message,
                "error_stack": stack,
                "completed_at": to_db_datetime(utc_now()),
            },
            log=(iteration, JobLogEvent.ERROR, {"message": message, "stack": stack}),
        )

    def mark_cancelled(self, *, job_id: str) -> bool:
        """Cancel from any cancellable status; ``False`` if already terminal."""

        return self._transition(
            job_id=job_id,
            expected=tuple(CANCELLABLE_STATUSES),
            target=JobStatus.CANCELLED,
            values={"completed_at": to_db_datetime(utc_now())},
        )

    def release_job(self, *, job_id: str, iteration: int, reason: str) -> bool:
        """Hand a running job back to ``pending`` so another delivery can claim it."""

        return self._transition(
            job_id=job_id,
            expected=(JobStatus.RUNNING,),
            target=JobStatus.PENDING,
            values={"worker_id": None},
            log=(iteration, JobLogEvent.ERROR, {"message": reason, "released": True}),
        )

    def retry_job(self, *, job_id: str) -> JobView:
        """Manual operator retry for failed/cancelled jobs."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = session.get(Job, job_id)
            if row is None:
                raise JobStateError(f"Job not found: {job_id}")

            previous = JobStatus(row.status)
            if previous not in RETRYABLE_STATUSES:
                raise JobStateError(
                    f"Only failed/cancelled jobs can be retried, got {row.status}.",
                )
            try:
                result = session.exec(
                    sa_update(Job)
                    .where(
                        col(Job.job_id) == job_id,
                        col(Job.status) == previous.value,
                    )
                    .values(
                        status=JobStatus.PENDING.value,
                        iteration=0,
                        error_message=None,
                        error_stack=None,
                        worker_id=None,
                        started_at=None,
                        completed_at=None,
                        updated_at=now,
                    ),
                )
            except IntegrityError as error:
                session.rollback()
                raise JobStateError(
                    f"Ticket already has an active job (ticket_id={row.ticket_id}).",
                ) from error
            if result.rowcount != 1:
                session.rollback()
                raise JobStateError(
                    "Job state changed concurrently while retrying; "
                    f"please retry command (job_id={job_id}).",
                )
            session.commit()
            refreshed = session.exec(select(Job).where(Job.job_id == job_id)).one()
            return _to_job_view(refreshed)

    # Logs

    def add_log(
        self,
        *,
        job_id: str,
        iteration: int,
        event_type: JobLogEvent,
        event_data: dict[str, Any] | None = None,
        agent_output: str | None = None,
    ) -> int:
        with Session(self.engine) as session:
            row = self._add_log(
                session=session,
                job_id=job_id,
                iteration=iteration,
                event_type=event_type,
                event_data=event_data,
                agent_output=agent_output,
            )
            session.commit()
            return row.id or 0

    def update_log_output(self, *, log_id: int, agent_output: str) -> None:
        """Overwrite the streamed output of one ``iteration_output`` row."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            session.exec(
                sa_update(JobLog)
                .where(col(JobLog.id) == log_id)
                .values(agent_output=agent_output, updated_at=now),
            )
            session.commit()

    def list_job_logs(
        self,
        *,
        job_id: str,
        after_id: int | None = None,
        event_types: Iterable[JobLogEvent] | None = None,
        limit: int | None = None,
    ) -> list[JobLogView]:
        with Session(self.engine) as session:
            statement = (
                select(JobLog)
                .where(JobLog.job_id == job_id)
                .order_by(col(JobLog.created_at).asc(), col(JobLog.id).asc())
            )
            if after_id is not None:
                statement = statement.where(col(JobLog.id) > after_id)
            if event_types is not None:
                statement = statement.where(
                    col(JobLog.event_type).in_([event.value for event in event_types]),
                )
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
        return [_to_log_view(row) for row in rows]

    def latest_output(self, job_id: str) -> str | None:
        """Agent output of the most recent iteration."""

        with Session(self.engine) as session:
            row = session.exec(
                select(JobLog)
                .where(
                    JobLog.job_id == job_id,
                    JobLog.event_type == JobLogEvent.ITERATION_OUTPUT.value,
                )
                .order_by(col(JobLog.id).desc())
                .limit(1),
            ).one_or_none()
            return row.agent_output if row is not None else None

    # Read models

    def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        project_id: str | None = None,
        limit: int = 50,
    ) -> list[JobView]:
        """List recent jobs, optionally filtered by status and project."""

        with Session(self.engine) as session:
            statement = select(Job).order_by(col(Job.created_at).desc()).limit(limit)
            if status is not None:
                statement = statement.where(Job.status == status.value)
            if project_id is not None:
                statement = statement.where(Job.project_id == project_id)
            rows = session.exec(statement).all()
        return [_to_job_view(row) for row in rows]

    def get_job_details(self, job_id: str) -> JobDetails | None:
        job = self.get_job(job_id)
        if job is None:
            return None
        return JobDetails(job=job, logs=self.list_job_logs(job_id=job_id))

    def list_jobs_by_status(self, status: JobStatus) -> list[JobView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Job)
                .where(Job.status == status.value)
                .order_by(col(Job.created_at).asc()),
            ).all()
        return [_to_job_view(row) for row in rows]

    def list_stale_running(self, *, updated_before: datetime) -> list[JobView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Job)
                .where(
                    Job.status == JobStatus.RUNNING.value,
                    col(Job.updated_at) < to_db_datetime(updated_before),
                )
                .order_by(col(Job.updated_at).asc()),
            ).all()
        return [_to_job_view(row) for row in rows]

    def build_job_spec(self, job_id: str) -> JobSpec:
        """Rebuild a self-contained ``job.process`` payload from stored rows."""

        with Session(self.engine) as session:
            job = session.get(Job, job_id)
            if job is None:
                raise JobStateError(f"Job not found: {job_id}")
            ticket = session.get(Ticket, job.ticket_id)
            project = session.get(Project, job.project_id)
            if ticket is None or project is None:
                raise JobStateError(f"Job {job_id} references missing ticket or project.")
            return JobSpec(
                job_id=job.job_id,
                project_id=project.project_id,
                ticket_id=ticket.ticket_id,
                external_ticket_id=ticket.external_id,
                repo_url=project.repo_url,
                default_branch=project.default_branch,
                vcs_provider=project.vcs_provider,
                vcs_token=project.vcs_token,
                title=ticket.title,
                description=ticket.description or "",
                max_iterations=job.max_iterations,
                completion_promise=job.completion_promise,
                ticket_provider=project.ticket_provider,
                ticket_provider_token=project.ticket_provider_token,
                ticket_provider_config=_load_json_dict(project.ticket_provider_config_json),
                ticket_comments=_load_comments(ticket.comments_json),
                instruction_template=project.instruction_template,
                sandbox_base_path=project.sandbox_base_path,
                sandbox_path=job.sandbox_path,
                branch_name=job.branch_name,
            )

    # Internals

    def _transition(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        expected: tuple[JobStatus, ...],
        target: JobStatus,
        values: dict[str, Any],
        log: tuple[int, JobLogEvent, dict[str, Any]] | None = None,
    ) -> bool:
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.job_id) == job_id,
                    col(Job.status).in_([status.value for status in expected]),
                )
                .values(status=target.value, updated_at=now, **values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            if log is not None:
                iteration, event_type, event_data = log
                self._add_log(
                    session=session,
                    job_id=job_id,
                    iteration=iteration,
                    event_type=event_type,
                    event_data=event_data,
                )
            session.commit()
            return True

    def _update_fields(self, job_id: str, **values: Any) -> None:
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            session.exec(
                sa_update(Job)
                .where(col(Job.job_id) == job_id)
                .values(updated_at=now, **values),
            )
            session.commit()

    def _add_log(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        iteration: int,
        event_type: JobLogEvent,
        event_data: dict[str, Any] | None,
        agent_output: str | None = None,
    ) -> JobLog:
        now = utc_now()
        row = JobLog(
            job_id=job_id,
            iteration=iteration,
            event_type=event_type.value,
            event_data_json=json.dumps(event_data, ensure_ascii=False, sort_keys=True)
            if event_data
            else None,
            agent_output=agent_output,
            created_at=now,
            updated_at=now,
        )
        session.add(row)
        session.flush()
        return row


def _dump_json(value: object) -> str | None:
    if not value:
        return None
    return json.dumps(value, ensure_ascii=False)


def _load_json_dict(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    parsed = json.loads(raw)
    return parsed if isinstance(parsed, dict) else {}


def _load_json_list(raw: str | None) -> list[Any]:
    if not raw:
        return []
    parsed = json.loads(raw)
    return parsed if isinstance(parsed, list) else []


def _load_comments(raw: str | None) -> list[TicketComment]:
    comments = []
    for item in _load_json_list(raw):
        if isinstance(item, dict) and item.get("body"):
            comments.append(
                TicketComment(
                    body=str(item["body"]),
                    created_at=str(item.get("created_at") or ""),
                    author=item.get("author"),
                ),
            )
    return comments


def _to_project_view(row: Project) -> ProjectView:
    return ProjectView(
        project_id=row.project_id,
        name=row.name,
        repo_url=row.repo_url,
        default_branch=row.default_branch,
        vcs_provider=row.vcs_provider,
        vcs_token=row.vcs_token,
        ticket_provider=row.ticket_provider,
        ticket_provider_token=row.ticket_provider_token,
        ticket_provider_config=_load_json_dict(row.ticket_provider_config_json),
        sandbox_base_path=row.sandbox_base_path,
        instruction_template=row.instruction_template,
        max_iterations=row.max_iterations,
        completion_promise=row.completion_promise,
        is_active=row.is_active,
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_ticket_view(row: Ticket) -> TicketView:
    return TicketView(
        ticket_id=row.ticket_id,
        project_id=row.project_id,
        external_id=row.external_id,
        external_url=row.external_url,
        title=row.title,
        description=row.description,
        external_status=row.external_status,
        comments=_load_comments(row.comments_json),
        last_synced_at=to_utc_aware_datetime(row.last_synced_at),
    )


def _to_job_view(row: Job) -> JobView:
    return JobView(
        job_id=row.job_id,
        project_id=row.project_id,
        ticket_id=row.ticket_id,
        status=JobStatus(row.status),
        iteration=row.iteration,
        max_iterations=row.max_iterations,
        completion_promise=row.completion_promise,
        sandbox_path=row.sandbox_path,
        branch_name=row.branch_name,
        pr_url=row.pr_url,
        pr_number=row.pr_number,
        blocked_by_job_id=row.blocked_by_job_id,
        error_message=row.error_message,
        error_stack=row.error_stack,
        worker_id=row.worker_id,
        clarification_question=row.clarification_question,
        clarification_answer=row.clarification_answer,
        pending_permission_request=row.pending_permission_request,
        final_output=row.final_output,
        started_at=optional_utc(row.started_at),
        completed_at=optional_utc(row.completed_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_log_view(row: JobLog) -> JobLogView:
    return JobLogView(
        log_id=row.id or 0,
        job_id=row.job_id,
        iteration=row.iteration,
        event_type=row.event_type,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        event_data=_load_json_dict(row.event_data_json),
        agent_output=row.agent_output,
    )
