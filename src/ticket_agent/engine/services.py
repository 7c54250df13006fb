"""Use-case services: ticket sync and operator job commands."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from ticket_agent.engine.dispatcher import JobDispatcher
from ticket_agent.engine.models import (
    CANCELLABLE_STATUSES,
    JobStatus,
    JobView,
    ProjectCreate,
    ProjectView,
    TicketProviderName,
    VcsProviderName,
)
from ticket_agent.engine.providers import (
    READY_STATUSES,
    TicketProvider,
    create_ticket_provider,
)
from ticket_agent.engine.repository import JobRepository
from ticket_agent.errors import JobStateError

logger = logging.getLogger(__name__)

_REOPENABLE_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.PR_CREATED})


@dataclass(slots=True)
class SyncSummary:
    """Outcome of one ticket sync pass."""

    project_id: str
    fetched: int = 0
    upserted: int = 0
    created_job_ids: list[str] = field(default_factory=list)
    skipped: int = 0
    removed: int = 0


class TicketSyncService:
    """Pull ready tickets from the tracker and turn them into pending jobs."""

    def __init__(
        self,
        *,
        repository: JobRepository,
        dispatcher: JobDispatcher,
        provider_factory: Callable[[str], TicketProvider] = create_ticket_provider,
    ) -> None:
        self.repository = repository
        self.dispatcher = dispatcher
        self.provider_factory = provider_factory

    def sync_project(self, project_id: str) -> SyncSummary:
        project = self.repository.get_project(project_id)
        if project is None:
            raise ValueError(f"Project not found: {project_id}")

        provider = self.provider_factory(project.ticket_provider)
        config = {"token": project.ticket_provider_token, **project.ticket_provider_config}
        tickets = provider.fetch_ready(config)

        summary = SyncSummary(project_id=project_id, fetched=len(tickets))
        for ticket in tickets:
            stored = self.repository.upsert_ticket(project_id=project_id, ticket=ticket)
            summary.upserted += 1
            if ticket.status.strip().lower() not in READY_STATUSES:
                continue

            latest = self.repository.latest_job_for_ticket(stored.ticket_id)
            if latest is not None and latest.status not in _REOPENABLE_STATUSES:
                summary.skipped += 1
                continue
            try:
                job = self.repository.create_job(
                    project_id=project_id,
                    ticket_id=stored.ticket_id,
                    max_iterations=project.max_iterations,
                    completion_promise=project.completion_promise,
                )
            except JobStateError:
                summary.skipped += 1
                continue
            self.dispatcher.enqueue_process(self.repository.build_job_spec(job.job_id))
            summary.created_job_ids.append(job.job_id)
            logger.info(
                "Created job %s for ticket %s (%s)",
                job.job_id,
                ticket.external_id,
                ticket.title,
            )

        summary.removed = self.repository.prune_tickets(
            project_id=project_id,
            keep_external_ids=[ticket.external_id for ticket in tickets],
        )
        if summary.removed:
            logger.info("Removed %d tickets no longer reported for %s", summary.removed, project_id)
        return summary


class JobService:
    """Operator commands that go through the queue."""

    def __init__(self, *, repository: JobRepository, dispatcher: JobDispatcher) -> None:
        self.repository = repository
        self.dispatcher = dispatcher

    def create_project(self, payload: ProjectCreate) -> ProjectView:
        valid_vcs = {provider.value for provider in VcsProviderName}
        if payload.vcs_provider not in valid_vcs:
            raise ValueError(
                f"Unsupported VCS provider: {payload.vcs_provider!r}. "
                f"Expected one of {sorted(valid_vcs)}.",
            )
        valid_trackers = {provider.value for provider in TicketProviderName}
        if payload.ticket_provider not in valid_trackers:
            raise ValueError(
                f"Unsupported ticket provider: {payload.ticket_provider!r}. "
                f"Expected one of {sorted(valid_trackers)}.",
            )
        if payload.max_iterations <= 0:
            raise ValueError("max_iterations must be a positive integer.")
        return self.repository.create_project(payload)

    def retry_job(self, job_id: str) -> JobView:
        """Reset a failed/cancelled job to pending and enqueue it."""

        job = self.repository.retry_job(job_id=job_id)
        self.dispatcher.enqueue_process(self.repository.build_job_spec(job_id))
        return job

    def cancel_job(self, job_id: str) -> str:
        job = self._require_job(job_id)
        if job.status not in CANCELLABLE_STATUSES:
            raise JobStateError(f"Job cannot be cancelled from status={job.status.value}")
        return self.dispatcher.enqueue_cancel(job_id)

    def answer_clarification(self, job_id: str, answer: str) -> str:
        job = self._require_job(job_id)
        if job.status != JobStatus.NEEDS_CLARIFICATION:
            raise JobStateError(
                f"Job is not waiting for clarification (status={job.status.value}).",
            )
        if not answer.strip():
            raise ValueError("Answer must not be empty.")
        return self.dispatcher.enqueue_resume(job_id, answer)

    def answer_permission(self, job_id: str, *, approved: bool) -> str:
        job = self._require_job(job_id)
        if job.status != JobStatus.NEEDS_PERMISSION or not job.pending_permission_request:
            raise JobStateError(
                f"Job is not waiting for permission (status={job.status.value}).",
            )
        return self.dispatcher.enqueue_permission_answer(
            job_id,
            approved,
            job.pending_permission_request,
        )

    def _require_job(self, job_id: str) -> JobView:
        job = self.repository.get_job(job_id)
        if job is None:
            raise JobStateError(f"Job not found: {job_id}")
        return job
