"""Domain models for jobs, job logs and queue payloads."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    """Persisted job lifecycle states (wire-stable values)."""

    PENDING = "pending"
    WAITING_DEPENDENCY = "waiting_dependency"
    RUNNING = "running"
    NEEDS_CLARIFICATION = "needs_clarification"
    NEEDS_PERMISSION = "needs_permission"
    PR_CREATED = "pr_created"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset(
    {JobStatus.COMPLETED, JobStatus.PR_CREATED, JobStatus.FAILED, JobStatus.CANCELLED},
)
RETRYABLE_STATUSES = frozenset({JobStatus.FAILED, JobStatus.CANCELLED})
CANCELLABLE_STATUSES = frozenset(
    {
        JobStatus.PENDING,
        JobStatus.WAITING_DEPENDENCY,
        JobStatus.RUNNING,
        JobStatus.NEEDS_CLARIFICATION,
        JobStatus.NEEDS_PERMISSION,
    },
)


class JobLogEvent(str, Enum):
    """Append-only job log event types."""

    ITERATION_START = "iteration_start"
    ITERATION_OUTPUT = "iteration_output"
    ITERATION_END = "iteration_end"
    CLARIFICATION_REQUESTED = "clarification_requested"
    PERMISSION_REQUESTED = "permission_requested"
    PERMISSION_APPROVED = "permission_approved"
    PERMISSION_DENIED = "permission_denied"
    PR_CREATED = "pr_created"
    COMPLETED = "completed"
    MAX_ITERATIONS_REACHED = "max_iterations_reached"
    ERROR = "error"


class TicketProviderName(str, Enum):
    LINEAR = "linear"
    NOTION = "notion"
    JIRA = "jira"
    LOCAL = "local"


class VcsProviderName(str, Enum):
    GITHUB = "github"
    GITLAB = "gitlab"


@dataclass(slots=True)
class TicketComment:
    body: str
    created_at: str
    author: str | None = None


@dataclass(slots=True)
class TicketData:
    """Ticket as returned by a ticket provider."""

    external_id: str
    title: str
    status: str
    external_url: str = ""
    description: str | None = None
    priority: str | None = None
    labels: list[str] = field(default_factory=list)
    depends_on: list[str] = field(default_factory=list)
    comments: list[TicketComment] = field(default_factory=list)


@dataclass(slots=True)
class JobSpec:
    """Immutable snapshot carried by a job.process message.

    Self-contained: a worker can provision the sandbox and run the loop
    without reading Project or Ticket rows.
    """

    job_id: str
    project_id: str
    ticket_id: str
    external_ticket_id: str
    repo_url: str
    default_branch: str
    vcs_provider: str
    vcs_token: str
    title: str
    description: str
    max_iterations: int
    completion_promise: str | None
    ticket_provider: str
    ticket_provider_token: str = ""
    ticket_provider_config: dict[str, Any] = field(default_factory=dict)
    ticket_comments: list[TicketComment] = field(default_factory=list)
    instruction_template: str | None = None
    sandbox_base_path: str | None = None
    sandbox_path: str | None = None
    branch_name: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> JobSpec:
        data = dict(payload)
        data["ticket_comments"] = [
            comment if isinstance(comment, TicketComment) else TicketComment(**comment)
            for comment in data.get("ticket_comments") or []
        ]
        data["ticket_provider_config"] = dict(data.get("ticket_provider_config") or {})
        return cls(**data)


@dataclass(slots=True)
class JobView:
    """Readable job view for CLI and loop logic."""

    job_id: str
    project_id: str
    ticket_id: str
    status: JobStatus
    iteration: int
    max_iterations: int
    completion_promise: str | None
    sandbox_path: str | None
    branch_name: str | None
    pr_url: str | None
    pr_number: int | None
    blocked_by_job_id: str | None
    error_message: str | None
    error_stack: str | None
    worker_id: str | None
    clarification_question: str | None
    clarification_answer: str | None
    pending_permission_request: str | None
    final_output: str | None
    started_at: datetime | None
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class JobLogView:
    """Job log entry for audit trail and output tailing."""

    log_id: int
    job_id: str
    iteration: int
    event_type: str
    created_at: datetime
    updated_at: datetime
    event_data: dict[str, Any] = field(default_factory=dict)
    agent_output: str | None = None


@dataclass(slots=True)
class JobDetails:
    """Job with its log stream."""

    job: JobView
    logs: list[JobLogView]


@dataclass(slots=True)
class ProjectCreate:
    """Input payload for registering a project."""

    name: str
    repo_url: str
    vcs_provider: str
    vcs_token: str
    ticket_provider: str
    project_id: str | None = None
    default_branch: str = "main"
    ticket_provider_token: str = ""
    ticket_provider_config: dict[str, Any] = field(default_factory=dict)
    sandbox_base_path: str | None = None
    instruction_template: str | None = None
    max_iterations: int = 100
    completion_promise: str = "TASK COMPLETE"


@dataclass(slots=True)
class ProjectView:
    project_id: str
    name: str
    repo_url: str
    default_branch: str
    vcs_provider: str
    vcs_token: str
    ticket_provider: str
    ticket_provider_token: str
    ticket_provider_config: dict[str, Any]
    sandbox_base_path: str | None
    instruction_template: str | None
    max_iterations: int
    completion_promise: str
    is_active: bool
    created_at: datetime


@dataclass(slots=True)
class TicketView:
    ticket_id: str
    project_id: str
    external_id: str
    external_url: str
    title: str
    description: str | None
    external_status: str | None
    comments: list[TicketComment]
    last_synced_at: datetime


@dataclass(slots=True)
class AgentSignals:
    """Control signals extracted from one iteration's output."""

    has_completion_promise: bool = False
    needs_clarification: bool = False
    clarification_question: str | None = None
    needs_permission: bool = False
    permission_request: str | None = None
    pr_created: bool = False
    pr_url: str | None = None
    pr_number: int | None = None

    def to_event_data(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class ExecutionState:
    """In-memory loop state; rebuilt from the Job row on cold resume."""

    iteration: int
    max_iterations: int
    completion_promise: str | None
    prompt: str = ""
    resume_context: str | None = None
    is_complete: bool = False
    needs_clarification: bool = False
    clarification_question: str | None = None
    pending_permission: str | None = None
    last_output: str | None = None
