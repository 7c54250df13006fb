"""SQLModel ORM tables for projects, tickets, jobs and the durable queue."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint, text
from sqlmodel import Field, SQLModel

TERMINAL_JOB_STATUSES_SQL = "('completed', 'pr_created', 'failed', 'cancelled')"


class Project(SQLModel, table=True):
    __tablename__ = "projects"  # type: ignore[bad-override]

    project_id: str = Field(primary_key=True)
    name: str = Field(index=True)
    repo_url: str
    default_branch: str = "main"
    vcs_provider: str
    vcs_token: str
    ticket_provider: str
    ticket_provider_token: str = ""
    ticket_provider_config_json: str | None = Field(default=None, sa_column=Column(Text))
    sandbox_base_path: str | None = None
    instruction_template: str | None = Field(default=None, sa_column=Column(Text))
    max_iterations: int = 100
    completion_promise: str = "TASK COMPLETE"
    is_active: bool = True
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Ticket(SQLModel, table=True):
    __tablename__ = "tickets"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint(
            "project_id",
            "external_id",
            name="uq_tickets_project_external_id",
        ),
    )

    ticket_id: str = Field(primary_key=True)
    project_id: str = Field(
        sa_column=Column(
            ForeignKey("projects.project_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    external_id: str = Field(index=True)
    external_url: str = ""
    title: str
    description: str | None = Field(default=None, sa_column=Column(Text))
    priority: str | None = None
    labels_json: str | None = None
    depends_on_json: str | None = None
    external_status: str | None = None
    comments_json: str | None = Field(default=None, sa_column=Column(Text))
    last_synced_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Job(SQLModel, table=True):
    __tablename__ = "jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index(
            "uq_jobs_ticket_active",
            "ticket_id",
            unique=True,
            sqlite_where=text(f"status NOT IN {TERMINAL_JOB_STATUSES_SQL}"),
        ),
    )

    job_id: str = Field(primary_key=True)
    project_id: str = Field(
        sa_column=Column(
            ForeignKey("projects.project_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    ticket_id: str = Field(
        sa_column=Column(
            ForeignKey("tickets.ticket_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    status: str = Field(index=True)
    iteration: int = 0
    max_iterations: int = 100
    completion_promise: str | None = "TASK COMPLETE"
    sandbox_path: str | None = None
    branch_name: str | None = None
    pr_url: str | None = None
    pr_number: int | None = None
    blocked_by_job_id: str | None = None
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    error_stack: str | None = Field(default=None, sa_column=Column(Text))
    worker_id: str | None = None
    clarification_question: str | None = Field(default=None, sa_column=Column(Text))
    clarification_answer: str | None = Field(default=None, sa_column=Column(Text))
    pending_permission_request: str | None = Field(default=None, sa_column=Column(Text))
    final_output: str | None = Field(default=None, sa_column=Column(Text))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class JobLog(SQLModel, table=True):
    __tablename__ = "job_logs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_job_logs_job_time", "job_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("jobs.job_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    iteration: int
    event_type: str = Field(index=True)
    event_data_json: str | None = Field(default=None, sa_column=Column(Text))
    agent_output: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class QueueTopic(SQLModel, table=True):
    __tablename__ = "queue_topics"  # type: ignore[bad-override]

    name: str = Field(primary_key=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class QueueMessage(SQLModel, table=True):
    __tablename__ = "queue_messages"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_queue_messages_claim", "topic", "state", "run_after"),
        Index("idx_queue_messages_key", "topic", "key"),
    )

    message_id: str = Field(primary_key=True)
    topic: str = Field(
        sa_column=Column(
            ForeignKey("queue_topics.name", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    key: str | None = None
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    state: str
    attempts: int = 0
    retry_limit: int = 2
    run_after: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    locked_by: str | None = None
    locked_until: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    last_error: str | None = Field(default=None, sa_column=Column(Text))
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
