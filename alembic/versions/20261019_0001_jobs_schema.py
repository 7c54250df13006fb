"""Create projects, tickets, jobs and job logs."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "projects",
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("repo_url", sa.String(), nullable=False),
        sa.Column("default_branch", sa.String(), nullable=False, server_default="main"),
        sa.Column("vcs_provider", sa.String(), nullable=False),
        sa.Column("vcs_token", sa.String(), nullable=False),
        sa.Column("ticket_provider", sa.String(), nullable=False),
        sa.Column("ticket_provider_token", sa.String(), nullable=False, server_default=""),
        sa.Column("ticket_provider_config_json", sa.Text(), nullable=True),
        sa.Column("sandbox_base_path", sa.String(), nullable=True),
        sa.Column("instruction_template", sa.Text(), nullable=True),
        sa.Column("max_iterations", sa.Integer(), nullable=False, server_default=sa.text("100")),
        sa.Column(
            "completion_promise",
            sa.String(),
            nullable=False,
            server_default="TASK COMPLETE",
        ),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("project_id"),
    )
    op.create_index("ix_projects_name", "projects", ["name"])

    op.create_table(
        "tickets",
        sa.Column("ticket_id", sa.String(), nullable=False),
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("external_id", sa.String(), nullable=False),
        sa.Column("external_url", sa.String(), nullable=False, server_default=""),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("priority", sa.String(), nullable=True),
        sa.Column("labels_json", sa.String(), nullable=True),
        sa.Column("depends_on_json", sa.String(), nullable=True),
        sa.Column("external_status", sa.String(), nullable=True),
        sa.Column("comments_json", sa.Text(), nullable=True),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["project_id"], ["projects.project_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("ticket_id"),
        sa.UniqueConstraint(
            "project_id",
            "external_id",
            name="uq_tickets_project_external_id",
        ),
    )
    op.create_index("ix_tickets_project_id", "tickets", ["project_id"])
    op.create_index("ix_tickets_external_id", "tickets", ["external_id"])

    op.create_table(
        "jobs",
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("ticket_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("iteration", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("max_iterations", sa.Integer(), nullable=False, server_default=sa.text("100")),
        sa.Column("completion_promise", sa.String(), nullable=True),
        sa.Column("sandbox_path", sa.String(), nullable=True),
        sa.Column("branch_name", sa.String(), nullable=True),
        sa.Column("pr_url", sa.String(), nullable=True),
        sa.Column("pr_number", sa.Integer(), nullable=True),
        sa.Column("blocked_by_job_id", sa.String(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("error_stack", sa.Text(), nullable=True),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("clarification_question", sa.Text(), nullable=True),
        sa.Column("clarification_answer", sa.Text(), nullable=True),
        sa.Column("pending_permission_request", sa.Text(), nullable=True),
        sa.Column("final_output", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["project_id"], ["projects.project_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["ticket_id"], ["tickets.ticket_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("job_id"),
    )
    op.create_index("ix_jobs_project_id", "jobs", ["project_id"])
    op.create_index("ix_jobs_ticket_id", "jobs", ["ticket_id"])
    op.create_index("ix_jobs_status", "jobs", ["status"])
    op.execute(
        sa.text(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS uq_jobs_ticket_active
            ON jobs (ticket_id)
            WHERE status NOT IN ('completed', 'pr_created', 'failed', 'cancelled')
            """,
        ),
    )

    op.create_table(
        "job_logs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("iteration", sa.Integer(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("event_data_json", sa.Text(), nullable=True),
        sa.Column("agent_output", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["jobs.job_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_job_logs_job_time", "job_logs", ["job_id", "created_at"])
    op.create_index("ix_job_logs_event_type", "job_logs", ["event_type"])


def downgrade() -> None:
    op.drop_index("ix_job_logs_event_type", table_name="job_logs")
    op.drop_index("idx_job_logs_job_time", table_name="job_logs")
    op.drop_table("job_logs")
    op.execute(sa.text("DROP INDEX IF EXISTS uq_jobs_ticket_active"))
    op.drop_index("ix_jobs_status", table_name="jobs")
    op.drop_index("ix_jobs_ticket_id", table_name="jobs")
    op.drop_index("ix_jobs_project_id", table_name="jobs")
    op.drop_table("jobs")
    op.drop_index("ix_tickets_external_id", table_name="tickets")
    op.drop_index("ix_tickets_project_id", table_name="tickets")
    op.drop_table("tickets")
    op.drop_index("ix_projects_name", table_name="projects")
    op.drop_table("projects")
