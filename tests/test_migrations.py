from pathlib import Path

import allure
from sqlalchemy import text

from ticket_agent.engine.repository import JobRepository

pytestmark = [
    allure.epic("Job Engine"),
    allure.feature("Persistence"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = JobRepository(tmp_path / "migrations.db")
    repository.init_schema()

    with repository.engine.connect() as connection:
        version = connection.execute(text("SELECT version_num FROM alembic_version")).scalar_one()
        tables = connection.execute(
            text(
                """
                SELECT name
                FROM sqlite_master
                WHERE type = 'table' AND name NOT LIKE 'sqlite_%' AND name != 'alembic_version'
                ORDER BY name
                """,
            ),
        ).scalars().all()
        unique_index = connection.execute(
            text("SELECT name FROM sqlite_master WHERE type = 'index' AND name = 'uq_jobs_ticket_active'"),
        ).scalar_one_or_none()

    assert version == "20261019_0002"
    assert tables == [
        "job_logs",
        "jobs",
        "projects",
        "queue_messages",
        "queue_topics",
        "tickets",
    ]
    assert unique_index == "uq_jobs_ticket_active"
    repository.close()


def test_init_schema_is_idempotent(tmp_path: Path) -> None:
    repository = JobRepository(tmp_path / "twice.db")
    repository.init_schema()
    repository.init_schema()
    assert repository.list_projects() == []
    repository.close()
