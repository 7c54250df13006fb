"""Shared test fixtures."""

from __future__ import annotations

import json
import shlex
import shutil
import subprocess
import sys
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from pathlib import Path

import pytest

from ticket_agent.config import LoopSettings
from ticket_agent.engine.backend.executor import AgentExecutor
from ticket_agent.engine.models import JobSpec, ProjectCreate, TicketComment, TicketData
from ticket_agent.engine.repository import JobRepository
from ticket_agent.engine.sandbox import SandboxManager

_SCRIPTED_AGENT = """\
import json
import sys
from pathlib import Path

root = Path(__file__).parent
outputs = json.loads((root / "outputs.json").read_text(encoding="utf-8"))
prompts = root / "prompts"
count = len(list(prompts.glob("prompt-*.txt")))
(prompts / f"prompt-{count:03d}.txt").write_text(sys.argv[1], encoding="utf-8")
sys.stdout.write(outputs[min(count, len(outputs) - 1)])
sys.stdout.flush()
"""


@dataclass(slots=True)
class ScriptedAgent:
    """Fake agent CLI that replays canned outputs, one per invocation."""

    root: Path

    @property
    def command_template(self) -> str:
        script = self.root / "agent.py"
        return f"{shlex.quote(sys.executable)} {shlex.quote(str(script))} {{prompt}}"

    def executor(self) -> AgentExecutor:
        return AgentExecutor(command_template=self.command_template)

    def prompts(self) -> list[str]:
        return [
            path.read_text(encoding="utf-8")
            for path in sorted((self.root / "prompts").glob("prompt-*.txt"))
        ]


@pytest.fixture()
def scripted_agent(tmp_path: Path) -> Callable[[list[str]], ScriptedAgent]:
    def _build(outputs: list[str]) -> ScriptedAgent:
        root = tmp_path / "agent"
        (root / "prompts").mkdir(parents=True, exist_ok=True)
        (root / "agent.py").write_text(_SCRIPTED_AGENT, encoding="utf-8")
        (root / "outputs.json").write_text(json.dumps(outputs), encoding="utf-8")
        return ScriptedAgent(root=root)

    return _build


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[JobRepository]:
    repo = JobRepository(tmp_path / "jobs.db")
    repo.init_schema()
    yield repo
    repo.close()


@pytest.fixture()
def origin_repo(tmp_path: Path) -> Path:
    """Local git repository with one commit on ``main``."""

    if shutil.which("git") is None:
        pytest.skip("git is not installed")
    origin = tmp_path / "origin"
    origin.mkdir()
    _git("init", "--initial-branch=main", cwd=origin)
    (origin / "README.md").write_text("# demo\n", encoding="utf-8")
    _git("add", "README.md", cwd=origin)
    _git(
        "-c",
        "user.email=tests@example.com",
        "-c",
        "user.name=Tests",
        "commit",
        "-m",
        "initial",
        cwd=origin,
    )
    return origin


@pytest.fixture()
def tickets_file(tmp_path: Path) -> Path:
    path = tmp_path / "tickets.json"
    path.write_text(
        json.dumps(
            {
                "tickets": [
                    {
                        "external_id": "ENG-1",
                        "title": "Add login button",
                        "status": "Todo",
                        "url": "https://tracker.example/ENG-1",
                        "description": "Put a login button on the landing page.",
                        "comments": [
                            {
                                "body": "Use the primary color.",
                                "created_at": "2026-10-01T10:00:00+00:00",
                                "author": "alice",
                            },
                        ],
                    },
                    {
                        "external_id": "ENG-2",
                        "title": "Fix footer",
                        "status": "In Progress",
                    },
                ],
            },
        ),
        encoding="utf-8",
    )
    return path


@pytest.fixture()
def sandbox_manager(tmp_path: Path) -> SandboxManager:
    return SandboxManager(tmp_path / "sandboxes")


@pytest.fixture()
def fast_loop_settings() -> LoopSettings:
    return LoopSettings(flush_interval_seconds=0.0, flush_bytes=1)


def seed_job(
    repository: JobRepository,
    *,
    repo_url: str,
    tickets_path: Path,
    max_iterations: int = 5,
    completion_promise: str = "TASK COMPLETE",
    external_id: str = "ENG-1",
    project_name: str = "demo",
) -> JobSpec:
    """Create project, ticket and a pending job; return its process payload."""

    project = repository.create_project(
        ProjectCreate(
            name=project_name,
            repo_url=repo_url,
            vcs_provider="github",
            vcs_token="",
            ticket_provider="local",
            ticket_provider_config={"path": str(tickets_path)},
            max_iterations=max_iterations,
            completion_promise=completion_promise,
        ),
    )
    ticket = repository.upsert_ticket(
        project_id=project.project_id,
        ticket=TicketData(
            external_id=external_id,
            title="Add login button",
            status="Todo",
            description="Put a login button on the landing page.",
            comments=[
                TicketComment(
                    body="Use the primary color.",
                    created_at="2026-10-01T10:00:00+00:00",
                    author="alice",
                ),
            ],
        ),
    )
    job = repository.create_job(
        project_id=project.project_id,
        ticket_id=ticket.ticket_id,
        max_iterations=max_iterations,
        completion_promise=completion_promise,
    )
    return repository.build_job_spec(job.job_id)


def read_ticket(tickets_path: Path, external_id: str) -> dict:
    payload = json.loads(tickets_path.read_text(encoding="utf-8"))
    return next(item for item in payload["tickets"] if item["external_id"] == external_id)


def _git(*args: str, cwd: Path) -> None:
    subprocess.run(["git", *args], cwd=cwd, check=True, capture_output=True)  # noqa: S603, S607
