"""Runtime configuration for the job execution engine."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path

SUPPORTED_OUTPUT_FORMATS = ("text", "stream-json")

DEFAULT_COMMAND_TEMPLATES = {
    "text": "claude --print --max-turns 50 --output-format text {prompt}",
    "stream-json": (
        "claude --print --max-turns 50 --verbose --output-format stream-json {prompt}"
    ),
}


@dataclass(slots=True)
class WorkerSettings:
    """Queue consumer settings."""

    worker_id: str = field(default_factory=lambda: f"worker-{socket.gethostname()}")
    concurrency: int = 5
    poll_interval_seconds: float = 1.0
    lease_seconds: int = 60
    retry_limit: int = 2
    retry_backoff_seconds: int = 30
    graceful_shutdown_seconds: int = 30
    stale_job_seconds: int = 1_800
    message_retention_days: int = 7


@dataclass(slots=True)
class ExecutorSettings:
    """External agent process settings."""

    output_format: str = "text"
    command_template: str | None = None
    model: str = ""
    iteration_timeout_seconds: int = 600
    result_max_chars: int = 2_000

    def resolved_command_template(self) -> str:
        return self.command_template or DEFAULT_COMMAND_TEMPLATES[self.output_format]


@dataclass(slots=True)
class LoopSettings:
    """Execution loop defaults and log buffering policy."""

    default_max_iterations: int = 100
    default_completion_promise: str = "TASK COMPLETE"
    flush_interval_seconds: float = 2.0
    flush_bytes: int = 10_000
    output_max_chars: int = 50_000
    prompt_log_chars: int = 1_000


@dataclass(slots=True)
class SandboxSettings:
    """Per-job workspace settings."""

    base_path: Path = Path("/tmp/ticket-agent/sandboxes")  # noqa: S108
    branch_prefix: str = "ticket-agent"
    instruction_file_name: str = "CLAUDE.md"
    init_overlay: bool = False
    clone_depth: int = 1


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".ticket_agent.db")
    sqlite_busy_timeout_ms: int = 5_000
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    executor: ExecutorSettings = field(default_factory=ExecutorSettings)
    loop: LoopSettings = field(default_factory=LoopSettings)
    sandbox: SandboxSettings = field(default_factory=SandboxSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        worker_defaults = WorkerSettings()
        return cls(
            db_path=db_path or Path(os.getenv("TICKET_AGENT_DB_PATH", ".ticket_agent.db")),
            sqlite_busy_timeout_ms=int(os.getenv("TICKET_AGENT_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            worker=WorkerSettings(
                worker_id=os.getenv("TICKET_AGENT_WORKER_ID", worker_defaults.worker_id),
                concurrency=int(os.getenv("TICKET_AGENT_WORKER_CONCURRENCY", "5")),
                poll_interval_seconds=float(
                    os.getenv("TICKET_AGENT_WORKER_POLL_INTERVAL_SECONDS", "1.0"),
                ),
                lease_seconds=int(os.getenv("TICKET_AGENT_QUEUE_LEASE_SECONDS", "60")),
                retry_limit=int(os.getenv("TICKET_AGENT_QUEUE_RETRY_LIMIT", "2")),
                retry_backoff_seconds=int(
                    os.getenv("TICKET_AGENT_QUEUE_RETRY_BACKOFF_SECONDS", "30"),
                ),
                graceful_shutdown_seconds=int(
                    os.getenv("TICKET_AGENT_WORKER_GRACEFUL_SHUTDOWN_SECONDS", "30"),
                ),
                stale_job_seconds=int(os.getenv("TICKET_AGENT_STALE_JOB_SECONDS", "1800")),
                message_retention_days=int(
                    os.getenv("TICKET_AGENT_QUEUE_MESSAGE_RETENTION_DAYS", "7"),
                ),
            ),
            executor=ExecutorSettings(
                output_format=os.getenv("TICKET_AGENT_AGENT_OUTPUT_FORMAT", "text").strip().lower(),
                command_template=os.getenv("TICKET_AGENT_AGENT_COMMAND_TEMPLATE") or None,
                model=os.getenv("TICKET_AGENT_AGENT_MODEL", ""),
                iteration_timeout_seconds=int(
                    os.getenv("TICKET_AGENT_ITERATION_TIMEOUT_SECONDS", "600"),
                ),
                result_max_chars=int(os.getenv("TICKET_AGENT_RESULT_MAX_CHARS", "2000")),
            ),
            loop=LoopSettings(
                default_max_iterations=int(os.getenv("TICKET_AGENT_MAX_ITERATIONS", "100")),
                default_completion_promise=os.getenv(
                    "TICKET_AGENT_COMPLETION_PROMISE",
                    "TASK COMPLETE",
                ),
                flush_interval_seconds=float(
                    os.getenv("TICKET_AGENT_OUTPUT_FLUSH_INTERVAL_SECONDS", "2.0"),
                ),
                flush_bytes=int(os.getenv("TICKET_AGENT_OUTPUT_FLUSH_BYTES", "10000")),
                output_max_chars=int(os.getenv("TICKET_AGENT_OUTPUT_MAX_CHARS", "50000")),
            ),
            sandbox=SandboxSettings(
                base_path=Path(
                    os.getenv("TICKET_AGENT_SANDBOX_BASE_PATH", "/tmp/ticket-agent/sandboxes"),  # noqa: S108
                ),
                branch_prefix=os.getenv("TICKET_AGENT_BRANCH_PREFIX", "ticket-agent"),
                instruction_file_name=os.getenv(
                    "TICKET_AGENT_INSTRUCTION_FILE_NAME",
                    "CLAUDE.md",
                ),
                init_overlay=_env_bool("TICKET_AGENT_SANDBOX_INIT_JJ", default=False),
                clone_depth=int(os.getenv("TICKET_AGENT_CLONE_DEPTH", "1")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the engine cannot run with."""

        if self.worker.concurrency <= 0:
            raise ValueError("TICKET_AGENT_WORKER_CONCURRENCY must be a positive integer.")
        if self.worker.lease_seconds <= 0:
            raise ValueError("TICKET_AGENT_QUEUE_LEASE_SECONDS must be > 0.")
        if self.worker.retry_limit < 0:
            raise ValueError("TICKET_AGENT_QUEUE_RETRY_LIMIT must be >= 0.")
        if self.worker.stale_job_seconds <= self.executor.iteration_timeout_seconds:
            raise ValueError(
                "TICKET_AGENT_STALE_JOB_SECONDS must exceed "
                "TICKET_AGENT_ITERATION_TIMEOUT_SECONDS.",
            )
        if self.executor.output_format not in SUPPORTED_OUTPUT_FORMATS:
            raise ValueError(
                "Invalid TICKET_AGENT_AGENT_OUTPUT_FORMAT: "
                f"{self.executor.output_format!r}. Expected one of {SUPPORTED_OUTPUT_FORMATS}.",
            )
        if "{prompt}" not in self.executor.resolved_command_template():
            raise ValueError("TICKET_AGENT_AGENT_COMMAND_TEMPLATE must include {prompt}.")
        if self.executor.iteration_timeout_seconds <= 0:
            raise ValueError("TICKET_AGENT_ITERATION_TIMEOUT_SECONDS must be > 0.")
        if self.loop.default_max_iterations <= 0:
            raise ValueError("TICKET_AGENT_MAX_ITERATIONS must be a positive integer.")
        if self.sandbox.clone_depth <= 0:
            raise ValueError("TICKET_AGENT_CLONE_DEPTH must be a positive integer.")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
