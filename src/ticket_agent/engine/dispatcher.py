"""Queue topics, message handlers and crash recovery for job execution."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta

from ticket_agent.config import Settings
from ticket_agent.engine.backend.executor import AgentExecutor
from ticket_agent.engine.loop import ExecutionLoop, ExecutorFactory
from ticket_agent.engine.models import (
    CANCELLABLE_STATUSES,
    ExecutionState,
    JobSpec,
    JobStatus,
    JobView,
)
from ticket_agent.engine.queue import DurableQueue, QueueDelivery
from ticket_agent.engine.registry import JobRegistry
from ticket_agent.engine.repository import JobRepository
from ticket_agent.engine.sandbox import SandboxManager
from ticket_agent.errors import JobStateError
from ticket_agent.storage.common import utc_now

logger = logging.getLogger(__name__)

TOPIC_PROCESS = "job.process"
TOPIC_RESUME = "job.resume"
TOPIC_CANCEL = "job.cancel"
TOPIC_PERMISSION_ANSWER = "job.permission_answer"
ALL_TOPICS = (TOPIC_PROCESS, TOPIC_RESUME, TOPIC_CANCEL, TOPIC_PERMISSION_ANSWER)

_FORCED_STOP_SECONDS = 10.0


@dataclass(slots=True)
class RecoverySummary:
    requeued: int = 0
    released: int = 0
    purged_messages: int = 0


class JobDispatcher:
    """Owns the durable queue, the live-loop registry and the topic handlers."""

    def __init__(
        self,
        *,
        settings: Settings,
        repository: JobRepository,
        queue: DurableQueue | None = None,
        sandbox: SandboxManager | None = None,
        executor_factory: ExecutorFactory | None = None,
    ) -> None:
        self.settings = settings
        self.repository = repository
        self.worker_id = settings.worker.worker_id
        self.queue = queue or DurableQueue(
            settings.db_path,
            worker_id=settings.worker.worker_id,
            busy_timeout_ms=settings.sqlite_busy_timeout_ms,
            lease_seconds=settings.worker.lease_seconds,
            retry_limit=settings.worker.retry_limit,
            retry_backoff_seconds=settings.worker.retry_backoff_seconds,
            poll_interval_seconds=settings.worker.poll_interval_seconds,
        )
        self.sandbox = sandbox or SandboxManager(
            settings.sandbox.base_path,
            branch_prefix=settings.sandbox.branch_prefix,
            instruction_file_name=settings.sandbox.instruction_file_name,
            init_overlay=settings.sandbox.init_overlay,
            clone_depth=settings.sandbox.clone_depth,
        )
        self.executor_factory = executor_factory or self._default_executor
        self.registry = JobRegistry()
        self._stop_event = threading.Event()
        self._started = False

    def declare_topics(self) -> None:
        for topic in ALL_TOPICS:
            self.queue.declare_topic(topic)

    def start(self) -> RecoverySummary:
        """Declare topics, recover orphaned jobs, then start consuming."""

        self.declare_topics()
        summary = self.recover(release_own=True)
        concurrency = self.settings.worker.concurrency
        self.queue.subscribe(TOPIC_PROCESS, self._handle_process, concurrency=concurrency)
        self.queue.subscribe(TOPIC_RESUME, self._handle_resume, concurrency=concurrency)
        self.queue.subscribe(
            TOPIC_PERMISSION_ANSWER,
            self._handle_permission_answer,
            concurrency=concurrency,
        )
        self.queue.subscribe(TOPIC_CANCEL, self._handle_cancel, concurrency=1)
        self.queue.start()
        self._started = True
        logger.info(
            "Dispatcher %s started: requeued=%s released=%s purged=%s",
            self.worker_id,
            summary.requeued,
            summary.released,
            summary.purged_messages,
        )
        return summary

    def recover(self, *, release_own: bool = False) -> RecoverySummary:
        """Re-enqueue orphaned pending jobs and release abandoned running ones.

        A running job is abandoned when it is stale. With ``release_own`` (set by
        ``start``, which owns the registry) a running job under this worker id
        with no live loop is abandoned too: the previous process died.
        """

        summary = RecoverySummary()
        for job in self.repository.list_jobs_by_status(JobStatus.PENDING):
            if self.queue.has_pending(TOPIC_PROCESS, job.job_id):
                continue
            if self._requeue(job):
                summary.requeued += 1

        cutoff = utc_now() - timedelta(seconds=self.settings.worker.stale_job_seconds)
        orphaned: dict[str, JobView] = {}
        if release_own:
            orphaned = {
                job.job_id: job
                for job in self.repository.list_jobs_by_status(JobStatus.RUNNING)
                if job.worker_id == self.worker_id
            }
        for job in self.repository.list_stale_running(updated_before=cutoff):
            orphaned.setdefault(job.job_id, job)
        for job in orphaned.values():
            if job.job_id in self.registry:
                continue
            released = self.repository.release_job(
                job_id=job.job_id,
                iteration=job.iteration,
                reason=(
                    "Abandoned running job released by recovery "
                    f"(worker_id={job.worker_id or 'unknown'})"
                ),
            )
            if not released:
                continue
            summary.released += 1
            logger.warning("Released abandoned running job %s", job.job_id)
            if not self.queue.has_pending(TOPIC_PROCESS, job.job_id):
                self._requeue(job)

        retention = timedelta(days=self.settings.worker.message_retention_days)
        summary.purged_messages = self.queue.purge_completed(retention)
        return summary

    def enqueue_process(self, job: JobSpec) -> str:
        return self.queue.send(TOPIC_PROCESS, job.to_payload(), key=job.job_id)

    def enqueue_resume(self, job_id: str, answer: str) -> str:
        return self.queue.send(TOPIC_RESUME, {"job_id": job_id, "answer": answer}, key=job_id)

    def enqueue_cancel(self, job_id: str) -> str:
        return self.queue.send(TOPIC_CANCEL, {"job_id": job_id}, key=job_id)

    def enqueue_permission_answer(self, job_id: str, approved: bool, command: str) -> str:
        return self.queue.send(
            TOPIC_PERMISSION_ANSWER,
            {"job_id": job_id, "approved": approved, "command": command},
            key=job_id,
        )

    def stop(self) -> None:
        """Stop consuming; interrupt loops still running after the grace period."""

        self._stop_event.set()
        if not self._started:
            return
        grace = float(self.settings.worker.graceful_shutdown_seconds)
        if not self.queue.stop(timeout=grace):
            live = self.registry.snapshot()
            logger.warning(
                "Grace period of %ss elapsed; interrupting %s running job(s)",
                grace,
                len(live),
            )
            for loop in live.values():
                loop.interrupt()
            self.queue.stop(timeout=_FORCED_STOP_SECONDS)
        self._started = False
        logger.info("Dispatcher %s stopped", self.worker_id)

    def request_stop(self) -> None:
        self._stop_event.set()

    def run_forever(self) -> None:
        """Consume until SIGINT/SIGTERM, then shut down gracefully."""

        self.start()
        try:
            with self._signal_handlers():
                while not self._stop_event.is_set():
                    self._stop_event.wait(self.settings.worker.poll_interval_seconds)
        finally:
            self.stop()

    # Handlers

    def _handle_process(self, delivery: QueueDelivery) -> None:
        job = JobSpec.from_payload(delivery.payload)
        claimed = self.repository.claim_job(job_id=job.job_id, worker_id=self.worker_id)
        if claimed is None:
            logger.info("Skipping job.process for %s: job is not pending", job.job_id)
            return

        if claimed.sandbox_path:
            job.sandbox_path = claimed.sandbox_path
            job.branch_name = claimed.branch_name
        loop = self._build_loop(
            job,
            state=ExecutionState(
                iteration=claimed.iteration,
                max_iterations=claimed.max_iterations,
                completion_promise=claimed.completion_promise,
            ),
        )
        self._run_registered(loop, loop.run)

    def _handle_resume(self, delivery: QueueDelivery) -> None:
        job_id = str(delivery.payload["job_id"])
        answer = str(delivery.payload.get("answer", ""))
        self._resume(
            job_id,
            awaited=JobStatus.NEEDS_CLARIFICATION,
            action=lambda loop: loop.resume_with_answer(answer),
        )

    def _handle_permission_answer(self, delivery: QueueDelivery) -> None:
        job_id = str(delivery.payload["job_id"])
        approved = bool(delivery.payload.get("approved"))
        command = delivery.payload.get("command")

        def action(loop: ExecutionLoop) -> JobStatus:
            return loop.resume_with_permission(
                approved,
                str(command or loop.state.pending_permission or ""),
            )

        self._resume(job_id, awaited=JobStatus.NEEDS_PERMISSION, action=action)

    def _handle_cancel(self, delivery: QueueDelivery) -> None:
        job_id = str(delivery.payload["job_id"])
        view = self.repository.get_job(job_id)
        if view is None:
            logger.warning("Cancel requested for unknown job %s", job_id)
            return
        if view.status not in CANCELLABLE_STATUSES:
            logger.info("Skipping cancel for %s: status is %s", job_id, view.status.value)
            return

        loop = self.registry.get(job_id)
        if loop is not None:
            loop.cancel()
            refreshed = self.repository.get_job(job_id)
            if refreshed is None or refreshed.status == JobStatus.RUNNING:
                return
        if self.repository.mark_cancelled(job_id=job_id):
            logger.info("Job %s cancelled", job_id)

    # Internals

    def _resume(
        self,
        job_id: str,
        *,
        awaited: JobStatus,
        action: Callable[[ExecutionLoop], JobStatus],
    ) -> None:
        view = self.repository.get_job(job_id)
        if view is None:
            logger.warning("Resume requested for unknown job %s", job_id)
            return
        if view.status != awaited:
            logger.info(
                "Skipping resume for %s: status is %s, expected %s",
                job_id,
                view.status.value,
                awaited.value,
            )
            return

        try:
            loop = self.registry.get(job_id)
            if loop is None:
                loop = self._cold_loop(view)
            else:
                logger.info("Resuming job %s on its live loop", job_id)
            self._run_registered(loop, lambda: action(loop))
        except JobStateError as error:
            logger.info("Skipping resume for %s: %s", job_id, error)

    def _cold_loop(self, view: JobView) -> ExecutionLoop:
        return ExecutionLoop.from_job(
            job=self.repository.build_job_spec(view.job_id),
            view=view,
            repository=self.repository,
            sandbox=self.sandbox,
            executor_factory=self.executor_factory,
            settings=self.settings.loop,
            iteration_timeout_seconds=self.settings.executor.iteration_timeout_seconds,
        )

    def _build_loop(self, job: JobSpec, *, state: ExecutionState) -> ExecutionLoop:
        return ExecutionLoop(
            job=job,
            repository=self.repository,
            sandbox=self.sandbox,
            executor_factory=self.executor_factory,
            settings=self.settings.loop,
            iteration_timeout_seconds=self.settings.executor.iteration_timeout_seconds,
            state=state,
        )

    def _run_registered(self, loop: ExecutionLoop, action: Callable[[], JobStatus]) -> None:
        if not self.registry.register(loop.job_id, loop):
            logger.warning("Job %s already has a live loop on this worker", loop.job_id)
            return
        try:
            status = action()
        finally:
            self.registry.remove(loop.job_id, loop)
        logger.info("Job %s loop returned with status %s", loop.job_id, status.value)

    def _requeue(self, job: JobView) -> bool:
        try:
            spec = self.repository.build_job_spec(job.job_id)
        except JobStateError:
            logger.exception("Cannot rebuild payload for job %s", job.job_id)
            return False
        self.enqueue_process(spec)
        logger.info("Re-enqueued job %s", job.job_id)
        return True

    def _default_executor(self) -> AgentExecutor:
        executor_settings = self.settings.executor
        return AgentExecutor(
            command_template=executor_settings.resolved_command_template(),
            output_format=executor_settings.output_format,
            model=executor_settings.model,
            result_max_chars=executor_settings.result_max_chars,
        )

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.info("Received %s; shutting down", name)
            self.request_stop()

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
