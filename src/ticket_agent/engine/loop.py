"""Per-job iterative execution state machine."""

from __future__ import annotations

import logging
import threading
import time
import traceback
from collections.abc import Callable
from pathlib import Path

from ticket_agent.config import LoopSettings
from ticket_agent.engine.backend.executor import AgentExecutor, ExecutorResult
from ticket_agent.engine.models import (
    AgentSignals,
    ExecutionState,
    JobLogEvent,
    JobSpec,
    JobStatus,
    JobView,
)
from ticket_agent.engine.prompts import answer_context, build_prompt, permission_context
from ticket_agent.engine.providers import create_ticket_provider
from ticket_agent.engine.repository import JobRepository
from ticket_agent.engine.sandbox import SandboxManager
from ticket_agent.engine.signals import parse_signals
from ticket_agent.errors import ExecutorAbortedError, ExecutorTimeoutError, JobStateError

logger = logging.getLogger(__name__)

TICKET_STATUS_IN_PROGRESS = "In Progress"
TICKET_STATUS_DONE = "Done"
COMPLETION_COMMENT = "ticket-agent has completed work on this issue."
PR_COMMENT = (
    "ticket-agent has created a PR for this issue:\n\n{pr_url}\n\n"
    "Please review and merge when ready."
)
CLARIFICATION_COMMENT = "ticket-agent needs clarification:\n\n{question}"
CANCEL_REASON = "Cancelled by user"
SHUTDOWN_REASON = "Worker shutdown"

ExecutorFactory = Callable[[], AgentExecutor]


class _OutputLog:
    """Buffers streamed output into one ``iteration_output`` row."""

    def __init__(
        self,
        *,
        repository: JobRepository,
        job_id: str,
        iteration: int,
        settings: LoopSettings,
    ) -> None:
        self.repository = repository
        self.settings = settings
        self.log_id = repository.add_log(
            job_id=job_id,
            iteration=iteration,
            event_type=JobLogEvent.ITERATION_OUTPUT,
            agent_output="",
        )
        self._parts: list[str] = []
        self._unflushed = 0
        self._last_flush = time.monotonic()

    def append(self, chunk: str) -> None:
        self._parts.append(chunk)
        self._unflushed += len(chunk)
        elapsed = time.monotonic() - self._last_flush
        if elapsed >= self.settings.flush_interval_seconds or (
            self._unflushed >= self.settings.flush_bytes
        ):
            self.flush()

    def flush(self, text: str | None = None) -> None:
        if text is None:
            text = "".join(self._parts)
        self.repository.update_log_output(
            log_id=self.log_id,
            agent_output=text[: self.settings.output_max_chars],
        )
        self._unflushed = 0
        self._last_flush = time.monotonic()


class ExecutionLoop:
    """Drives one job from ``running`` to a paused or terminal status.

    ``run``, ``resume_with_answer`` and ``resume_with_permission`` are
    serialised by a per-loop lock. ``cancel`` and ``interrupt`` may be called
    from any thread while an iteration is executing.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        job: JobSpec,
        repository: JobRepository,
        sandbox: SandboxManager,
        executor_factory: ExecutorFactory,
        settings: LoopSettings,
        iteration_timeout_seconds: float,
        state: ExecutionState | None = None,
    ) -> None:
        self.job = job
        self.repository = repository
        self.sandbox = sandbox
        self.executor_factory = executor_factory
        self.settings = settings
        self.iteration_timeout_seconds = iteration_timeout_seconds
        self.state = state or ExecutionState(
            iteration=0,
            max_iterations=job.max_iterations,
            completion_promise=job.completion_promise,
        )
        self.sandbox_path: Path | None = Path(job.sandbox_path) if job.sandbox_path else None
        self.branch_name: str | None = job.branch_name
        self._lock = threading.Lock()
        self._executor: AgentExecutor | None = None
        self._executor_lock = threading.Lock()
        self._cancel_requested = threading.Event()
        self._interrupt_requested = threading.Event()

    @classmethod
    def from_job(  # noqa: PLR0913
        cls,
        *,
        job: JobSpec,
        view: JobView,
        repository: JobRepository,
        sandbox: SandboxManager,
        executor_factory: ExecutorFactory,
        settings: LoopSettings,
        iteration_timeout_seconds: float,
    ) -> ExecutionLoop:
        """Rebuild a loop from the persisted job row (cold resume)."""

        state = ExecutionState(
            iteration=view.iteration,
            max_iterations=view.max_iterations,
            completion_promise=view.completion_promise,
            needs_clarification=view.status == JobStatus.NEEDS_CLARIFICATION,
            clarification_question=view.clarification_question,
            pending_permission=(
                view.pending_permission_request
                if view.status == JobStatus.NEEDS_PERMISSION
                else None
            ),
        )
        return cls(
            job=job,
            repository=repository,
            sandbox=sandbox,
            executor_factory=executor_factory,
            settings=settings,
            iteration_timeout_seconds=iteration_timeout_seconds,
            state=state,
        )

    @property
    def job_id(self) -> str:
        return self.job.job_id

    def run(self) -> JobStatus:
        """Provision the sandbox and iterate; the job must already be ``running``."""

        with self._lock:
            try:
                self._prepare_sandbox()
            except Exception as error:  # noqa: BLE001
                return self._fail(error)
            self._update_ticket_status(TICKET_STATUS_IN_PROGRESS)
            return self._execute_loop()

    def resume_with_answer(self, answer: str) -> JobStatus:
        with self._lock:
            if not self.state.needs_clarification:
                raise JobStateError(f"Job {self.job_id} is not waiting for clarification.")
            question = self.state.clarification_question
            if not self.repository.resume_with_answer(job_id=self.job_id, answer=answer):
                raise JobStateError(
                    f"Job {self.job_id} left needs_clarification before the answer arrived.",
                )
            self.state.needs_clarification = False
            self.state.clarification_question = None
            self.state.resume_context = answer_context(question, answer)
            logger.info("Job %s resumed with clarification answer", self.job_id)
            return self._resume()

    def resume_with_permission(self, approved: bool, command: str) -> JobStatus:
        with self._lock:
            if self.state.pending_permission is None:
                raise JobStateError(f"Job {self.job_id} is not waiting for permission.")
            if not self.repository.resume_with_permission(
                job_id=self.job_id,
                iteration=self.state.iteration,
                approved=approved,
                command=command,
            ):
                raise JobStateError(
                    f"Job {self.job_id} left needs_permission before the answer arrived.",
                )
            self.state.pending_permission = None
            self.state.resume_context = permission_context(approved=approved, command=command)
            logger.info(
                "Job %s resumed with permission %s for %r",
                self.job_id,
                "approved" if approved else "denied",
                command,
            )
            return self._resume()

    def cancel(self, reason: str = CANCEL_REASON) -> None:
        self._cancel_requested.set()
        self._abort_executor(reason)

    def interrupt(self, reason: str = SHUTDOWN_REASON) -> None:
        """Stop for worker shutdown; the job goes back to ``pending``."""

        self._interrupt_requested.set()
        self._abort_executor(reason)

    def _abort_executor(self, reason: str) -> None:
        with self._executor_lock:
            executor = self._executor
        if executor is not None:
            executor.abort(reason)

    def _resume(self) -> JobStatus:
        try:
            self._prepare_sandbox()
        except Exception as error:  # noqa: BLE001
            return self._fail(error)
        return self._execute_loop()

    def _prepare_sandbox(self) -> None:
        if self.sandbox_path is not None and self.sandbox.exists(self.sandbox_path):
            if self.branch_name is None:
                self.branch_name = self.sandbox.branch_name(self.job)
            logger.info("Reusing existing sandbox: %s", self.sandbox_path)
        else:
            info = self.sandbox.create(self.job)
            self.sandbox_path = info.path
            self.branch_name = info.branch_name
        self.job.sandbox_path = str(self.sandbox_path)
        self.job.branch_name = self.branch_name
        self.repository.set_sandbox(
            job_id=self.job_id,
            sandbox_path=str(self.sandbox_path),
            branch_name=self.branch_name,
        )

    def _execute_loop(self) -> JobStatus:  # noqa: PLR0911
        output_log: _OutputLog | None = None
        try:
            while True:
                if self._cancel_requested.is_set():
                    return self._finish_cancelled()
                if self._interrupt_requested.is_set():
                    return self._release()
                if self.state.iteration >= self.state.max_iterations:
                    return self._handle_max_iterations()

                self.state.iteration += 1
                if not self.repository.set_iteration(
                    job_id=self.job_id,
                    iteration=self.state.iteration,
                ):
                    return self._current_status()

                self.state.prompt = self._build_prompt()
                self.repository.add_log(
                    job_id=self.job_id,
                    iteration=self.state.iteration,
                    event_type=JobLogEvent.ITERATION_START,
                    event_data={"prompt": self.state.prompt[: self.settings.prompt_log_chars]},
                )
                output_log = _OutputLog(
                    repository=self.repository,
                    job_id=self.job_id,
                    iteration=self.state.iteration,
                    settings=self.settings,
                )
                result = self._run_executor(output_log)
                output_log.flush(result.output)
                output_log = None
                self.state.last_output = result.output

                signals = parse_signals(result.output, self.state.completion_promise)
                self.repository.add_log(
                    job_id=self.job_id,
                    iteration=self.state.iteration,
                    event_type=JobLogEvent.ITERATION_END,
                    event_data={
                        "exit_code": result.exit_code,
                        "signals": signals.to_event_data(),
                    },
                )
                if result.exit_code != 0:
                    logger.warning(
                        "Job %s iteration %s: agent exited with code %s",
                        self.job_id,
                        self.state.iteration,
                        result.exit_code,
                    )

                status = self._apply_signals(signals)
                if status is not None:
                    return status
        except ExecutorAbortedError as error:
            if output_log is not None:
                output_log.flush()
            if not isinstance(error, ExecutorTimeoutError):
                if self._cancel_requested.is_set():
                    return self._finish_cancelled()
                if self._interrupt_requested.is_set():
                    return self._release()
            return self._fail(error)
        except Exception as error:  # noqa: BLE001
            return self._fail(error)

    def _run_executor(self, output_log: _OutputLog) -> ExecutorResult:
        executor = self.executor_factory()
        with self._executor_lock:
            self._executor = executor
        if self._cancel_requested.is_set():
            executor.abort(CANCEL_REASON)
        elif self._interrupt_requested.is_set():
            executor.abort(SHUTDOWN_REASON)
        try:
            return executor.execute(
                workdir=self.sandbox_path or Path.cwd(),
                prompt=self.state.prompt,
                timeout_seconds=self.iteration_timeout_seconds,
                on_output=output_log.append,
            )
        finally:
            with self._executor_lock:
                self._executor = None

    def _apply_signals(self, signals: AgentSignals) -> JobStatus | None:
        """First match wins: completion, clarification, permission, PR."""

        if signals.has_completion_promise:
            return self._handle_completion()
        if signals.needs_clarification and signals.clarification_question:
            return self._handle_clarification(signals.clarification_question)
        if signals.needs_permission and signals.permission_request:
            return self._handle_permission(signals.permission_request)
        if signals.pr_created and signals.pr_url:
            return self._handle_pr_created(signals.pr_url, signals.pr_number)
        return None

    def _handle_completion(self) -> JobStatus:
        final_output = self._final_output()
        if not self.repository.mark_completed(
            job_id=self.job_id,
            iteration=self.state.iteration,
            final_output=final_output,
        ):
            return self._current_status()
        self.state.is_complete = True
        logger.info("Job %s completed at iteration %s", self.job_id, self.state.iteration)
        self._update_ticket_status(TICKET_STATUS_DONE)
        self._add_ticket_comment(final_output or COMPLETION_COMMENT)
        if self.sandbox_path is not None:
            self.sandbox.cleanup(self.sandbox_path)
        return JobStatus.COMPLETED

    def _handle_clarification(self, question: str) -> JobStatus:
        if not self.repository.mark_needs_clarification(
            job_id=self.job_id,
            iteration=self.state.iteration,
            question=question,
        ):
            return self._current_status()
        self.state.needs_clarification = True
        self.state.clarification_question = question
        self.state.resume_context = None
        logger.info("Job %s needs clarification: %s", self.job_id, question)
        self._add_ticket_comment(CLARIFICATION_COMMENT.format(question=question))
        return self._paused(JobStatus.NEEDS_CLARIFICATION)

    def _handle_permission(self, command: str) -> JobStatus:
        if not self.repository.mark_needs_permission(
            job_id=self.job_id,
            iteration=self.state.iteration,
            command=command,
        ):
            return self._current_status()
        self.state.pending_permission = command
        self.state.resume_context = None
        logger.info("Job %s needs permission for %r", self.job_id, command)
        return self._paused(JobStatus.NEEDS_PERMISSION)

    def _handle_pr_created(self, pr_url: str, pr_number: int | None) -> JobStatus:
        final_output = self._final_output()
        if not self.repository.mark_pr_created(
            job_id=self.job_id,
            iteration=self.state.iteration,
            pr_url=pr_url,
            pr_number=pr_number,
            final_output=final_output,
        ):
            return self._current_status()
        self.state.is_complete = True
        logger.info("Job %s created PR %s", self.job_id, pr_url)
        self._update_ticket_status(TICKET_STATUS_DONE)
        comment = (
            f"{final_output}\n\nPR: {pr_url}" if final_output else PR_COMMENT.format(pr_url=pr_url)
        )
        self._add_ticket_comment(comment)
        return JobStatus.PR_CREATED

    def _handle_max_iterations(self) -> JobStatus:
        if not self.repository.mark_max_iterations(
            job_id=self.job_id,
            iteration=self.state.iteration,
            max_iterations=self.state.max_iterations,
        ):
            return self._current_status()
        logger.warning(
            "Job %s reached max iterations (%s) without completion",
            self.job_id,
            self.state.max_iterations,
        )
        return JobStatus.FAILED

    def _paused(self, status: JobStatus) -> JobStatus:
        if self._cancel_requested.is_set():
            return self._finish_cancelled()
        return status

    def _finish_cancelled(self) -> JobStatus:
        self.repository.mark_cancelled(job_id=self.job_id)
        logger.info("Job %s cancelled at iteration %s", self.job_id, self.state.iteration)
        return self._current_status()

    def _release(self) -> JobStatus:
        self.repository.release_job(
            job_id=self.job_id,
            iteration=self.state.iteration,
            reason=f"{SHUTDOWN_REASON}; job released for redelivery",
        )
        logger.info("Job %s released to pending on shutdown", self.job_id)
        return self._current_status()

    def _fail(self, error: BaseException) -> JobStatus:
        message = str(error) or type(error).__name__
        stack = "".join(traceback.format_exception(error))
        logger.error("Job %s failed: %s", self.job_id, message, exc_info=error)
        self.repository.mark_failed(
            job_id=self.job_id,
            iteration=self.state.iteration,
            message=message,
            stack=stack,
        )
        return self._current_status()

    def _current_status(self) -> JobStatus:
        view = self.repository.get_job(self.job_id)
        if view is None:
            raise JobStateError(f"Job not found: {self.job_id}")
        return view.status

    def _final_output(self) -> str | None:
        output = self.state.last_output
        if not output:
            return None
        return output[: self.settings.output_max_chars]

    def _build_prompt(self) -> str:
        return build_prompt(
            title=self.job.title,
            description=self.job.description,
            comments=self.job.ticket_comments,
            completion_promise=self.state.completion_promise,
            iteration=self.state.iteration,
            max_iterations=self.state.max_iterations,
            resume_context=self.state.resume_context,
            use_jj=self.sandbox.init_overlay,
        )

    def _provider_config(self) -> dict[str, object]:
        return {"token": self.job.ticket_provider_token, **self.job.ticket_provider_config}

    def _update_ticket_status(self, status: str) -> None:
        try:
            provider = create_ticket_provider(self.job.ticket_provider)
            provider.update_status(self.job.external_ticket_id, status, self._provider_config())
        except Exception:  # noqa: BLE001
            logger.exception(
                "Failed to update ticket %s status to %r",
                self.job.external_ticket_id,
                status,
            )

    def _add_ticket_comment(self, text: str) -> None:
        try:
            provider = create_ticket_provider(self.job.ticket_provider)
            provider.add_comment(self.job.external_ticket_id, text, self._provider_config())
        except Exception:  # noqa: BLE001
            logger.exception("Failed to add comment to ticket %s", self.job.external_ticket_id)
