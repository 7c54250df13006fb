from __future__ import annotations

import shlex
import sys
import threading
import time
from collections.abc import Callable
from pathlib import Path

import allure

from conftest import ScriptedAgent, read_ticket, seed_job
from ticket_agent.config import LoopSettings
from ticket_agent.engine.backend.executor import AgentExecutor
from ticket_agent.engine.loop import ExecutionLoop, ExecutorFactory
from ticket_agent.engine.models import JobLogEvent, JobSpec, JobStatus
from ticket_agent.engine.repository import JobRepository
from ticket_agent.engine.sandbox import SandboxManager

pytestmark = [
    allure.epic("Job Engine"),
    allure.feature("Execution Loop"),
]

_SLOW_AGENT = "import time\nprint('ready', flush=True)\ntime.sleep(30)\n"


def _claimed_job(
    repository: JobRepository,
    origin_repo: Path,
    tickets_file: Path,
    *,
    max_iterations: int = 5,
) -> JobSpec:
    job = seed_job(
        repository,
        repo_url=str(origin_repo),
        tickets_path=tickets_file,
        max_iterations=max_iterations,
    )
    assert repository.claim_job(job_id=job.job_id, worker_id="test-worker") is not None
    return job


def _loop(
    job: JobSpec,
    repository: JobRepository,
    sandbox: SandboxManager,
    executor_factory: ExecutorFactory,
    settings: LoopSettings,
    *,
    timeout: float = 30,
) -> ExecutionLoop:
    return ExecutionLoop(
        job=job,
        repository=repository,
        sandbox=sandbox,
        executor_factory=executor_factory,
        settings=settings,
        iteration_timeout_seconds=timeout,
    )


def _events(repository: JobRepository, job_id: str) -> list[str]:
    return [log.event_type for log in repository.list_job_logs(job_id=job_id)]


def _slow_executor(tmp_path: Path) -> ExecutorFactory:
    script = tmp_path / "slow_agent.py"
    script.write_text(_SLOW_AGENT, encoding="utf-8")
    template = f"{shlex.quote(sys.executable)} {shlex.quote(str(script))} {{prompt}}"
    return lambda: AgentExecutor(command_template=template)


def _wait_for_output(repository: JobRepository, job_id: str, text: str) -> None:
    deadline = time.monotonic() + 15
    while time.monotonic() < deadline:
        if text in (repository.latest_output(job_id) or ""):
            return
        time.sleep(0.05)
    raise AssertionError(f"agent output never contained {text!r}")


def test_completion_marks_ticket_done_and_removes_sandbox(
    repository: JobRepository,
    origin_repo: Path,
    tickets_file: Path,
    sandbox_manager: SandboxManager,
    fast_loop_settings: LoopSettings,
    scripted_agent: Callable[[list[str]], ScriptedAgent],
) -> None:
    agent = scripted_agent(["Working on it.", "All done.\n<promise>TASK COMPLETE</promise>"])
    job = _claimed_job(repository, origin_repo, tickets_file)

    status = _loop(job, repository, sandbox_manager, agent.executor, fast_loop_settings).run()

    assert status == JobStatus.COMPLETED
    view = repository.get_job(job.job_id)
    assert view.status == JobStatus.COMPLETED
    assert view.iteration == 2
    assert view.final_output == "All done.\n<promise>TASK COMPLETE</promise>"
    assert view.branch_name == "ticket-agent/ENG-1-add-login-button"
    assert view.sandbox_path is not None
    assert not Path(view.sandbox_path).exists()
    assert _events(repository, job.job_id) == [
        "iteration_start",
        "iteration_output",
        "iteration_end",
        "iteration_start",
        "iteration_output",
        "iteration_end",
        "completed",
    ]
    outputs = repository.list_job_logs(
        job_id=job.job_id,
        event_types=[JobLogEvent.ITERATION_OUTPUT],
    )
    assert [log.agent_output for log in outputs] == [
        "Working on it.",
        "All done.\n<promise>TASK COMPLETE</promise>",
    ]

    prompts = agent.prompts()
    assert len(prompts) == 2
    assert prompts[0].startswith("# Task: Add login button")
    assert "Current iteration: 1/5" in prompts[0]
    assert "Current iteration: 2/5" in prompts[1]

    ticket = read_ticket(tickets_file, "ENG-1")
    assert ticket["status"] == "Done"
    assert ticket["comments"][-1]["body"] == view.final_output


def test_iteration_end_records_exit_code_and_signals(
    repository: JobRepository,
    origin_repo: Path,
    tickets_file: Path,
    sandbox_manager: SandboxManager,
    fast_loop_settings: LoopSettings,
    scripted_agent: Callable[[list[str]], ScriptedAgent],
) -> None:
    agent = scripted_agent(["<promise>TASK COMPLETE</promise>"])
    job = _claimed_job(repository, origin_repo, tickets_file)

    _loop(job, repository, sandbox_manager, agent.executor, fast_loop_settings).run()

    (start,) = repository.list_job_logs(
        job_id=job.job_id,
        event_types=[JobLogEvent.ITERATION_START],
    )
    (end,) = repository.list_job_logs(job_id=job.job_id, event_types=[JobLogEvent.ITERATION_END])
    assert start.event_data["prompt"] == agent.prompts()[0][: fast_loop_settings.prompt_log_chars]
    assert end.event_data["exit_code"] == 0
    assert end.event_data["signals"]["has_completion_promise"] is True


def test_clarification_pauses_and_cold_resume_continues(
    repository: JobRepository,
    origin_repo: Path,
    tickets_file: Path,
    sandbox_manager: SandboxManager,
    fast_loop_settings: LoopSettings,
    scripted_agent: Callable[[list[str]], ScriptedAgent],
) -> None:
    agent = scripted_agent(
        [
            "<clarification>Which page should host the button?</clarification>",
            "<promise>TASK COMPLETE</promise>",
        ],
    )
    job = _claimed_job(repository, origin_repo, tickets_file)

    status = _loop(job, repository, sandbox_manager, agent.executor, fast_loop_settings).run()

    assert status == JobStatus.NEEDS_CLARIFICATION
    paused = repository.get_job(job.job_id)
    assert paused.status == JobStatus.NEEDS_CLARIFICATION
    assert paused.clarification_question == "Which page should host the button?"
    assert Path(paused.sandbox_path).exists()
    ticket = read_ticket(tickets_file, "ENG-1")
    assert ticket["status"] == "In Progress"
    assert "Which page should host the button?" in ticket["comments"][-1]["body"]

    resumed = ExecutionLoop.from_job(
        job=repository.build_job_spec(job.job_id),
        view=paused,
        repository=repository,
        sandbox=sandbox_manager,
        executor_factory=agent.executor,
        settings=fast_loop_settings,
        iteration_timeout_seconds=30,
    )
    status = resumed.resume_with_answer("The landing page.")

    assert status == JobStatus.COMPLETED
    view = repository.get_job(job.job_id)
    assert view.iteration == 2
    assert view.clarification_answer == "The landing page."
    second_prompt = agent.prompts()[1]
    assert second_prompt.startswith("Previous question: Which page should host the button?")
    assert "Human answer: The landing page." in second_prompt
    assert "Current iteration: 2/5" in second_prompt
    assert _events(repository, job.job_id).count("clarification_requested") == 1


def test_permission_denied_resumes_with_denial_context(
    repository: JobRepository,
    origin_repo: Path,
    tickets_file: Path,
    sandbox_manager: SandboxManager,
    fast_loop_settings: LoopSettings,
    scripted_agent: Callable[[list[str]], ScriptedAgent],
) -> None:
    agent = scripted_agent(
        [
            "Claude requested permissions to use Bash(npm publish), but you haven't granted it.",
            "<promise>TASK COMPLETE</promise>",
        ],
    )
    job = _claimed_job(repository, origin_repo, tickets_file)
    loop = _loop(job, repository, sandbox_manager, agent.executor, fast_loop_settings)

    assert loop.run() == JobStatus.NEEDS_PERMISSION
    assert repository.get_job(job.job_id).pending_permission_request == "Bash(npm publish)"

    status = loop.resume_with_permission(False, "Bash(npm publish)")

    assert status == JobStatus.COMPLETED
    assert agent.prompts()[1].startswith("The following command was denied: Bash(npm publish)")
    events = _events(repository, job.job_id)
    assert events.index("permission_requested") < events.index("permission_denied")


def test_pr_url_finishes_job_and_keeps_sandbox(
    repository: JobRepository,
    origin_repo: Path,
    tickets_file: Path,
    sandbox_manager: SandboxManager,
    fast_loop_settings: LoopSettings,
    scripted_agent: Callable[[list[str]], ScriptedAgent],
) -> None:
    agent = scripted_agent(["Opened https://github.com/acme/shop/pull/12 for review."])
    job = _claimed_job(repository, origin_repo, tickets_file)

    status = _loop(job, repository, sandbox_manager, agent.executor, fast_loop_settings).run()

    assert status == JobStatus.PR_CREATED
    view = repository.get_job(job.job_id)
    assert view.pr_url == "https://github.com/acme/shop/pull/12"
    assert view.pr_number == 12
    assert Path(view.sandbox_path).exists()
    ticket = read_ticket(tickets_file, "ENG-1")
    assert ticket["status"] == "Done"
    assert ticket["comments"][-1]["body"].endswith("PR: https://github.com/acme/shop/pull/12")


def test_completion_wins_over_other_signals(
    repository: JobRepository,
    origin_repo: Path,
    tickets_file: Path,
    sandbox_manager: SandboxManager,
    fast_loop_settings: LoopSettings,
    scripted_agent: Callable[[list[str]], ScriptedAgent],
) -> None:
    agent = scripted_agent(
        [
            "<clarification>Anything else?</clarification>\n"
            "https://github.com/acme/shop/pull/4\n"
            "<promise>TASK COMPLETE</promise>",
        ],
    )
    job = _claimed_job(repository, origin_repo, tickets_file)

    status = _loop(job, repository, sandbox_manager, agent.executor, fast_loop_settings).run()

    assert status == JobStatus.COMPLETED
    assert repository.get_job(job.job_id).pr_url is None


def test_max_iterations_fails_job(
    repository: JobRepository,
    origin_repo: Path,
    tickets_file: Path,
    sandbox_manager: SandboxManager,
    fast_loop_settings: LoopSettings,
    scripted_agent: Callable[[list[str]], ScriptedAgent],
) -> None:
    agent = scripted_agent(["Still working."])
    job = _claimed_job(repository, origin_repo, tickets_file, max_iterations=2)

    status = _loop(job, repository, sandbox_manager, agent.executor, fast_loop_settings).run()

    assert status == JobStatus.FAILED
    view = repository.get_job(job.job_id)
    assert view.iteration == 2
    assert view.error_message == "Max iterations (2) reached without completion"
    assert _events(repository, job.job_id)[-1] == "max_iterations_reached"
    assert len(agent.prompts()) == 2


def test_resume_at_iteration_limit_fails_without_running_agent(
    repository: JobRepository,
    origin_repo: Path,
    tickets_file: Path,
    sandbox_manager: SandboxManager,
    fast_loop_settings: LoopSettings,
    scripted_agent: Callable[[list[str]], ScriptedAgent],
) -> None:
    agent = scripted_agent(["<clarification>Last question?</clarification>"])
    job = _claimed_job(repository, origin_repo, tickets_file, max_iterations=1)
    loop = _loop(job, repository, sandbox_manager, agent.executor, fast_loop_settings)
    assert loop.run() == JobStatus.NEEDS_CLARIFICATION

    status = loop.resume_with_answer("Yes")

    assert status == JobStatus.FAILED
    assert len(agent.prompts()) == 1
    assert repository.get_job(job.job_id).error_message == (
        "Max iterations (1) reached without completion"
    )


def test_sandbox_failure_fails_job(
    tmp_path: Path,
    repository: JobRepository,
    origin_repo: Path,
    tickets_file: Path,
    sandbox_manager: SandboxManager,
    fast_loop_settings: LoopSettings,
    scripted_agent: Callable[[list[str]], ScriptedAgent],
) -> None:
    agent = scripted_agent(["<promise>TASK COMPLETE</promise>"])
    job = _claimed_job(repository, tmp_path / "missing-origin", tickets_file)

    status = _loop(job, repository, sandbox_manager, agent.executor, fast_loop_settings).run()

    assert status == JobStatus.FAILED
    view = repository.get_job(job.job_id)
    assert view.error_message.startswith("Failed to create sandbox")
    assert view.error_stack
    assert agent.prompts() == []


def test_iteration_timeout_fails_job(
    tmp_path: Path,
    repository: JobRepository,
    origin_repo: Path,
    tickets_file: Path,
    sandbox_manager: SandboxManager,
    fast_loop_settings: LoopSettings,
) -> None:
    job = _claimed_job(repository, origin_repo, tickets_file)
    loop = _loop(
        job,
        repository,
        sandbox_manager,
        _slow_executor(tmp_path),
        fast_loop_settings,
        timeout=1,
    )

    status = loop.run()

    assert status == JobStatus.FAILED
    view = repository.get_job(job.job_id)
    assert "Timeout exceeded (1s)" in view.error_message
    assert "ready" in repository.latest_output(job.job_id)


def test_cancel_aborts_running_iteration(
    tmp_path: Path,
    repository: JobRepository,
    origin_repo: Path,
    tickets_file: Path,
    sandbox_manager: SandboxManager,
    fast_loop_settings: LoopSettings,
) -> None:
    job = _claimed_job(repository, origin_repo, tickets_file)
    loop = _loop(job, repository, sandbox_manager, _slow_executor(tmp_path), fast_loop_settings)
    result: list[JobStatus] = []
    runner = threading.Thread(target=lambda: result.append(loop.run()))
    runner.start()

    _wait_for_output(repository, job.job_id, "ready")
    loop.cancel()
    runner.join(timeout=15)

    assert result == [JobStatus.CANCELLED]
    assert repository.get_job(job.job_id).status == JobStatus.CANCELLED


def test_interrupt_releases_job_for_redelivery(
    tmp_path: Path,
    repository: JobRepository,
    origin_repo: Path,
    tickets_file: Path,
    sandbox_manager: SandboxManager,
    fast_loop_settings: LoopSettings,
) -> None:
    job = _claimed_job(repository, origin_repo, tickets_file)
    loop = _loop(job, repository, sandbox_manager, _slow_executor(tmp_path), fast_loop_settings)
    result: list[JobStatus] = []
    runner = threading.Thread(target=lambda: result.append(loop.run()))
    runner.start()

    _wait_for_output(repository, job.job_id, "ready")
    loop.interrupt()
    runner.join(timeout=15)

    assert result == [JobStatus.PENDING]
    view = repository.get_job(job.job_id)
    assert view.status == JobStatus.PENDING
    assert view.iteration == 1
    assert view.worker_id is None
    assert Path(view.sandbox_path).exists()


def test_output_is_flushed_mid_iteration_once_size_threshold_is_reached(
    tmp_path: Path,
    repository: JobRepository,
    origin_repo: Path,
    tickets_file: Path,
    sandbox_manager: SandboxManager,
) -> None:
    settings = LoopSettings(flush_interval_seconds=3_600.0, flush_bytes=5)
    job = _claimed_job(repository, origin_repo, tickets_file)
    loop = _loop(job, repository, sandbox_manager, _slow_executor(tmp_path), settings)
    result: list[JobStatus] = []
    runner = threading.Thread(target=lambda: result.append(loop.run()))
    runner.start()

    try:
        _wait_for_output(repository, job.job_id, "ready")
        assert repository.get_job(job.job_id).status == JobStatus.RUNNING
    finally:
        loop.cancel()
        runner.join(timeout=15)

    assert result == [JobStatus.CANCELLED]
