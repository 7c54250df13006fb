from __future__ import annotations

import time
from collections.abc import Callable, Iterator
from pathlib import Path

import allure
import pytest

from conftest import ScriptedAgent, seed_job
from ticket_agent.config import LoopSettings, Settings, WorkerSettings
from ticket_agent.engine.backend.executor import AgentExecutor
from ticket_agent.engine.dispatcher import (
    TOPIC_CANCEL,
    TOPIC_PERMISSION_ANSWER,
    TOPIC_PROCESS,
    TOPIC_RESUME,
    JobDispatcher,
)
from ticket_agent.engine.models import JobStatus
from ticket_agent.engine.queue import MessageState, QueueDelivery
from ticket_agent.engine.repository import JobRepository
from ticket_agent.engine.sandbox import SandboxManager

pytestmark = [
    allure.epic("Job Engine"),
    allure.feature("Dispatcher"),
]

_COMPLETE = "<promise>TASK COMPLETE</promise>"


@pytest.fixture()
def make_dispatcher(
    tmp_path: Path,
    repository: JobRepository,
    sandbox_manager: SandboxManager,
    fast_loop_settings: LoopSettings,
) -> Iterator[Callable[..., JobDispatcher]]:
    created: list[JobDispatcher] = []

    def _build(agent: ScriptedAgent | None = None, **worker: object) -> JobDispatcher:
        settings = Settings(
            db_path=tmp_path / "jobs.db",
            worker=WorkerSettings(worker_id="w-test", poll_interval_seconds=0.05, **worker),
            loop=fast_loop_settings,
        )
        dispatcher = JobDispatcher(
            settings=settings,
            repository=repository,
            sandbox=sandbox_manager,
            executor_factory=agent.executor if agent is not None else None,
        )
        dispatcher.declare_topics()
        created.append(dispatcher)
        return dispatcher

    yield _build
    for dispatcher in created:
        dispatcher.stop()
        dispatcher.queue.close()


def _claim(dispatcher: JobDispatcher, topic: str) -> QueueDelivery:
    delivery = dispatcher.queue.claim(topic)
    assert delivery is not None
    return delivery


def test_recover_requeues_pending_jobs_once(
    repository: JobRepository,
    tickets_file: Path,
    make_dispatcher: Callable[..., JobDispatcher],
) -> None:
    job = seed_job(repository, repo_url="https://github.com/acme/shop.git", tickets_path=tickets_file)
    dispatcher = make_dispatcher()

    first = dispatcher.recover()
    second = dispatcher.recover()

    assert first.requeued == 1
    assert second.requeued == 0
    (message,) = dispatcher.queue.list_messages(topic=TOPIC_PROCESS)
    assert message.key == job.job_id
    assert message.payload["job_id"] == job.job_id


def test_recover_releases_stale_running_jobs(
    repository: JobRepository,
    tickets_file: Path,
    make_dispatcher: Callable[..., JobDispatcher],
) -> None:
    job = seed_job(repository, repo_url="https://github.com/acme/shop.git", tickets_path=tickets_file)
    repository.claim_job(job_id=job.job_id, worker_id="crashed-worker")
    repository.set_iteration(job_id=job.job_id, iteration=2)
    dispatcher = make_dispatcher(stale_job_seconds=-5)

    summary = dispatcher.recover()

    assert summary.released == 1
    view = repository.get_job(job.job_id)
    assert view.status == JobStatus.PENDING
    assert view.iteration == 2
    assert dispatcher.queue.has_pending(TOPIC_PROCESS, job.job_id)


def test_recover_leaves_fresh_running_jobs_alone(
    repository: JobRepository,
    tickets_file: Path,
    make_dispatcher: Callable[..., JobDispatcher],
) -> None:
    job = seed_job(repository, repo_url="https://github.com/acme/shop.git", tickets_path=tickets_file)
    repository.claim_job(job_id=job.job_id, worker_id="busy-worker")
    dispatcher = make_dispatcher()

    summary = dispatcher.recover()

    assert summary.released == 0
    assert repository.get_job(job.job_id).status == JobStatus.RUNNING


def test_process_handler_runs_job_and_ignores_redelivery(
    repository: JobRepository,
    origin_repo: Path,
    tickets_file: Path,
    scripted_agent: Callable[[list[str]], ScriptedAgent],
    make_dispatcher: Callable[..., JobDispatcher],
) -> None:
    agent = scripted_agent([_COMPLETE])
    job = seed_job(repository, repo_url=str(origin_repo), tickets_path=tickets_file)
    dispatcher = make_dispatcher(agent)
    dispatcher.enqueue_process(job)
    delivery = _claim(dispatcher, TOPIC_PROCESS)

    dispatcher._handle_process(delivery)
    dispatcher._handle_process(delivery)

    view = repository.get_job(job.job_id)
    assert view.status == JobStatus.COMPLETED
    assert view.worker_id == "w-test"
    assert len(agent.prompts()) == 1
    assert len(dispatcher.registry) == 0


def test_resume_handler_rebuilds_loop_from_database(
    repository: JobRepository,
    origin_repo: Path,
    tickets_file: Path,
    scripted_agent: Callable[[list[str]], ScriptedAgent],
    make_dispatcher: Callable[..., JobDispatcher],
) -> None:
    agent = scripted_agent(["<clarification>Which color?</clarification>", _COMPLETE])
    job = seed_job(repository, repo_url=str(origin_repo), tickets_path=tickets_file)
    dispatcher = make_dispatcher(agent)
    dispatcher.enqueue_process(job)
    dispatcher._handle_process(_claim(dispatcher, TOPIC_PROCESS))
    assert repository.get_job(job.job_id).status == JobStatus.NEEDS_CLARIFICATION

    dispatcher.enqueue_resume(job.job_id, "Blue")
    dispatcher._handle_resume(_claim(dispatcher, TOPIC_RESUME))

    view = repository.get_job(job.job_id)
    assert view.status == JobStatus.COMPLETED
    assert view.iteration == 2
    assert "Human answer: Blue" in agent.prompts()[1]


def test_resume_handler_skips_jobs_not_waiting(
    repository: JobRepository,
    tickets_file: Path,
    make_dispatcher: Callable[..., JobDispatcher],
) -> None:
    job = seed_job(repository, repo_url="https://github.com/acme/shop.git", tickets_path=tickets_file)
    dispatcher = make_dispatcher()
    dispatcher.enqueue_resume(job.job_id, "Blue")
    dispatcher.enqueue_resume("missing-job", "Blue")

    dispatcher._handle_resume(_claim(dispatcher, TOPIC_RESUME))
    dispatcher._handle_resume(_claim(dispatcher, TOPIC_RESUME))

    view = repository.get_job(job.job_id)
    assert view.status == JobStatus.PENDING
    assert view.clarification_answer is None


def test_permission_answer_handler_resumes_with_approval(
    repository: JobRepository,
    origin_repo: Path,
    tickets_file: Path,
    scripted_agent: Callable[[list[str]], ScriptedAgent],
    make_dispatcher: Callable[..., JobDispatcher],
) -> None:
    agent = scripted_agent(["Permission required for command: `rm -rf build`", _COMPLETE])
    job = seed_job(repository, repo_url=str(origin_repo), tickets_path=tickets_file)
    dispatcher = make_dispatcher(agent)
    dispatcher.enqueue_process(job)
    dispatcher._handle_process(_claim(dispatcher, TOPIC_PROCESS))
    assert repository.get_job(job.job_id).pending_permission_request == "rm -rf build"

    dispatcher.enqueue_permission_answer(job.job_id, True, "rm -rf build")
    dispatcher._handle_permission_answer(_claim(dispatcher, TOPIC_PERMISSION_ANSWER))

    assert repository.get_job(job.job_id).status == JobStatus.COMPLETED
    assert agent.prompts()[1].startswith("The following command was approved: rm -rf build")


def test_cancel_handler_cancels_pending_and_skips_finished(
    repository: JobRepository,
    tickets_file: Path,
    make_dispatcher: Callable[..., JobDispatcher],
) -> None:
    job = seed_job(repository, repo_url="https://github.com/acme/shop.git", tickets_path=tickets_file)
    dispatcher = make_dispatcher()
    dispatcher.enqueue_cancel(job.job_id)
    dispatcher.enqueue_cancel(job.job_id)

    dispatcher._handle_cancel(_claim(dispatcher, TOPIC_CANCEL))
    cancelled = repository.get_job(job.job_id)
    dispatcher._handle_cancel(_claim(dispatcher, TOPIC_CANCEL))

    assert cancelled.status == JobStatus.CANCELLED
    assert repository.get_job(job.job_id).updated_at == cancelled.updated_at


def test_started_dispatcher_consumes_process_messages(
    repository: JobRepository,
    origin_repo: Path,
    tickets_file: Path,
    scripted_agent: Callable[[list[str]], ScriptedAgent],
    make_dispatcher: Callable[..., JobDispatcher],
) -> None:
    agent = scripted_agent(["Working.", _COMPLETE])
    job = seed_job(repository, repo_url=str(origin_repo), tickets_path=tickets_file)
    dispatcher = make_dispatcher(agent, concurrency=2)
    message_id = dispatcher.enqueue_process(job)

    summary = dispatcher.start()
    deadline = time.monotonic() + 30
    while time.monotonic() < deadline:
        if repository.get_job(job.job_id).status == JobStatus.COMPLETED:
            break
        time.sleep(0.05)
    dispatcher.stop()

    assert summary.requeued == 0
    assert repository.get_job(job.job_id).status == JobStatus.COMPLETED
    assert dispatcher.queue.get_message(message_id).state == MessageState.COMPLETED


def test_resume_on_live_loop_keeps_it_registered(
    repository: JobRepository,
    origin_repo: Path,
    tickets_file: Path,
    scripted_agent: Callable[[list[str]], ScriptedAgent],
    make_dispatcher: Callable[..., JobDispatcher],
) -> None:
    agent = scripted_agent(["<clarification>Which color?</clarification>", _COMPLETE])
    job = seed_job(repository, repo_url=str(origin_repo), tickets_path=tickets_file)
    dispatcher = make_dispatcher(agent)
    dispatcher.enqueue_process(job)
    dispatcher._handle_process(_claim(dispatcher, TOPIC_PROCESS))

    # Loop that paused but whose run has not unregistered it yet.
    live = dispatcher._cold_loop(repository.get_job(job.job_id))
    dispatcher.registry.register(job.job_id, live)
    registered_during_run: list[bool] = []

    def executor() -> AgentExecutor:
        dispatcher.registry.remove(job.job_id, live)
        registered_during_run.append(dispatcher.registry.get(job.job_id) is live)
        return agent.executor()

    live.executor_factory = executor
    dispatcher.enqueue_resume(job.job_id, "Blue")
    dispatcher._handle_resume(_claim(dispatcher, TOPIC_RESUME))

    assert registered_during_run == [True]
    assert live.state.iteration == 2
    assert repository.get_job(job.job_id).status == JobStatus.COMPLETED
    assert job.job_id not in dispatcher.registry


def test_startup_releases_fresh_jobs_left_running_under_own_worker_id(
    repository: JobRepository,
    tickets_file: Path,
    make_dispatcher: Callable[..., JobDispatcher],
) -> None:
    job = seed_job(repository, repo_url="https://github.com/acme/shop.git", tickets_path=tickets_file)
    dispatcher = make_dispatcher()
    dispatcher.enqueue_process(job)
    repository.claim_job(job_id=job.job_id, worker_id="w-test")
    redelivered = _claim(dispatcher, TOPIC_PROCESS)
    dispatcher._handle_process(redelivered)
    dispatcher.queue.ack(redelivered)
    assert not dispatcher.queue.has_pending(TOPIC_PROCESS, job.job_id)

    assert dispatcher.recover().released == 0
    summary = dispatcher.recover(release_own=True)

    assert summary.released == 1
    view = repository.get_job(job.job_id)
    assert view.status == JobStatus.PENDING
    assert view.worker_id is None
    assert dispatcher.queue.has_pending(TOPIC_PROCESS, job.job_id)
