"""Subprocess executor that streams agent output."""

from __future__ import annotations

import codecs
import logging
import os
import queue
import shlex
import subprocess
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path

from ticket_agent.engine.backend.stream_parser import StreamJsonParser
from ticket_agent.errors import ExecutorAbortedError, ExecutorError, ExecutorTimeoutError

logger = logging.getLogger(__name__)

_READ_CHUNK_BYTES = 64 * 1024
_POLL_SECONDS = 0.1
_STDERR_TAIL_CHARS = 4_000

OutputCallback = Callable[[str], None]


@dataclass(slots=True)
class ExecutorResult:
    """Aggregated agent output for one iteration."""

    output: str
    exit_code: int
    stderr_tail: str = ""


class AgentExecutor:
    """Run one agent process per ``execute`` call.

    ``abort`` may be called from any thread; the thread blocked in
    ``execute`` then raises ``ExecutorAbortedError``.
    """

    def __init__(
        self,
        *,
        command_template: str,
        output_format: str = "text",
        model: str = "",
        result_max_chars: int = 2_000,
        extra_env: Mapping[str, str] | None = None,
    ) -> None:
        self.command_template = command_template
        self.output_format = output_format
        self.model = model
        self.result_max_chars = result_max_chars
        self.extra_env = dict(extra_env or {})
        self._process: subprocess.Popen[bytes] | None = None
        self._abort_event = threading.Event()
        self._abort_reason: str | None = None
        self._lock = threading.Lock()

    def execute(
        self,
        *,
        workdir: Path,
        prompt: str,
        timeout_seconds: float,
        on_output: OutputCallback | None = None,
    ) -> ExecutorResult:
        if self._abort_event.is_set():
            raise ExecutorAbortedError(self._abort_reason or "aborted")

        argv = build_run_args(
            command_template=self.command_template,
            prompt=prompt,
            model=self.model,
        )
        env = os.environ.copy()
        env.update(self.extra_env)

        try:
            process = subprocess.Popen(  # noqa: S603
                argv,
                cwd=workdir,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                bufsize=0,
            )
        except FileNotFoundError as error:
            raise ExecutorError(f"Agent command not found: {argv[0]}") from error
        except OSError as error:
            raise ExecutorError(f"Agent process failed to start: {error}") from error

        with self._lock:
            self._process = process
        if self._abort_event.is_set():
            _terminate_process(process)

        try:
            return self._collect(
                process=process,
                timeout_seconds=timeout_seconds,
                on_output=on_output,
            )
        finally:
            if process.poll() is None:
                _terminate_process(process)
            with self._lock:
                self._process = None

    def abort(self, reason: str) -> None:
        """Signal cancellation and kill the running process."""

        with self._lock:
            if self._abort_reason is None:
                self._abort_reason = reason
            self._abort_event.set()
            process = self._process
        if process is not None and process.poll() is None:
            logger.info("Aborting agent process pid=%s: %s", process.pid, reason)
            _terminate_process(process)

    @property
    def aborted(self) -> bool:
        return self._abort_event.is_set()

    def _collect(
        self,
        *,
        process: subprocess.Popen[bytes],
        timeout_seconds: float,
        on_output: OutputCallback | None,
    ) -> ExecutorResult:
        chunks: queue.Queue[bytes | None] = queue.Queue()
        stderr_parts: list[bytes] = []
        stdout_reader = threading.Thread(
            target=_pump_stream,
            args=(process.stdout, chunks),
            daemon=True,
            name=f"agent-stdout-{process.pid}",
        )
        stderr_reader = threading.Thread(
            target=_drain_stream,
            args=(process.stderr, stderr_parts),
            daemon=True,
            name=f"agent-stderr-{process.pid}",
        )
        stdout_reader.start()
        stderr_reader.start()

        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        parser = (
            StreamJsonParser(result_max_chars=self.result_max_chars)
            if self.output_format == "stream-json"
            else None
        )
        output_parts: list[str] = []

        def emit(text: str) -> None:
            fragments = parser.feed(text) if parser is not None else [text]
            for fragment in fragments:
                if not fragment:
                    continue
                output_parts.append(fragment)
                if on_output is not None:
                    on_output(fragment)

        deadline = time.monotonic() + timeout_seconds
        while True:
            self._raise_if_aborted()
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self._timeout(process, timeout_seconds)
            try:
                chunk = chunks.get(timeout=min(_POLL_SECONDS, remaining))
            except queue.Empty:
                continue
            if chunk is None:
                break
            emit(decoder.decode(chunk))

        emit(decoder.decode(b"", final=True))
        if parser is not None:
            for fragment in parser.flush():
                output_parts.append(fragment)
                if on_output is not None:
                    on_output(fragment)

        try:
            exit_code = process.wait(timeout=max(0.1, deadline - time.monotonic()))
        except subprocess.TimeoutExpired:
            self._timeout(process, timeout_seconds)
        self._raise_if_aborted()
        stderr_reader.join(timeout=2)

        stderr_text = b"".join(stderr_parts).decode("utf-8", errors="replace")
        if exit_code != 0:
            logger.warning(
                "Agent process exited with code %s: %s",
                exit_code,
                stderr_text[-500:].strip() or "<no stderr>",
            )
        return ExecutorResult(
            output="".join(output_parts),
            exit_code=exit_code,
            stderr_tail=stderr_text[-_STDERR_TAIL_CHARS:],
        )

    def _raise_if_aborted(self) -> None:
        if self._abort_event.is_set():
            raise ExecutorAbortedError(self._abort_reason or "aborted")

    def _timeout(self, process: subprocess.Popen[bytes], timeout_seconds: float) -> None:
        with self._lock:
            if self._abort_reason is None:
                self._abort_reason = f"Timeout exceeded ({timeout_seconds:g}s)"
            self._abort_event.set()
        _terminate_process(process)
        raise ExecutorTimeoutError(timeout_seconds)


def build_run_args(*, command_template: str, prompt: str, model: str = "") -> list[str]:
    """Render the agent command template into argv."""

    stripped = command_template.strip()
    if not stripped:
        raise ExecutorError("Agent command template is empty.")
    if "{prompt}" not in stripped:
        raise ExecutorError("Agent command template must include {prompt}.")
    try:
        rendered = stripped.format(
            prompt=shlex.quote(prompt),
            model=shlex.quote(model) if model else "",
        )
    except (KeyError, IndexError) as error:
        raise ExecutorError(f"Unsupported command template placeholder: {error}") from error

    argv = shlex.split(rendered)
    if not argv:
        raise ExecutorError("Agent command template rendered empty command.")
    return argv


def _pump_stream(stream, chunks: queue.Queue[bytes | None]) -> None:
    try:
        while True:
            data = stream.read(_READ_CHUNK_BYTES)
            if not data:
                break
            chunks.put(data)
    except (OSError, ValueError):
        logger.debug("Agent stdout closed while reading", exc_info=True)
    finally:
        chunks.put(None)


def _drain_stream(stream, sink: list[bytes]) -> None:
    try:
        for data in iter(lambda: stream.read(_READ_CHUNK_BYTES), b""):
            sink.append(data)
    except (OSError, ValueError):
        logger.debug("Agent stderr closed while reading", exc_info=True)


def _terminate_process(process: subprocess.Popen[bytes]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
