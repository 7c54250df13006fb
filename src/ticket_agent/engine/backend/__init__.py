"""External agent process backend."""

from ticket_agent.engine.backend.executor import AgentExecutor, ExecutorResult, build_run_args
from ticket_agent.engine.backend.stream_parser import StreamJsonParser

__all__ = [
    "AgentExecutor",
    "ExecutorResult",
    "StreamJsonParser",
    "build_run_args",
]
