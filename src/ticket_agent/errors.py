"""Exception hierarchy shared by engine components."""

from __future__ import annotations


class TicketAgentError(RuntimeError):
    """Base error with a stable machine-readable code."""

    code = "TICKET_AGENT"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code


class ExecutorError(TicketAgentError):
    """Agent process could not be spawned or its output could not be read."""

    code = "AGENT_EXECUTOR"


class ExecutorAbortedError(ExecutorError):
    """Agent process was terminated on request before it finished."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"Execution aborted: {reason}")
        self.reason = reason


class ExecutorTimeoutError(ExecutorAbortedError):
    """Agent process exceeded its iteration timeout."""

    def __init__(self, timeout_seconds: float) -> None:
        super().__init__(f"Timeout exceeded ({timeout_seconds:g}s)")
        self.timeout_seconds = timeout_seconds


class SandboxError(TicketAgentError):
    """Workspace provisioning failed."""

    code = "SANDBOX"


class QueueError(TicketAgentError):
    """Durable queue misuse, e.g. sending to an undeclared topic."""

    code = "QUEUE"


class TicketProviderError(TicketAgentError):
    """Ticket tracker call failed or the provider is unknown."""

    def __init__(self, message: str, provider: str) -> None:
        super().__init__(message, code=f"TICKET_PROVIDER_{provider.upper()}")
        self.provider = provider


class JobStateError(TicketAgentError):
    """Requested transition is not allowed from the job's current status."""

    code = "JOB_STATE"
