"""In-process map of live execution loops."""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ticket_agent.engine.loop import ExecutionLoop


class JobRegistry:
    """Lock-guarded ``job_id -> ExecutionLoop`` map; never persisted.

    The same loop may be registered more than once (a resume arriving while
    the pausing run is still unwinding); the entry stays until every holder
    has removed it.
    """

    def __init__(self) -> None:
        self._loops: dict[str, ExecutionLoop] = {}
        self._holders: dict[str, int] = {}
        self._lock = threading.Lock()

    def register(self, job_id: str, loop: ExecutionLoop) -> bool:
        """Add a loop; ``False`` when another loop already holds the job."""

        with self._lock:
            current = self._loops.get(job_id)
            if current is not None and current is not loop:
                return False
            self._loops[job_id] = loop
            self._holders[job_id] = self._holders.get(job_id, 0) + 1
            return True

    def get(self, job_id: str) -> ExecutionLoop | None:
        with self._lock:
            return self._loops.get(job_id)

    def remove(self, job_id: str, loop: ExecutionLoop | None = None) -> None:
        """Drop one hold on ``loop``; without ``loop`` drop the entry outright."""

        with self._lock:
            current = self._loops.get(job_id)
            if current is None:
                return
            if loop is not None:
                if current is not loop:
                    return
                remaining = self._holders.get(job_id, 1) - 1
                if remaining > 0:
                    self._holders[job_id] = remaining
                    return
            del self._loops[job_id]
            self._holders.pop(job_id, None)

    def snapshot(self) -> dict[str, ExecutionLoop]:
        with self._lock:
            return dict(self._loops)

    def __contains__(self, job_id: object) -> bool:
        with self._lock:
            return job_id in self._loops

    def __len__(self) -> int:
        with self._lock:
            return len(self._loops)
