from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable


class JobStatus(str, Enum):
    RUNNING = "running"
    CANCELLING = "cancelling"
    COMPLETED = "completed"
    ERROR = "error"


_ALLOWED: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.RUNNING: frozenset({JobStatus.CANCELLING, JobStatus.COMPLETED, JobStatus.ERROR}),
    JobStatus.CANCELLING: frozenset({JobStatus.COMPLETED, JobStatus.ERROR}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.ERROR: frozenset(),
}


ProgressCallback = Callable[[dict[str, Any]], "Awaitable[None] | None"]
CompleteCallback = Callable[[Any], "Awaitable[None] | None"]
ErrorCallback = Callable[[BaseException], "Awaitable[None] | None"]


def new_job_id(prefix: str = "job") -> str:
    return f"{prefix}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


@dataclass
class TrainingJob:
    """Bookkeeping for one request in flight on the worker."""

    id: str
    future: asyncio.Future[Any]
    kind: str = "training"
    status: JobStatus = JobStatus.RUNNING
    progress: float = 0.0
    start_time: float = field(default_factory=time.monotonic)
    on_progress: ProgressCallback | None = None
    on_complete: CompleteCallback | None = None
    on_error: ErrorCallback | None = None
    training_data_timestamp: int | None = None
    timed_out: bool = False
    dispatched: bool = False
    pending_writes: set[asyncio.Task[Any]] = field(default_factory=set)

    @property
    def is_active(self) -> bool:
        return self.status in (JobStatus.RUNNING, JobStatus.CANCELLING)

    def transition(self, new: JobStatus) -> bool:
        """Move to `new` if allowed; terminal states never change.

        Returns False (and stays put) for a disallowed transition.
        """
        if new is self.status:
            return True
        if new not in _ALLOWED[self.status]:
            return False
        self.status = new
        return True

    def elapsed_s(self) -> float:
        return time.monotonic() - self.start_time
