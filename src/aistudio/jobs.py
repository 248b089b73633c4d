from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from .errors import ErrorKind, JobCancelledError
from .events import now_utc_iso
from .models import Operation, SourceAsset


class JobStatus(str, Enum):
    SUBMITTING = "submitting"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})

_ALLOWED: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.SUBMITTING: frozenset({JobStatus.PROCESSING}) | TERMINAL_STATUSES,
    JobStatus.PROCESSING: TERMINAL_STATUSES,
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


@dataclass(frozen=True)
class JobError:
    kind: ErrorKind
    message: str


@dataclass
class Job:
    """One submission to the inference provider.

    Transitions are atomic and monotonic. Once a terminal status is reached
    every later transition is rejected, which is what makes duplicate
    completion notifications harmless.
    """

    id: str
    operation: Operation
    source: SourceAsset
    status: JobStatus = JobStatus.SUBMITTING
    progress_percent: int = 0
    result_uri: Optional[str] = None
    error: Optional[JobError] = None
    created_at: str = field(default_factory=now_utc_iso)
    completed_at: Optional[str] = None
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @classmethod
    def create(
        cls,
        operation: Operation,
        source: SourceAsset,
        job_id: Optional[str] = None,
    ) -> "Job":
        return cls(id=job_id or uuid.uuid4().hex, operation=operation, source=source)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def transition(
        self,
        status: JobStatus,
        *,
        result_uri: Optional[str] = None,
        error: Optional[JobError] = None,
    ) -> bool:
        with self._lock:
            if status not in _ALLOWED[self.status]:
                return False
            self.status = status
            if status is JobStatus.COMPLETED:
                self.result_uri = result_uri
                self.progress_percent = 100
            if status is JobStatus.FAILED:
                self.error = error
            if status is JobStatus.CANCELLED:
                self.error = JobError(ErrorKind.CANCELLED, "Cancelled")
            if status.is_terminal:
                self.completed_at = now_utc_iso()
            return True

    def report_progress(self, percent: int, status: Optional[JobStatus] = None) -> bool:
        """Record non-terminal progress. Returns False once the job is terminal."""
        with self._lock:
            if self.status.is_terminal:
                return False
            if status is not None and status is not self.status:
                if status.is_terminal or status not in _ALLOWED[self.status]:
                    return False
                self.status = status
            self.progress_percent = max(self.progress_percent, min(int(percent), 100))
            return True


class CancellationToken:
    """Cooperative cancellation shared by the normalizer and the tracker.

    May be cancelled from any thread; callbacks run on the cancelling thread.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._callbacks: list[Callable[[], None]] = []
        self._lock = threading.Lock()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            callbacks = list(self._callbacks)
            self._callbacks.clear()
        for cb in callbacks:
            cb()

    def add_callback(self, cb: Callable[[], None]) -> None:
        with self._lock:
            if not self._cancelled:
                self._callbacks.append(cb)
                return
        cb()

    def remove_callback(self, cb: Callable[[], None]) -> None:
        with self._lock:
            if cb in self._callbacks:
                self._callbacks.remove(cb)

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise JobCancelledError("Cancelled")
