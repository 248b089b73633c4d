from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, ClassVar, Optional, Union

from .errors import ErrorKind
from .jobs import JobError, JobStatus


@dataclass(frozen=True)
class Submitting:
    message: str
    percent: int = 0
    status: ClassVar[JobStatus] = JobStatus.SUBMITTING

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status.value, "message": self.message, "progressPercent": self.percent}


@dataclass(frozen=True)
class Processing:
    message: str
    percent: int
    status: ClassVar[JobStatus] = JobStatus.PROCESSING

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status.value, "message": self.message, "progressPercent": self.percent}


@dataclass(frozen=True)
class Completed:
    output_url: str
    metadata: Optional[dict[str, Any]] = None
    message: str = "Enhancement complete!"
    status: ClassVar[JobStatus] = JobStatus.COMPLETED

    @property
    def percent(self) -> int:
        return 100

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "status": self.status.value,
            "message": self.message,
            "progressPercent": 100,
            "outputUrl": self.output_url,
        }
        if self.metadata is not None:
            payload["operationMetadata"] = self.metadata
        return payload


@dataclass(frozen=True)
class Failed:
    error: JobError
    status: ClassVar[JobStatus] = JobStatus.FAILED

    @property
    def message(self) -> str:
        return self.error.message

    @property
    def kind(self) -> ErrorKind:
        return self.error.kind

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "message": self.error.message,
            "progressPercent": 0,
            "error": self.error.kind.value,
        }


@dataclass(frozen=True)
class Cancelled:
    message: str = "Enhancement was cancelled."
    status: ClassVar[JobStatus] = JobStatus.CANCELLED

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "message": self.message,
            "progressPercent": 0,
            "error": ErrorKind.CANCELLED.value,
        }


ProgressUpdate = Union[Submitting, Processing, Completed, Failed, Cancelled]
TerminalUpdate = Union[Completed, Failed, Cancelled]
ProgressCallback = Callable[[ProgressUpdate], None]


def is_terminal(update: ProgressUpdate) -> bool:
    return update.status.is_terminal
