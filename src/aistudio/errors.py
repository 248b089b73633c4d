from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    TIMEOUT = "timeout"
    NETWORK = "network"
    UNSUPPORTED_INPUT = "unsupported_input"
    PROVIDER_REJECTED = "provider_rejected"
    PROCESSING = "processing"
    CANCELLED = "cancelled"


class StudioError(Exception):
    """Base class for errors raised by the enhancement pipeline."""

    kind: ErrorKind = ErrorKind.PROCESSING


class NetworkError(StudioError):
    kind = ErrorKind.NETWORK


class PreparationError(StudioError):
    """Raised while normalizing a source image. No job exists yet."""


class FetchError(PreparationError, NetworkError):
    pass


class FormatError(PreparationError):
    kind = ErrorKind.UNSUPPORTED_INPUT


class UnsupportedInputError(StudioError):
    kind = ErrorKind.UNSUPPORTED_INPUT


class SubmissionError(StudioError):
    kind = ErrorKind.PROVIDER_REJECTED


class ProviderRejectedError(SubmissionError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        if status_code is not None:
            message = f"{message} (HTTP {status_code})"
        super().__init__(message)


class ProcessingFailure(StudioError):
    kind = ErrorKind.PROCESSING


class JobCancelledError(StudioError):
    kind = ErrorKind.CANCELLED


class CacheWriteFailure(StudioError):
    pass


class InvalidTransitionError(StudioError):
    pass


class UserErrorCategory(str, Enum):
    TIMEOUT = "timeout"
    CONNECTIVITY = "connectivity"
    CANCELLED = "cancelled"
    UNSUPPORTED_INPUT = "unsupported_input"
    ACCESS_RESTRICTED = "access_restricted"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class UserFacingError:
    category: UserErrorCategory
    title: str
    message: str
    detail: str = ""
    retryable: bool = True


_COPY: dict[UserErrorCategory, tuple[str, str]] = {
    UserErrorCategory.TIMEOUT: (
        "Taking too long",
        "The AI is experiencing high demand. Please try again in a moment.",
    ),
    UserErrorCategory.CONNECTIVITY: (
        "Connection issue",
        "Please check your internet connection and try again.",
    ),
    UserErrorCategory.CANCELLED: ("Cancelled", "Enhancement was cancelled."),
    UserErrorCategory.UNSUPPORTED_INPUT: (
        "Image issue",
        "There was a problem with the image format. Try a different photo.",
    ),
    UserErrorCategory.ACCESS_RESTRICTED: (
        "Access restricted",
        "This feature is not available for your account.",
    ),
    UserErrorCategory.UNKNOWN: (
        "Something went wrong",
        "We couldn't enhance your photo. Please try again.",
    ),
}

_KIND_CATEGORY = {
    ErrorKind.TIMEOUT: UserErrorCategory.TIMEOUT,
    ErrorKind.NETWORK: UserErrorCategory.CONNECTIVITY,
    ErrorKind.CANCELLED: UserErrorCategory.CANCELLED,
    ErrorKind.UNSUPPORTED_INPUT: UserErrorCategory.UNSUPPORTED_INPUT,
}


def classify_message(message: str) -> UserErrorCategory:
    """Best-effort category for a free-text provider error."""
    text = message.lower()
    if "timeout" in text or "took too long" in text:
        return UserErrorCategory.TIMEOUT
    if "network" in text or "connection" in text or "fetch" in text:
        return UserErrorCategory.CONNECTIVITY
    if "cancelled" in text:
        return UserErrorCategory.CANCELLED
    if "image" in text or "format" in text or "unsupported" in text:
        return UserErrorCategory.UNSUPPORTED_INPUT
    if any(w in text for w in ("premium", "subscription", "unauthorized", "forbidden", "http 401", "http 403")):
        return UserErrorCategory.ACCESS_RESTRICTED
    return UserErrorCategory.UNKNOWN


def user_facing(kind: ErrorKind, detail: str = "") -> UserFacingError:
    category = _KIND_CATEGORY.get(kind)
    if category is None:
        category = classify_message(detail)
    title, message = _COPY[category]
    return UserFacingError(
        category=category,
        title=title,
        message=message,
        detail=detail,
        retryable=category is not UserErrorCategory.ACCESS_RESTRICTED,
    )
