from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from ..models import OperationKind


@dataclass(frozen=True)
class ProviderRequest:
    correlation_id: str
    kind: OperationKind
    image_url: str
    params: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ProviderHandle:
    correlation_id: str
    request_id: str
    model_id: str
    status_url: Optional[str] = None
    response_url: Optional[str] = None


class RemoteStatus(str, Enum):
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class PollResult:
    status: RemoteStatus
    output_url: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (RemoteStatus.COMPLETED, RemoteStatus.FAILED)


PushHandler = Callable[[str, PollResult], bool]


def extract_output_url(payload: dict[str, Any]) -> Optional[str]:
    """Pull the result URL out of the shapes providers use for image outputs."""
    for key in ("image", "output"):
        value = payload.get(key)
        if isinstance(value, dict) and value.get("url"):
            return value["url"]
    images = payload.get("images")
    if isinstance(images, list) and images and isinstance(images[0], dict):
        if images[0].get("url"):
            return images[0]["url"]
    url = payload.get("url")
    return url if isinstance(url, str) and url else None


DEFAULT_MODELS: dict[OperationKind, str] = {
    OperationKind.ENHANCE: "fal-ai/creative-upscaler",
    OperationKind.REMOVE_BACKGROUND: "fal-ai/birefnet/v2",
    OperationKind.REPLACE_BACKGROUND_PROMPT: "fal-ai/image-editing/background-change",
}
