from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional

import pytest
from PIL import Image

from aistudio.inference.provider import InferenceProvider
from aistudio.inference.types import (
    PollResult,
    ProviderHandle,
    ProviderRequest,
    PushHandler,
    RemoteStatus,
)
from aistudio.models import SourceAsset
from aistudio.normalize import InputNormalizer
from aistudio.result_cache import ResultCache
from aistudio.storage import LocalUploader
from aistudio.tracker import JobTracker


class ScriptedProvider(InferenceProvider):
    """Provider whose poll answers come from a script and whose pushes are manual."""

    def __init__(self, poll_script: Optional[list[PollResult]] = None, output_url: str = "https://cdn/out.png"):
        self.poll_script = list(poll_script or [])
        self.output_url = output_url
        self.submitted: list[ProviderRequest] = []
        self.poll_count = 0
        self.push: Optional[PushHandler] = None
        self.submit_error: Optional[Exception] = None
        self.submit_gate: Optional[asyncio.Event] = None

    @property
    def provider_id(self) -> str:
        return "scripted"

    def bind_push(self, handler: PushHandler) -> None:
        self.push = handler

    async def submit(self, req: ProviderRequest) -> ProviderHandle:
        self.submitted.append(req)
        if self.submit_gate is not None:
            await self.submit_gate.wait()
        if self.submit_error is not None:
            raise self.submit_error
        return ProviderHandle(req.correlation_id, f"req-{len(self.submitted)}", "test-model")

    async def poll(self, handle: ProviderHandle) -> PollResult:
        self.poll_count += 1
        if self.poll_script:
            return self.poll_script.pop(0)
        return PollResult(RemoteStatus.IN_PROGRESS)

    def complete(self, correlation_id: str, url: Optional[str] = None) -> bool:
        return self.push(correlation_id, PollResult(RemoteStatus.COMPLETED, output_url=url or self.output_url))


def write_image(path: Path, size: tuple[int, int] = (64, 48), color=(200, 30, 30), mode: str = "RGB", fmt: str = "PNG") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    if mode == "RGBA" and len(color) == 3:
        color = (*color, 128)
    Image.new(mode, size, color).save(path, format=fmt)
    return path


@pytest.fixture
def image_file(tmp_path: Path) -> Path:
    return write_image(tmp_path / "photo.png", size=(1200, 1200))


@pytest.fixture
def source(image_file: Path) -> SourceAsset:
    return SourceAsset.from_file(image_file)


@pytest.fixture
def provider() -> ScriptedProvider:
    return ScriptedProvider()


@pytest.fixture
def tracker(provider: ScriptedProvider) -> JobTracker:
    return JobTracker(provider, poll_interval=0.01)


@pytest.fixture
def normalizer(tmp_path: Path) -> InputNormalizer:
    return InputNormalizer(LocalUploader(tmp_path / "uploads"), max_dimension=768)


@pytest.fixture
def result_cache() -> ResultCache:
    return ResultCache()
