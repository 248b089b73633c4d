from __future__ import annotations

import asyncio
import hashlib
import logging
import tempfile
import uuid
from pathlib import Path
from typing import Optional
from urllib.parse import unquote, urlparse

from PIL import Image, ImageChops, ImageDraw, ImageFilter, UnidentifiedImageError

from ...config import PlaceholderProviderConfig
from ...models import OperationKind
from ..provider import InferenceProvider
from ..types import (
    DEFAULT_MODELS,
    PollResult,
    ProviderHandle,
    ProviderRequest,
    PushHandler,
    RemoteStatus,
)

logger = logging.getLogger(__name__)

MAX_OUTPUT_EDGE = 2048
MASK_THRESHOLD = 24


def _local_path(image_url: str) -> Optional[Path]:
    if image_url.startswith("file://"):
        return Path(unquote(urlparse(image_url).path))
    if "://" not in image_url:
        return Path(image_url)
    return None


def _prompt_color(prompt: str) -> tuple[int, int, int, int]:
    digest = hashlib.sha256(prompt.encode("utf-8")).digest()
    return (digest[0], digest[1], digest[2], 255)


class PlaceholderProvider(InferenceProvider):
    """Local stand-in for the remote provider.

    Produces a cheap derived image for each kind after a configurable latency
    and reports completion on both the push channel and the poll endpoint,
    the same way the remote queue does.
    """

    def __init__(
        self,
        config: Optional[PlaceholderProviderConfig] = None,
        output_dir: Optional[Path] = None,
    ):
        self._config = config or PlaceholderProviderConfig()
        if self._config.output_dir is not None:
            output_dir = Path(self._config.output_dir)
        self._output_dir = output_dir or Path(tempfile.gettempdir()) / "aistudio-placeholder"
        self._push: Optional[PushHandler] = None
        self._results: dict[str, PollResult] = {}
        self._submitted_at: dict[str, float] = {}
        self._tasks: set[asyncio.Task] = set()
        self.requests: list[ProviderRequest] = []

    @property
    def provider_id(self) -> str:
        return "placeholder"

    def bind_push(self, handler: PushHandler) -> None:
        self._push = handler

    async def submit(self, req: ProviderRequest) -> ProviderHandle:
        request_id = uuid.uuid4().hex
        self.requests.append(req)
        self._submitted_at[request_id] = asyncio.get_running_loop().time()
        task = asyncio.create_task(self._finish(request_id, req))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return ProviderHandle(
            correlation_id=req.correlation_id,
            request_id=request_id,
            model_id=DEFAULT_MODELS[req.kind],
        )

    async def poll(self, handle: ProviderHandle) -> PollResult:
        result = self._results.get(handle.request_id)
        if result is not None:
            return result
        submitted = self._submitted_at.get(handle.request_id)
        if submitted is None:
            return PollResult(RemoteStatus.FAILED, error=f"Unknown request: {handle.request_id}")
        elapsed = asyncio.get_running_loop().time() - submitted
        if elapsed < self._config.latency_seconds * 0.2:
            return PollResult(RemoteStatus.QUEUED)
        return PollResult(RemoteStatus.IN_PROGRESS)

    async def aclose(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def _finish(self, request_id: str, req: ProviderRequest) -> None:
        await asyncio.sleep(self._config.latency_seconds)
        result = await asyncio.to_thread(self._render_result, request_id, req)
        self._results[request_id] = result
        if self._config.push and self._push is not None:
            self._push(req.correlation_id, result)

    def _render_result(self, request_id: str, req: ProviderRequest) -> PollResult:
        if self._config.fail_with:
            return PollResult(RemoteStatus.FAILED, error=self._config.fail_with)

        src_path = _local_path(req.image_url)
        try:
            if src_path is not None:
                with Image.open(src_path) as opened:
                    src = opened.convert("RGBA")
            else:
                src = self._labelled_canvas(req)
        except (UnidentifiedImageError, OSError) as e:
            return PollResult(RemoteStatus.FAILED, error=f"Unsupported image format: {e}")

        if req.kind is OperationKind.ENHANCE:
            out = self._enhance(src)
        elif req.kind is OperationKind.REPLACE_BACKGROUND_PROMPT:
            out = self._replace_background(src, str(req.params.get("prompt", "")))
        else:
            out = self._cut_out(src)

        self._output_dir.mkdir(parents=True, exist_ok=True)
        out_path = self._output_dir / f"{request_id}.png"
        out.save(out_path)
        logger.debug("placeholder %s wrote %s", req.kind.value, out_path)
        return PollResult(RemoteStatus.COMPLETED, output_url=out_path.resolve().as_uri())

    def _labelled_canvas(self, req: ProviderRequest) -> "Image.Image":
        img = Image.new("RGBA", (512, 512), (230, 230, 230, 255))
        d = ImageDraw.Draw(img)
        d.text((24, 24), f"Kind: {req.kind.value}\nSource: {req.image_url}", fill=(0, 0, 0, 255))
        return img

    def _enhance(self, src: "Image.Image") -> "Image.Image":
        scale = min(2.0, MAX_OUTPUT_EDGE / max(src.size))
        size = (max(1, int(src.width * scale)), max(1, int(src.height * scale)))
        return src.resize(size, Image.Resampling.LANCZOS).filter(ImageFilter.SHARPEN)

    def _cut_out(self, src: "Image.Image") -> "Image.Image":
        rgb = src.convert("RGB")
        corner = rgb.getpixel((0, 0))
        diff = ImageChops.difference(rgb, Image.new("RGB", rgb.size, corner)).convert("L")
        mask = diff.point(lambda v: 255 if v > MASK_THRESHOLD else 0)
        out = src.copy()
        out.putalpha(mask)
        return out

    def _replace_background(self, src: "Image.Image", prompt: str) -> "Image.Image":
        subject = self._cut_out(src)
        canvas = Image.new("RGBA", src.size, _prompt_color(prompt))
        canvas.alpha_composite(subject)
        return canvas
