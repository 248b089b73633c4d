from __future__ import annotations

import asyncio
import logging
import tempfile
from pathlib import Path
from typing import Optional
from urllib.parse import unquote, urlparse

import httpx
from PIL import Image, UnidentifiedImageError

from .errors import FetchError, FormatError
from .jobs import CancellationToken
from .models import SourceAsset
from .progress import ProgressCallback, Submitting
from .storage import Uploader

logger = logging.getLogger(__name__)

DEFAULT_MAX_DIMENSION = 768
ACCEPTED_FORMATS = frozenset({"JPEG", "PNG", "WEBP"})
WEBP_QUALITY = 90

PREPARING_MESSAGE = "Preparing image..."
OPTIMIZING_MESSAGE = "Optimizing for AI..."
UPLOADING_MESSAGE = "Uploading to cloud..."


def scaled_size(width: int, height: int, max_dimension: int) -> tuple[int, int]:
    """Size with the longer edge clamped to max_dimension, aspect preserved."""
    longest = max(width, height)
    if longest <= max_dimension:
        return width, height
    scale = max_dimension / longest
    if width >= height:
        return max_dimension, max(1, round(height * scale))
    return max(1, round(width * scale)), max_dimension


def _has_alpha(img: "Image.Image") -> bool:
    return img.mode in ("RGBA", "LA", "PA") or (img.mode == "P" and "transparency" in img.info)


def prepare_image(src: Path, work_dir: Path, max_dimension: int = DEFAULT_MAX_DIMENSION) -> Path:
    """Downscale and re-encode a local image when needed.

    Returns the source path untouched when it is already within bounds and in
    a format the provider accepts.
    """
    try:
        img = Image.open(src)
        img.load()
    except (UnidentifiedImageError, OSError) as e:
        raise FormatError(f"Unsupported image format: {src.name}") from e

    with img:
        target = scaled_size(img.width, img.height, max_dimension)
        if target == img.size and img.format in ACCEPTED_FORMATS:
            return src

        if target != img.size:
            logger.debug("Resizing %s from %sx%s to %sx%s", src.name, img.width, img.height, *target)
            out = img.resize(target, Image.Resampling.LANCZOS)
        else:
            out = img.copy()

        if _has_alpha(img):
            dest = work_dir / f"{src.stem}.png"
            out.convert("RGBA").save(dest, format="PNG")
        else:
            dest = work_dir / f"{src.stem}.webp"
            out.convert("RGB").save(dest, format="WEBP", quality=WEBP_QUALITY)
    return dest


class InputNormalizer:
    """Fetch, downscale and upload a source image ahead of submission."""

    def __init__(
        self,
        uploader: Uploader,
        max_dimension: int = DEFAULT_MAX_DIMENSION,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.uploader = uploader
        self.max_dimension = max_dimension
        self._client = client

    async def normalize(
        self,
        source: SourceAsset,
        max_dimension: Optional[int] = None,
        cancel_token: Optional[CancellationToken] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> str:
        limit = max_dimension or self.max_dimension
        token = cancel_token or CancellationToken()

        def emit(message: str, percent: int) -> None:
            if on_progress is not None:
                on_progress(Submitting(message, percent))

        with tempfile.TemporaryDirectory(prefix="aistudio-") as tmp:
            work_dir = Path(tmp)

            token.raise_if_cancelled()
            emit(PREPARING_MESSAGE, 5)
            local = await self._materialize(source, work_dir)

            token.raise_if_cancelled()
            emit(OPTIMIZING_MESSAGE, 15)
            prepared = await asyncio.to_thread(prepare_image, local, work_dir, limit)

            token.raise_if_cancelled()
            emit(UPLOADING_MESSAGE, 25)
            url = await self.uploader.upload(prepared)

        logger.info("Normalized %s -> %s", source.identity[:12], url)
        return url

    async def _materialize(self, source: SourceAsset, work_dir: Path) -> Path:
        if not source.is_remote:
            location = source.location
            if location.startswith("file://"):
                location = unquote(urlparse(location).path)
            path = Path(location)
            if not path.exists():
                raise FormatError(f"Source image not found: {path}")
            return path

        name = Path(urlparse(source.location).path).name or "source"
        dest = work_dir / name
        client = self._client or httpx.AsyncClient(timeout=60.0, follow_redirects=True)
        try:
            response = await client.get(source.location)
            response.raise_for_status()
            dest.write_bytes(response.content)
        except httpx.HTTPError as e:
            raise FetchError(f"Could not fetch {source.location}: {e}") from e
        except OSError as e:
            raise FetchError(f"Could not stage {source.location}: {e}") from e
        finally:
            if self._client is None:
                await client.aclose()
        return dest
