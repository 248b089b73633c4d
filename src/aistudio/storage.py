from __future__ import annotations

import logging
import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import httpx

from .cache import file_sha256
from .errors import NetworkError

logger = logging.getLogger(__name__)

_CONTENT_TYPES = {".png": "image/png", ".webp": "image/webp", ".jpg": "image/jpeg", ".jpeg": "image/jpeg"}


class Uploader(ABC):
    """Turns a local file into a durable, fetchable URL."""

    @abstractmethod
    async def upload(self, path: Path) -> str:
        raise NotImplementedError


class LocalUploader(Uploader):
    """Content-addressed copy into a local directory.

    Returns a ``file://`` URI, or ``{base_url}/{name}`` when the directory is
    served over HTTP.
    """

    def __init__(self, root: Path, base_url: Optional[str] = None):
        self.root = root
        self.base_url = base_url.rstrip("/") if base_url else None

    async def upload(self, path: Path) -> str:
        name = f"{file_sha256(path)[:16]}{path.suffix.lower()}"
        dest = self.root / name
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            if not dest.exists():
                shutil.copy2(path, dest)
        except OSError as e:
            raise NetworkError(f"Upload failed: {e}") from e
        if self.base_url:
            return f"{self.base_url}/{name}"
        return dest.resolve().as_uri()


class HttpUploader(Uploader):
    """PUTs the file to ``{endpoint}/{name}`` and returns the resulting URL."""

    def __init__(
        self,
        endpoint: str,
        client: Optional[httpx.AsyncClient] = None,
        public_base_url: Optional[str] = None,
    ):
        self.endpoint = endpoint.rstrip("/")
        self.public_base_url = (public_base_url or endpoint).rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=60.0)

    async def upload(self, path: Path) -> str:
        name = f"{file_sha256(path)[:16]}{path.suffix.lower()}"
        content_type = _CONTENT_TYPES.get(path.suffix.lower(), "application/octet-stream")
        try:
            response = await self._client.put(
                f"{self.endpoint}/{name}",
                content=path.read_bytes(),
                headers={"Content-Type": content_type},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise NetworkError(f"Upload failed: {e}") from e
        logger.debug("Uploaded %s as %s", path, name)
        return f"{self.public_base_url}/{name}"

    async def aclose(self) -> None:
        await self._client.aclose()
