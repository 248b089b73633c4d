from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from .config import StudioConfig
from .drafts import DraftStore
from .events import EventLog
from .inference.registry import ProviderRegistry
from .normalize import InputNormalizer
from .orchestrator import Session
from .progress import ProgressCallback
from .prompting import PromptResolver
from .render_cache import RenderCache
from .result_cache import RESULTS_FILENAME, ResultCache
from .storage import HttpUploader, LocalUploader, Uploader
from .tracker import JobTracker

logger = logging.getLogger(__name__)


class AIStudio:
    """Long-lived owner of every shared piece of state.

    Build one per process and hand sessions out from it; nothing in the package
    keeps module-level state.
    """

    def __init__(
        self,
        config: Optional[StudioConfig] = None,
        state_dir: Optional[Path] = None,
        provider_name: Optional[str] = None,
        uploader: Optional[Uploader] = None,
        templates_dir: Optional[Path] = None,
    ):
        self.config = config or StudioConfig()
        self.state_dir = state_dir or self.config.cache.dir
        self.event_log = EventLog(self.state_dir / "logs" / "events.jsonl")

        self.result_cache = ResultCache(
            self.state_dir / RESULTS_FILENAME,
            max_entries=self.config.cache.result_max_entries,
        )
        self.render_cache = RenderCache(self.state_dir / "renders", reporter=self.event_log)
        self.drafts = DraftStore(self.state_dir / "drafts", self.render_cache)

        self.registry = ProviderRegistry(self.config, work_dir=self.state_dir)
        self.provider = self.registry.get_provider(provider_name or self.config.default_provider)
        self.uploader = uploader or self._default_uploader()
        self.normalizer = InputNormalizer(
            self.uploader, max_dimension=self.config.normalizer.max_dimension
        )
        self.tracker = JobTracker(
            self.provider,
            poll_interval=self.config.tracker.poll_interval,
            submit_retries=self.config.tracker.submit_retries,
            timeout_seconds=self.config.tracker.timeout_seconds,
            event_log=self.event_log,
        )
        self.prompts = PromptResolver(templates_dir)

    def _default_uploader(self) -> Uploader:
        storage = self.config.storage
        if storage.upload_url:
            return HttpUploader(storage.upload_url, public_base_url=storage.public_base_url)
        return LocalUploader(self.state_dir / "uploads", base_url=storage.public_base_url)

    def session(self, on_progress: Optional[ProgressCallback] = None) -> Session:
        return Session(
            self.tracker,
            self.normalizer,
            self.result_cache,
            cache_hit_delay=self.config.orchestrator.cache_hit_delay,
            prompts=self.prompts,
            on_progress=on_progress,
        )

    async def aclose(self) -> None:
        await self.registry.aclose()
        if isinstance(self.uploader, HttpUploader):
            await self.uploader.aclose()

    async def __aenter__(self) -> "AIStudio":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()
