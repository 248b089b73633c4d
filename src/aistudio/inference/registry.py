from __future__ import annotations

from pathlib import Path
from typing import Optional

from ..config import ConfigError, StudioConfig, configured_providers, find_config, load_config
from .provider import InferenceProvider
from .providers.http import HttpQueueProvider
from .providers.placeholder import PlaceholderProvider


class ProviderRegistry:
    def __init__(self, config: StudioConfig, work_dir: Optional[Path] = None):
        self._config = config
        self._work_dir = work_dir
        self._providers: dict[str, InferenceProvider] = {}

    @classmethod
    def from_config_file(cls, config_path: Optional[Path] = None) -> "ProviderRegistry":
        if config_path is None:
            config_path = find_config()
        return cls(load_config(config_path))

    @property
    def config(self) -> StudioConfig:
        return self._config

    def get_provider(self, name: str) -> InferenceProvider:
        if name in self._providers:
            return self._providers[name]

        provider = self._instantiate_provider(name)
        self._providers[name] = provider
        return provider

    def get_default_provider(self) -> InferenceProvider:
        return self.get_provider(self._config.default_provider)

    def _instantiate_provider(self, name: str) -> InferenceProvider:
        if name == "placeholder":
            output_dir = self._work_dir / "placeholder" if self._work_dir else None
            return PlaceholderProvider(self._config.providers.placeholder, output_dir=output_dir)

        if name == "http":
            if self._config.providers.http is None:
                raise ConfigError(
                    "Provider 'http' is not configured in studio.toml. "
                    "Add [providers.http] section."
                )
            return HttpQueueProvider(self._config.providers.http)

        raise ConfigError(
            f"Unknown provider: '{name}'. "
            f"Available providers: {sorted(configured_providers(self._config.providers))}"
        )

    async def aclose(self) -> None:
        for provider in self._providers.values():
            await provider.aclose()
        self._providers.clear()
