from __future__ import annotations

from pathlib import Path

import pytest

from aistudio.config import ConfigError, StudioConfig, find_config, load_config, load_config_or_default
from aistudio.inference.providers.http import HttpQueueProvider
from aistudio.inference.providers.placeholder import PlaceholderProvider
from aistudio.inference.registry import ProviderRegistry


class TestLoadConfig:
    def test_load_valid_config(self, tmp_path: Path) -> None:
        config_file = tmp_path / "studio.toml"
        config_file.write_text("""
default_provider = "placeholder"

[providers.placeholder]
latency_seconds = 0.2

[tracker]
poll_interval = 1.5
submit_retries = 2

[cache]
result_max_entries = 10
""")
        config = load_config(config_file)
        assert config.default_provider == "placeholder"
        assert config.providers.placeholder.latency_seconds == 0.2
        assert config.tracker.poll_interval == 1.5
        assert config.tracker.timeout_seconds is None
        assert config.cache.result_max_entries == 10
        assert config.normalizer.max_dimension == 768
        assert config.orchestrator.cache_hit_delay == 0.6

    def test_missing_config_produces_helpful_error(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigError) as exc_info:
            load_config(tmp_path / "studio.toml")
        assert "not found" in str(exc_info.value).lower()

    def test_invalid_toml_produces_error(self, tmp_path: Path) -> None:
        config_file = tmp_path / "studio.toml"
        config_file.write_text("this is not valid [toml")
        with pytest.raises(ConfigError, match="TOML"):
            load_config(config_file)

    def test_unknown_key_rejected(self, tmp_path: Path) -> None:
        config_file = tmp_path / "studio.toml"
        config_file.write_text("[tracker]\npoll_every = 3\n")
        with pytest.raises(ConfigError, match="Invalid configuration"):
            load_config(config_file)

    def test_invalid_default_provider_produces_error(self, tmp_path: Path) -> None:
        config_file = tmp_path / "studio.toml"
        config_file.write_text("""
default_provider = "nonexistent"

[providers.placeholder]
""")
        with pytest.raises(ConfigError) as exc_info:
            load_config(config_file)
        assert "nonexistent" in str(exc_info.value)
        assert "placeholder" in str(exc_info.value)

    def test_find_config_walks_up(self, tmp_path: Path) -> None:
        (tmp_path / "studio.toml").write_text('default_provider = "placeholder"\n')
        nested = tmp_path / "a" / "b"
        nested.mkdir(parents=True)
        assert find_config(nested) == (tmp_path / "studio.toml").resolve()

    def test_defaults_without_file(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.chdir(tmp_path)
        assert load_config_or_default() == StudioConfig()


class TestProviderRegistry:
    def test_get_placeholder_provider(self) -> None:
        registry = ProviderRegistry(StudioConfig())
        provider = registry.get_provider("placeholder")
        assert isinstance(provider, PlaceholderProvider)
        assert provider.provider_id == "placeholder"

    def test_providers_are_cached(self) -> None:
        registry = ProviderRegistry(StudioConfig())
        assert registry.get_default_provider() is registry.get_provider("placeholder")

    def test_http_provider_from_config(self, tmp_path: Path) -> None:
        config_file = tmp_path / "studio.toml"
        config_file.write_text("""
default_provider = "http"

[providers.http]
base_url = "https://queue.test"
""")
        registry = ProviderRegistry.from_config_file(config_file)
        assert isinstance(registry.get_default_provider(), HttpQueueProvider)

    def test_http_requires_section(self) -> None:
        with pytest.raises(ConfigError, match=r"\[providers.http\]"):
            ProviderRegistry(StudioConfig()).get_provider("http")

    def test_unknown_provider(self) -> None:
        with pytest.raises(ConfigError, match="Unknown provider"):
            ProviderRegistry(StudioConfig()).get_provider("dalle")
