from __future__ import annotations

import tomllib
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

CONFIG_FILENAME = "studio.toml"


class PlaceholderProviderConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    latency_seconds: float = Field(default=0.5, ge=0.0)
    push: bool = True
    fail_with: Optional[str] = None
    output_dir: Optional[Path] = None


class HttpProviderConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    base_url: str = "https://queue.fal.run"
    api_key_env: str = "FAL_KEY"
    webhook_url: Optional[str] = None
    timeout_seconds: float = Field(default=30.0, gt=0.0)


class ProvidersConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    placeholder: Optional[PlaceholderProviderConfig] = None
    http: Optional[HttpProviderConfig] = None


class NormalizerConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    max_dimension: int = Field(default=768, ge=64, le=4096)


class TrackerConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    poll_interval: float = Field(default=3.0, gt=0.0)
    submit_retries: int = Field(default=0, ge=0, le=5)
    timeout_seconds: Optional[float] = Field(default=None, gt=0.0)


class CacheConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    dir: Path = Path(".aistudio")
    result_max_entries: int = Field(default=1000, ge=0)


class StorageConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    upload_url: Optional[str] = None
    public_base_url: Optional[str] = None


class OrchestratorConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    cache_hit_delay: float = Field(default=0.6, ge=0.0)


class StudioConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    default_provider: str = "placeholder"
    providers: ProvidersConfig = ProvidersConfig()
    normalizer: NormalizerConfig = NormalizerConfig()
    tracker: TrackerConfig = TrackerConfig()
    cache: CacheConfig = CacheConfig()
    storage: StorageConfig = StorageConfig()
    orchestrator: OrchestratorConfig = OrchestratorConfig()

    @field_validator("default_provider")
    @classmethod
    def validate_default_provider(cls, v: str) -> str:
        if not v:
            raise ValueError("default_provider cannot be empty")
        return v

    @model_validator(mode="after")
    def check_default_provider_exists(self) -> "StudioConfig":
        provider_names = configured_providers(self.providers)
        if self.default_provider not in provider_names:
            raise ValueError(
                f"default_provider '{self.default_provider}' is not configured. "
                f"Available providers: {sorted(provider_names)}"
            )
        return self


def configured_providers(providers: ProvidersConfig) -> set[str]:
    names = set()
    if providers.placeholder is not None:
        names.add("placeholder")
    if providers.http is not None:
        names.add("http")
    for name in providers.model_extra or {}:
        names.add(name)
    if not names:
        names.add("placeholder")
    return names


class ConfigError(Exception):
    def __init__(self, message: str, path: Optional[Path] = None, line: Optional[int] = None):
        self.path = path
        self.line = line
        if path:
            loc = f"{path}"
            if line:
                loc += f":{line}"
            message = f"{loc}: {message}"
        super().__init__(message)


def load_config(config_path: Path) -> StudioConfig:
    if not config_path.exists():
        raise ConfigError(
            f"Config file not found: {config_path}\n"
            f"Create a {CONFIG_FILENAME} or run without one to use defaults",
            path=config_path,
        )

    try:
        data = tomllib.loads(config_path.read_text(encoding="utf-8"))
    except (tomllib.TOMLDecodeError, OSError) as e:
        raise ConfigError(f"Failed to parse TOML: {e}", path=config_path) from e

    try:
        return StudioConfig.model_validate(data)
    except ValueError as e:
        raise ConfigError(f"Invalid configuration: {e}", path=config_path) from e


def find_config(start_dir: Optional[Path] = None) -> Path:
    if start_dir is None:
        start_dir = Path.cwd()

    current = start_dir.resolve()
    while current != current.parent:
        candidate = current / CONFIG_FILENAME
        if candidate.exists():
            return candidate
        current = current.parent

    return start_dir / CONFIG_FILENAME


def load_config_or_default(config_path: Optional[Path] = None) -> StudioConfig:
    """Load an explicit or discovered config; fall back to defaults when none exists."""
    if config_path is not None:
        return load_config(config_path)
    found = find_config()
    if found.exists():
        return load_config(found)
    return StudioConfig()
