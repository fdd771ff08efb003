"""Configuration management for opstate."""

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

CONFIG_FILE_ENV = "OPSTATE_CONFIG_FILE"


class LoggingSettings(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    json_output: bool = True
    log_dir: Optional[str] = None


class RunnerPresetSettings(BaseModel):
    """One named set of runner options. Durations in seconds."""

    timeout: float = 30.0
    retries: int = 0
    retry_delay: float = 1.0
    retry_multiplier: float = 1.0
    max_retry_delay: float = 30.0
    show_global_loader: bool = False


def _default_presets() -> Dict[str, RunnerPresetSettings]:
    return {
        "default": RunnerPresetSettings(),
        "api": RunnerPresetSettings(
            timeout=30.0, retries=3, retry_delay=1.0, show_global_loader=True
        ),
        "form": RunnerPresetSettings(timeout=15.0, retries=1, retry_delay=0.5),
        "image": RunnerPresetSettings(timeout=60.0, retries=2, retry_delay=2.0),
        "search": RunnerPresetSettings(timeout=10.0, retries=1, retry_delay=0.3),
    }


class RetrySettings(BaseModel):
    """Exponential backoff used by RetryHandler."""

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    multiplier: float = 2.0


class CacheSettings(BaseModel):
    """Shared memory cache."""

    max_size: int = 50


class DedupSettings(BaseModel):
    """Request de-duplication."""

    max_retries: int = 3
    retry_delay: float = 1.0


class BatchSettings(BaseModel):
    """Default batching limits."""

    batch_size: int = 10
    flush_interval: float = 1.0


class Settings(BaseSettings):
    """
    Library settings.

    Values come from (highest priority first) constructor arguments,
    ``OPSTATE_*`` environment variables (``__`` separates nested fields,
    e.g. ``OPSTATE_CACHE__MAX_SIZE=200``), then defaults.
    """

    model_config = SettingsConfigDict(
        env_prefix="OPSTATE_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    version: str = "1.0.0"
    logging: LoggingSettings = LoggingSettings()
    runner_presets: Dict[str, RunnerPresetSettings] = Field(
        default_factory=_default_presets
    )
    retry: RetrySettings = RetrySettings()
    cache: CacheSettings = CacheSettings()
    dedup: DedupSettings = DedupSettings()
    batch: BatchSettings = BatchSettings()

    @field_validator("runner_presets", mode="before")
    @classmethod
    def merge_presets(cls, v: Any) -> Any:
        """Extend the built-in presets field by field instead of replacing them."""
        if not isinstance(v, dict):
            return v
        merged = {name: p.model_dump() for name, p in _default_presets().items()}
        for name, values in v.items():
            if isinstance(values, BaseModel):
                values = values.model_dump(exclude_unset=True)
            if isinstance(values, dict):
                merged[name] = {**merged.get(name, {}), **values}
            else:
                merged[name] = values
        return merged


def load_config_file(path: Optional[Path] = None) -> dict:
    """Load configuration from a JSON file (``OPSTATE_CONFIG_FILE`` by default)."""
    if path is None:
        env_path = os.environ.get(CONFIG_FILE_ENV)
        if not env_path:
            return {}
        path = Path(env_path)

    if path.exists():
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    return {}


@lru_cache
def get_settings() -> Settings:
    """Get library settings (cached)."""
    config_data = load_config_file()
    return Settings(**config_data)


def reload_settings() -> Settings:
    """Reload settings from disk and environment (clears cache)."""
    get_settings.cache_clear()
    return get_settings()
