"""Configuration loading.

Settings are loaded in priority order (highest first):
  1. Environment variables  (POLLWISE__QUOTA__MAX_PER_MINUTE=60)
  2. pollwise.yaml          (searched in cwd, then platform config dir)
  3. Hardcoded defaults

The config file is optional; all fields have sensible defaults.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

import platformdirs
from pydantic import BaseModel, Field
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

_DEFAULT_DATA_DIR = platformdirs.user_data_dir("pollwise")
_DEFAULT_DB_PATH = str(Path(_DEFAULT_DATA_DIR) / "snapshot.db")


def _find_config_file() -> str | None:
    """Return the path of the first pollwise.yaml found, or None."""
    candidates = [
        Path("pollwise.yaml"),
        Path(platformdirs.user_config_dir("pollwise")) / "pollwise.yaml",
    ]
    for path in candidates:
        if path.exists():
            return str(path)
    return None


class CacheSettings(BaseModel):
    min_ttl_ms: int = 5 * 1000
    max_ttl_ms: int = 24 * 60 * 60 * 1000
    default_ttl_ms: int = 60 * 1000
    min_samples: int = 5
    max_samples: int = 20
    # Profiles at or below this confidence never get their recommended TTL
    confidence_threshold: float = 70.0
    ttl_safety_factor: float = 0.8
    high_frequency_threshold_ms: int = 60 * 1000


class QuotaSettings(BaseModel):
    max_per_minute: int = 30
    max_per_hour: int = 200
    min_spacing_ms: int = 500
    max_consecutive_errors: int = 3
    backoff_multiplier: float = 1.5
    backoff_base_seconds: float = 5.0
    default_retry_after_seconds: int = 60


class FetcherSettings(BaseModel):
    timeout_seconds: float = 30.0
    user_agent: str = "pollwise/1.0"
    max_connections: int = 10
    max_keepalive_connections: int = 5


class PersistenceSettings(BaseModel):
    enabled: bool = True
    db_path: str = _DEFAULT_DB_PATH
    # Samples kept per profile in the snapshot; raw values are never persisted
    profile_samples_kept: int = 5


class PollerSettings(BaseModel):
    urls: list[str] = []
    interval_seconds: int = Field(default=60, ge=1)


class LoggingSettings(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    format: Literal["json", "text"] = "json"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        # Double-underscore separates nesting: POLLWISE__CACHE__MAX_SAMPLES=30
        env_prefix="POLLWISE__",
        env_nested_delimiter="__",
        yaml_file=_find_config_file(),
        yaml_file_encoding="utf-8",
    )

    cache: CacheSettings = CacheSettings()
    quota: QuotaSettings = QuotaSettings()
    fetcher: FetcherSettings = FetcherSettings()
    persistence: PersistenceSettings = PersistenceSettings()
    poller: PollerSettings = PollerSettings()
    logging: LoggingSettings = LoggingSettings()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
        **kwargs: Any,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,  # Constructor args (highest priority)
            env_settings,  # Environment variables
            YamlConfigSettingsSource(settings_cls),  # YAML file
            # dotenv and file secrets intentionally excluded
        )
