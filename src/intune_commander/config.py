"""
Settings for sync runs.

Values come from ``~/.intune-commander/config.json`` with environment
variables taking precedence when set.
"""

import json
import os
from collections.abc import Mapping
from datetime import timedelta
from pathlib import Path
from typing import Any

import structlog
from pydantic import BaseModel, Field, field_validator

from intune_commander.client import GRAPH_BETA_URL
from intune_commander.protector import PassphraseProtector

logger = structlog.get_logger(__name__)

DEFAULT_HOME = Path.home() / ".intune-commander"
CONFIG_FILENAME = "config.json"
SALT_FILENAME = "cache-salt.bin"

ENV_MAPPINGS = {
    "tenant_id": "IC_TENANT_ID",
    "cache_dir": "IC_CACHE_DIR",
    "cache_ttl_hours": "IC_CACHE_TTL_HOURS",
    "max_concurrency": "IC_MAX_CONCURRENCY",
    "cleanup_interval_minutes": "IC_CLEANUP_INTERVAL_MINUTES",
    "graph_base_url": "IC_GRAPH_BASE_URL",
    "requests_per_minute": "IC_REQUESTS_PER_MINUTE",
    "request_timeout": "IC_REQUEST_TIMEOUT",
    "max_retries": "IC_MAX_RETRIES",
    "access_token": "IC_ACCESS_TOKEN",
    "cache_passphrase": "IC_CACHE_PASSPHRASE",
}

# Never written back to the config file.
SECRET_FIELDS = {"access_token", "cache_passphrase"}


class SyncSettings(BaseModel):
    """Everything a sync run needs besides the tenant's data."""

    tenant_id: str | None = None
    cache_dir: Path = DEFAULT_HOME
    cache_ttl_hours: float = Field(default=24, gt=0)
    max_concurrency: int = Field(default=5, ge=1, le=32)
    cleanup_interval_minutes: float = Field(default=30, gt=0)
    graph_base_url: str = GRAPH_BETA_URL
    requests_per_minute: int = Field(default=600, gt=0)
    request_timeout: float = Field(default=30.0, gt=0)
    max_retries: int = Field(default=4, ge=1)
    access_token: str | None = None
    cache_passphrase: str | None = None

    @field_validator("cache_dir", mode="before")
    @classmethod
    def expand_cache_dir(cls, v: Any) -> Any:
        if isinstance(v, str):
            return Path(v).expanduser()
        return v

    @field_validator("graph_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @property
    def cache_ttl(self) -> timedelta:
        return timedelta(hours=self.cache_ttl_hours)

    @property
    def cleanup_interval(self) -> timedelta:
        return timedelta(minutes=self.cleanup_interval_minutes)

    def build_protector(self) -> PassphraseProtector:
        """
        Protector for the cache key sidecar.

        Raises:
            ValueError: no cache passphrase is configured
        """
        if not self.cache_passphrase:
            raise ValueError("Set IC_CACHE_PASSPHRASE to unlock the local cache")
        return PassphraseProtector.from_salt_file(
            self.cache_passphrase, self.cache_dir / SALT_FILENAME
        )


def get_config_path() -> Path:
    """Get the configuration file path."""
    return DEFAULT_HOME / CONFIG_FILENAME


def _coerce_env(value: str) -> Any:
    """Convert string booleans; everything else is left to validation."""
    if value.lower() in ("true", "yes"):
        return True
    if value.lower() in ("false", "no"):
        return False
    return value


def load_settings(
    config_path: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> SyncSettings:
    """
    Load settings from file, with environment variable overrides.

    Priority:
    1. Environment variables
    2. Config file values
    3. Defaults
    """
    path = Path(config_path) if config_path is not None else get_config_path()
    environ = os.environ if environ is None else environ

    data: dict[str, Any] = {}
    if path.exists():
        with open(path) as f:
            data = json.load(f)
        logger.debug("Loaded config file", path=str(path))

    for field_name, env_var in ENV_MAPPINGS.items():
        env_value = environ.get(env_var)
        if env_value is not None:
            data[field_name] = _coerce_env(env_value)

    return SyncSettings.model_validate(data)


def save_settings(settings: SyncSettings, config_path: str | Path | None = None) -> Path:
    """
    Save settings to disk, leaving secrets out.

    Uses atomic write (write to temp, then rename) and restricts the file
    to the current user.
    """
    path = Path(config_path) if config_path is not None else get_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)

    data = settings.model_dump(mode="json", exclude=SECRET_FIELDS, exclude_none=True)

    temp_file = path.with_suffix(".tmp")
    with open(temp_file, "w") as f:
        json.dump(data, f, indent=2)
    os.chmod(temp_file, 0o600)
    temp_file.replace(path)

    logger.info("Saved settings", path=str(path))
    return path
