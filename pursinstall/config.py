"""Installer configuration — env-driven.

Centralized settings using pydantic-settings. Reads from a .env file and
PURS_INSTALL_* environment variables.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

import platformdirs
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

APP_NAME = "purs-install"


def _default_cache_root() -> Path:
    return Path(platformdirs.user_cache_dir(APP_NAME))


class InstallerSettings(BaseSettings):
    """Installer settings with environment variable overrides.

    Examples
    --------
    Override via environment::

        export PURS_INSTALL_CACHE_ROOT=/var/cache/purs-install
        export PURS_INSTALL_CHECK_TIMEOUT_SECONDS=20
        export PURS_INSTALL_LOG_LEVEL=DEBUG
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="PURS_INSTALL_",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    log_level: str = "INFO"

    # Cache store
    cache_root: Path = Field(default_factory=_default_cache_root)
    gc_grace_seconds: float = 600.0
    chunk_size: int = Field(default=64 * 1024, gt=0)

    # Binary verification probe
    check_timeout_seconds: float = Field(default=8.0, gt=0)

    # Capacity of the per-installation event channel
    channel_size: int = Field(default=16, gt=0)


# Module-level singleton — import as `from pursinstall.config import settings`
settings = InstallerSettings()


@lru_cache(maxsize=None)
def _init_cache_root(root: Path) -> Path:
    root.mkdir(parents=True, exist_ok=True)
    return root


def cache_root(config: InstallerSettings | None = None) -> Path:
    """Return the cache root, creating it once per process."""
    return _init_cache_root((config or settings).cache_root)
