"""Cache entry models — read-only views of what the content store holds."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class CacheEntry(BaseModel):
    """An index record resolved against the content store.

    ``path`` points at the content blob; ``integrity`` is ``sha256:<hex>``
    of its bytes. ``metadata`` carries ``{"id": <identity>, "mode": <bits>}``
    for entries written by the installer.
    """

    model_config = ConfigDict(frozen=True)

    key: str
    integrity: str
    path: Path
    size: int
    metadata: dict[str, Any] = {}
    time: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def mode(self) -> int | None:
        mode = self.metadata.get("mode")
        return mode if isinstance(mode, int) else None


class VerifyReport(BaseModel):
    """Outcome of a store-wide consistency pass."""

    model_config = ConfigDict(frozen=True)

    verified_entries: int = 0
    removed_entries: int = 0
    removed_content: int = 0
    reclaimed_bytes: int = 0
    removed_tmp: int = 0
