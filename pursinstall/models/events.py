"""Installation lifecycle events.

Every installation request produces an ordered sequence of
``InstallEvent`` records. The installer's own event kinds are listed in
``EventKind``; events coming from an artifact producer keep whatever kind
the producer gave them and are forwarded unchanged.
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict


class EventKind(str, Enum):
    """Event kinds emitted by the installer itself."""

    SEARCH_CACHE = "search-cache"
    RESTORE_CACHE = "restore-cache"
    RESTORE_CACHE_COMPLETE = "restore-cache:complete"
    RESTORE_CACHE_FAIL = "restore-cache:fail"
    CHECK_BINARY = "check-binary"
    CHECK_BINARY_COMPLETE = "check-binary:complete"
    CHECK_BINARY_FAIL = "check-binary:fail"
    WRITE_CACHE = "write-cache"
    WRITE_CACHE_COMPLETE = "write-cache:complete"
    WRITE_CACHE_FAIL = "write-cache:fail"


class StageError(RuntimeError):
    """A fault tagged with the stage that produced it.

    The underlying exception is kept as ``error`` and chained as
    ``__cause__``.
    """

    def __init__(self, stage: str, error: BaseException) -> None:
        super().__init__(f"{stage} failed: {error}")
        self.stage = stage
        self.error = error
        self.__cause__ = error


class InstallEvent(BaseModel):
    """One immutable entry of an installation's event sequence.

    Only ``search-cache`` carries ``found`` (and ``path`` on a hit); only
    ``*:fail`` events carry ``error``. Producer events may put their own
    payload in ``data``.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    kind: str
    found: bool | None = None
    path: Path | None = None
    error: BaseException | None = None
    data: dict[str, Any] = {}

    @classmethod
    def of(cls, kind: EventKind | str, **payload: Any) -> InstallEvent:
        value = kind.value if isinstance(kind, EventKind) else kind
        return cls(kind=value, **payload)

    @classmethod
    def failure(cls, kind: EventKind, stage: str, error: BaseException) -> InstallEvent:
        """Build a ``*:fail`` event whose error is tagged with *stage*."""
        if not isinstance(error, StageError):
            error = StageError(stage, error)
        return cls.of(kind, error=error)

    @property
    def is_failure(self) -> bool:
        return self.kind.endswith(":fail")
