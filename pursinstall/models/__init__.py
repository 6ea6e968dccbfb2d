"""pursinstall data models — all Pydantic v2, all frozen (immutable)."""

from pursinstall.models.artifacts import CacheEntry, VerifyReport
from pursinstall.models.events import EventKind, InstallEvent, StageError
from pursinstall.models.identity import Identity
from pursinstall.models.options import (
    DEFAULT_BIN_NAME,
    InstallOptions,
    InstallOptionsError,
    parse_options,
)
from pursinstall.models.states import VALID_TRANSITIONS, InstallState, StateTransition

__all__ = [
    # identity
    "Identity",
    # artifacts
    "CacheEntry",
    "VerifyReport",
    # events
    "EventKind",
    "InstallEvent",
    "StageError",
    # options
    "DEFAULT_BIN_NAME",
    "InstallOptions",
    "InstallOptionsError",
    "parse_options",
    # states
    "InstallState",
    "StateTransition",
    "VALID_TRANSITIONS",
]
