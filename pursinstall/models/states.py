"""Installation state model — the cache-or-rebuild lifecycle."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict


class InstallState(str, Enum):
    """State of a single installation request."""

    START = "start"
    SEARCHING = "searching"
    RESTORING = "restoring"
    VERIFYING = "verifying"
    REBUILDING = "rebuilding"
    DONE = "done"
    FAILED = "failed"


# Terminal states (DONE, FAILED) have no outgoing transitions.
# REBUILDING never leads back into the cache path, so a request rebuilds at
# most once.
VALID_TRANSITIONS: dict[InstallState, set[InstallState]] = {
    InstallState.START: {
        InstallState.SEARCHING,
        InstallState.REBUILDING,  # forced reinstall
        InstallState.FAILED,
    },
    InstallState.SEARCHING: {
        InstallState.RESTORING,
        InstallState.REBUILDING,
        InstallState.FAILED,  # target path conflict
    },
    InstallState.RESTORING: {InstallState.VERIFYING, InstallState.REBUILDING},
    InstallState.VERIFYING: {InstallState.DONE, InstallState.REBUILDING},
    InstallState.REBUILDING: {InstallState.DONE, InstallState.FAILED},
    InstallState.DONE: set(),
    InstallState.FAILED: set(),
}


class StateTransition(BaseModel):
    """Records a single state transition."""

    model_config = ConfigDict(frozen=True)

    from_state: InstallState
    to_state: InstallState
    reason: str | None = None
