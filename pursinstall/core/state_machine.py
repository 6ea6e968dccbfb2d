"""Deterministic installation state machine.

Enforces:
- Valid state transitions only (VALID_TRANSITIONS table)
- At most one rebuild per installation request
- At most one verification probe per restore attempt
"""

from __future__ import annotations

import logging

from pursinstall.models.states import VALID_TRANSITIONS, InstallState, StateTransition

logger = logging.getLogger(__name__)


class InvalidTransitionError(RuntimeError):
    """Raised when a requested state transition is not valid."""


class InstallStateMachine:
    """Tracks the lifecycle of one installation request.

    Parameters
    ----------
    label:
        Identifies the request in log records (usually the target path).
    """

    def __init__(self, label: str = "") -> None:
        self._label = label
        self._state = InstallState.START
        self._history: list[StateTransition] = []

    @property
    def state(self) -> InstallState:
        return self._state

    @property
    def history(self) -> list[StateTransition]:
        """Return a copy of every transition taken so far."""
        return list(self._history)

    @property
    def is_terminal(self) -> bool:
        return not VALID_TRANSITIONS[self._state]

    def visits(self, state: InstallState) -> int:
        """Number of times *state* has been entered."""
        return sum(1 for t in self._history if t.to_state == state)

    def transition(self, target: InstallState, *, reason: str | None = None) -> StateTransition:
        """Move to *target*, recording the transition.

        Raises
        ------
        InvalidTransitionError
            When *target* is not reachable from the current state.
        """
        allowed = VALID_TRANSITIONS.get(self._state, set())
        if target not in allowed:
            raise InvalidTransitionError(
                f"Cannot transition from {self._state.value} to {target.value}. "
                f"Allowed: {sorted(s.value for s in allowed)}"
            )

        record = StateTransition(from_state=self._state, to_state=target, reason=reason)
        self._history.append(record)
        logger.debug(
            "%s: %s -> %s%s",
            self._label or "install",
            self._state.value,
            target.value,
            f" ({reason})" if reason else "",
        )
        self._state = target
        return record
