"""Rich rendering of installation events.

Color scheme
------------
- green     : ``*:complete`` and cache hits
- red       : ``*:fail``
- yellow    : cache misses
- cyan      : everything else (stage starts, producer progress)
"""

from __future__ import annotations

from rich.console import Console
from rich.text import Text

from pursinstall.models.events import EventKind, InstallEvent

_KIND_LABELS: dict[str, str] = {
    EventKind.RESTORE_CACHE.value: "Restoring cached binary",
    EventKind.RESTORE_CACHE_COMPLETE.value: "Restored cached binary",
    EventKind.RESTORE_CACHE_FAIL.value: "Restoring cached binary failed",
    EventKind.CHECK_BINARY.value: "Checking binary",
    EventKind.CHECK_BINARY_COMPLETE.value: "Binary works",
    EventKind.CHECK_BINARY_FAIL.value: "Binary check failed",
    EventKind.WRITE_CACHE.value: "Writing binary to cache",
    EventKind.WRITE_CACHE_COMPLETE.value: "Cached binary",
    EventKind.WRITE_CACHE_FAIL.value: "Writing cache failed",
}


def event_style(event: InstallEvent) -> str:
    if event.is_failure:
        return "bold red"
    if event.kind == EventKind.SEARCH_CACHE:
        return "green" if event.found else "yellow"
    if event.kind.endswith(":complete"):
        return "green"
    return "cyan"


def describe(event: InstallEvent) -> str:
    """One-line human description of *event*."""
    if event.kind == EventKind.SEARCH_CACHE:
        if event.found:
            return f"Found cached binary at {event.path}"
        return "No usable cached binary"
    label = _KIND_LABELS.get(event.kind, event.kind)
    if event.error is not None:
        return f"{label}: {event.error}"
    if event.path is not None:
        return f"{label} ({event.path})"
    return label


class EventRenderer:
    """Prints installation events as they arrive.

    Parameters
    ----------
    console:
        Rich Console instance.  A new one is created if not provided.
    """

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    def render(self, event: InstallEvent) -> Text:
        return Text(describe(event), style=event_style(event))

    def print(self, event: InstallEvent) -> None:
        self.console.print(self.render(event))
