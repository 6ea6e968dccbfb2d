"""``purs-install cache`` — inspect or clear the binary cache."""

from __future__ import annotations

import asyncio

import typer
from rich.console import Console
from rich.table import Table

from pursinstall.config import cache_root, settings
from pursinstall.core.cache_gate import CACHE_KEY
from pursinstall.core.content_store import ContentStore, StoreError
from pursinstall.core.pipeline import open_store
from pursinstall.core.producer import DEFAULT_VERSION
from pursinstall.models.artifacts import VerifyReport

console = Console()


async def _clear(store: ContentStore) -> tuple[bool, VerifyReport]:
    removed = await store.remove_entry(CACHE_KEY)
    return removed, await store.verify()


def cache_cmd(
    clear: bool = typer.Option(
        False,
        "--clear",
        help="Remove the cached binary and garbage-collect the store.",
    ),
) -> None:
    """Show where the cache lives and what it holds."""
    store = open_store(settings)

    if clear:
        removed, report = asyncio.run(_clear(store))
        state = "removed" if removed else "nothing to remove"
        console.print(
            f"[bold]Cache entry:[/bold] {state}  |  "
            f"[bold]Reclaimed:[/bold] {report.reclaimed_bytes} bytes"
        )
        return

    table = Table(title="purs-install cache", show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Cache key", CACHE_KEY)
    table.add_row("Cache root", str(cache_root(settings)))
    table.add_row("Default version", DEFAULT_VERSION)

    try:
        entry = store.get_info_sync(CACHE_KEY)
    except StoreError:
        table.add_row("Entry", "[dim]none[/dim]")
    else:
        table.add_row("Entry", str(entry.metadata.get("id", "[dim]unknown[/dim]")))
        table.add_row("Content", str(entry.path))
        table.add_row("Size", f"{entry.size} bytes")
        table.add_row("Integrity", entry.integrity)

    console.print(table)
