"""``purs-install install`` — install the binary into a directory.

Runs one installation with the bundled ``LocalBinaryProducer`` and prints
every lifecycle event as it arrives.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import typer
from rich.console import Console
from rich.markup import escape

from pursinstall.cli.render import EventRenderer
from pursinstall.config import settings
from pursinstall.core.pipeline import install
from pursinstall.core.producer import LocalBinaryProducer
from pursinstall.core.stream import EventStream
from pursinstall.models.options import DEFAULT_BIN_NAME, InstallOptionsError, parse_options

console = Console()


async def _consume(stream: EventStream, renderer: EventRenderer) -> None:
    async with stream:
        async for event in stream:
            renderer.print(event)


def install_cmd(
    source: Path = typer.Option(
        ...,
        "--from",
        "-f",
        help="Path of the prebuilt binary to install on a cache miss.",
    ),
    version: str = typer.Option(
        None,
        "--version",
        "-v",
        help="Version the binary is cached as (defaults to the producer's version).",
    ),
    force_reinstall: bool = typer.Option(
        False,
        "--force-reinstall",
        help="Ignore the cache and reinstall from source.",
    ),
    name: str = typer.Option(
        None,
        "--name",
        "-n",
        help="File name of the installed binary.",
    ),
    cwd: Path = typer.Option(
        Path("."),
        "--cwd",
        "-C",
        help="Directory to install the binary into.",
    ),
    timeout: float = typer.Option(
        None,
        "--timeout",
        help="Seconds the binary check may take.",
    ),
) -> None:
    """Install the binary, restoring it from the cache when possible."""
    renderer = EventRenderer(console)
    try:
        stream = install(
            LocalBinaryProducer(source, chunk_size=settings.chunk_size),
            parse_options(
                {
                    "force_reinstall": force_reinstall,
                    "version": version,
                    "rename": (lambda _default: name) if name else None,
                    "cwd": cwd,
                    "check_timeout": timeout,
                }
            ),
            config=settings,
        )
    except InstallOptionsError as exc:
        console.print(f"[red]Invalid options:[/red] {escape(str(exc))}")
        raise typer.Exit(code=2)

    try:
        asyncio.run(_consume(stream, renderer))
    except KeyboardInterrupt:
        console.print("[yellow]Installation cancelled.[/yellow]")
        raise typer.Exit(code=130)
    except Exception as exc:
        console.print(f"[bold red]Installation failed:[/bold red] {escape(str(exc))}")
        raise typer.Exit(code=1)

    target = cwd.absolute() / (name or DEFAULT_BIN_NAME)
    console.print(f"[bold green]Installed[/bold green] {target}")
