"""Main Typer application — imports and registers all CLI commands.

Entry point: ``purs-install`` (configured via pyproject.toml scripts).
"""

from __future__ import annotations

import logging

import typer
from rich.logging import RichHandler

from pursinstall.cli.commands.cache import cache_cmd
from pursinstall.cli.commands.install import install_cmd
from pursinstall.config import settings

app = typer.Typer(
    name="purs-install",
    help="Install the PureScript compiler binary through a local cache.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)

app.command(name="install", help="Install the binary into a directory.")(install_cmd)
app.command(name="cache", help="Show or clear the binary cache.")(cache_cmd)


@app.callback()
def configure_logging(
    verbose: bool = typer.Option(False, "--verbose", help="Log debug output."),
) -> None:
    """Route log records through Rich."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else settings.log_level,
        format="%(message)s",
        handlers=[RichHandler(show_path=False)],
    )


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
