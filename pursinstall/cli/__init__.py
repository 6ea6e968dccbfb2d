"""purs-install CLI — Typer-based command-line interface.

Provides the ``purs-install`` command with subcommands for installing the
binary and inspecting the cache. All output uses Rich for formatted
terminal display.
"""
