"""Shared test fixtures for pursinstall."""

from __future__ import annotations

import asyncio
import os
import shutil
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from pursinstall.config import InstallerSettings
from pursinstall.core.content_store import ContentStore
from pursinstall.core.pipeline import InstallationPipeline
from pursinstall.core.producer import (
    DEFAULT_VERSION,
    SUPPORTED_BUILD_FLAGS,
    validate_build_flags,
)
from pursinstall.core.stream import Emit, EventStream
from pursinstall.models.events import InstallEvent
from pursinstall.models.options import InstallOptions, parse_options

posix_only = pytest.mark.skipif(
    sys.platform == "win32", reason="test binaries are POSIX shell scripts"
)


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class RecordingProducer:
    """Producer double that copies *source* to the target.

    Emits ``produce`` then ``produce:complete``. Can be told to fail or to
    block forever after its first event; records calls and cancellation.
    """

    default_version = DEFAULT_VERSION
    supported_build_flags = SUPPORTED_BUILD_FLAGS

    def __init__(
        self,
        source: Path | None = None,
        *,
        error: Exception | None = None,
        block: bool = False,
    ) -> None:
        self.source = source
        self.error = error
        self.block = block
        self.calls = 0
        self.cancelled = False
        self.seen_options: list[InstallOptions] = []

    def validate_options(self, options: InstallOptions) -> None:
        validate_build_flags(options.build_flags, self.supported_build_flags)

    def produce(self, options: InstallOptions, target: Path) -> EventStream:
        self.calls += 1
        self.seen_options.append(options)

        async def worker(emit: Emit) -> None:
            try:
                await emit(InstallEvent.of("produce", path=target))
                if self.block:
                    await asyncio.Event().wait()
                if self.error is not None:
                    raise self.error
                assert self.source is not None
                shutil.copyfile(self.source, target)
                os.chmod(target, 0o755)
                await emit(InstallEvent.of("produce:complete"))
            except asyncio.CancelledError:
                self.cancelled = True
                raise

        return EventStream(worker)


class InstallRun:
    """Outcome of one installation driven to completion."""

    def __init__(
        self,
        pipeline: InstallationPipeline,
        events: list[InstallEvent],
        error: BaseException | None,
    ) -> None:
        self.pipeline = pipeline
        self.events = events
        self.error = error

    @property
    def kinds(self) -> list[str]:
        return [event.kind for event in self.events]

    def first(self, kind: str) -> InstallEvent:
        return next(event for event in self.events if event.kind == kind)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def config(tmp_path: Path) -> InstallerSettings:
    """Provide settings pointing at a temp cache root."""
    return InstallerSettings(
        cache_root=tmp_path / "cache",
        check_timeout_seconds=5.0,
        gc_grace_seconds=0.0,
    )


@pytest.fixture
def store(config: InstallerSettings) -> ContentStore:
    """Provide a fresh ContentStore under the temp cache root."""
    return ContentStore(config.cache_root, gc_grace_seconds=config.gc_grace_seconds)


@pytest.fixture
def workdir(tmp_path: Path) -> Path:
    """Directory the binary gets installed into."""
    path = tmp_path / "work"
    path.mkdir()
    return path


@pytest.fixture
def make_binary(tmp_path: Path) -> Callable[..., Path]:
    """Factory fixture: write an executable shell script standing in for purs."""
    counter = iter(range(1000))

    def _factory(
        version: str = DEFAULT_VERSION,
        *,
        exit_code: int = 0,
        sleep: float = 0,
        name: str | None = None,
    ) -> Path:
        path = tmp_path / (name or f"purs-src-{next(counter)}")
        lines = ["#!/bin/sh"]
        if sleep:
            lines.append(f"sleep {sleep}")
        lines.append(f'echo "{version}"')
        lines.append(f"exit {exit_code}")
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        path.chmod(0o755)
        return path

    return _factory


@pytest.fixture
def binary(make_binary: Callable[..., Path]) -> Path:
    """A working binary that prints the default version."""
    return make_binary()


@pytest.fixture
def run_install(
    store: ContentStore, config: InstallerSettings, workdir: Path
) -> Callable[..., InstallRun]:
    """Factory fixture: run one installation and capture its events."""

    def _run(
        producer: Any,
        options: dict[str, Any] | None = None,
        *,
        store_override: ContentStore | None = None,
    ) -> InstallRun:
        parsed = parse_options({"cwd": workdir, **(options or {})})
        producer.validate_options(parsed)
        pipeline = InstallationPipeline(
            producer, parsed, store=store_override or store, config=config
        )
        events: list[InstallEvent] = []

        async def consume() -> BaseException | None:
            try:
                async for event in pipeline.stream():
                    events.append(event)
            except Exception as exc:
                return exc
            return None

        error = asyncio.run(consume())
        return InstallRun(pipeline, events, error)

    return _run
