"""Artifact producer backends.

Defines the ``ArtifactProducer`` Protocol the installation pipeline
delegates to on a cache miss, along with ``LocalBinaryProducer``, which
installs a prebuilt binary from the local file system.

A producer reports progress as an ``EventStream`` of its own event kinds;
the pipeline forwards those events unchanged. When the stream ends without
error, the binary must exist at the target path and be executable.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import stat
from pathlib import Path
from typing import Protocol, runtime_checkable

from pursinstall.core.stream import Emit, EventStream
from pursinstall.models.events import InstallEvent
from pursinstall.models.options import InstallOptions, InstallOptionsError

logger = logging.getLogger(__name__)

DEFAULT_VERSION = "0.15.15"

# Flags accepted by ``stack build`` when the compiler is built from source.
SUPPORTED_BUILD_FLAGS: tuple[str, ...] = (
    "--dry-run",
    "--pedantic",
    "--fast",
    "--only-snapshot",
    "--only-dependencies",
    "--only-configure",
    "--trace",
    "--profile",
    "--no-strip",
    "--coverage",
    "--no-run-tests",
    "--no-run-benchmarks",
    "--reconfigure",
    "--cabal-verbose",
    "--split-objs",
    "--skip-ghc-check",
    "--skip-msys",
    "--local-bin-path",
    "--ghc-options",
    "--flag",
    "--ghc-build",
    "--ghc-variant",
    "--jobs",
    "--work-dir",
    "--silent",
    "--verbose",
    "--verbosity",
    "--stack-root",
    "--stack-yaml",
    "--resolver",
    "--compiler",
)

_EXECUTABLE_BITS = stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH


class ProducerError(RuntimeError):
    """Raised when a producer cannot deliver the binary."""


@runtime_checkable
class ArtifactProducer(Protocol):
    """Protocol for binary acquisition backends (download or build)."""

    default_version: str
    supported_build_flags: tuple[str, ...]

    def validate_options(self, options: InstallOptions) -> None:
        """Raise ``InstallOptionsError`` for options this producer rejects.

        Called synchronously before any installation work starts.
        """
        ...

    def produce(self, options: InstallOptions, target: Path) -> EventStream:
        """Return a cold stream that places the binary at *target*."""
        ...


def validate_build_flags(flags: tuple[str, ...], supported: tuple[str, ...]) -> None:
    unknown = [flag for flag in flags if flag.split("=", 1)[0] not in supported]
    if unknown:
        raise InstallOptionsError(
            f"Unsupported build flag(s): {', '.join(unknown)}. "
            f"Supported: {', '.join(supported)}"
        )


class LocalBinaryProducer:
    """Installs a prebuilt binary by copying it from *source*.

    Emits ``copy-binary`` (with the source path) before copying and
    ``copy-binary:complete`` once the target is in place and executable.

    Parameters
    ----------
    source:
        Path of the prebuilt binary.
    default_version:
        Version reported when the caller does not ask for one.
    """

    supported_build_flags: tuple[str, ...] = SUPPORTED_BUILD_FLAGS

    def __init__(
        self,
        source: Path,
        *,
        default_version: str = DEFAULT_VERSION,
        chunk_size: int = 64 * 1024,
    ) -> None:
        self.source = Path(source)
        self.default_version = default_version
        self.chunk_size = chunk_size

    def validate_options(self, options: InstallOptions) -> None:
        validate_build_flags(options.build_flags, self.supported_build_flags)

    def produce(self, options: InstallOptions, target: Path) -> EventStream:
        async def worker(emit: Emit) -> None:
            await emit(InstallEvent.of("copy-binary", path=self.source))
            try:
                await asyncio.to_thread(self._copy, target)
            except OSError as exc:
                raise ProducerError(
                    f"Failed to install {self.source} to {target}: {exc}"
                ) from exc
            logger.info("Installed %s from %s", target, self.source)
            await emit(InstallEvent.of("copy-binary:complete", path=target))

        return EventStream(worker)

    def _copy(self, target: Path) -> None:
        if not self.source.is_file():
            raise FileNotFoundError(f"No binary at {self.source}")
        target.parent.mkdir(parents=True, exist_ok=True)
        with open(self.source, "rb") as src, open(target, "wb") as dst:
            shutil.copyfileobj(src, dst, self.chunk_size)
        mode = stat.S_IMODE(self.source.stat().st_mode)
        os.chmod(target, mode | _EXECUTABLE_BITS)
