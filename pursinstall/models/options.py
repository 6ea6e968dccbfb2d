"""Caller-facing installation options."""

from __future__ import annotations

import os
import sys
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, StrictBool, ValidationError

DEFAULT_BIN_NAME = "purs.exe" if sys.platform == "win32" else "purs"


class InstallOptionsError(TypeError):
    """Raised when installation options are malformed.

    Always raised synchronously, before any installation work starts.
    """


class InstallOptions(BaseModel):
    """Options recognized by :func:`pursinstall.install`.

    Unrecognized fields are kept and passed through to the artifact
    producer untouched.
    """

    model_config = ConfigDict(frozen=True, extra="allow", arbitrary_types_allowed=True)

    force_reinstall: StrictBool = False
    version: str | None = None
    rename: Callable[[str], Any] | None = None
    cwd: Path | None = None
    check_timeout: float | None = Field(default=None, gt=0)
    env: dict[str, str] | None = None
    build_flags: tuple[str, ...] = ()

    @property
    def extras(self) -> dict[str, Any]:
        """Fields not recognized by the installer itself."""
        return dict(self.model_extra or {})

    def bin_name(self) -> str:
        if self.rename is None:
            return DEFAULT_BIN_NAME
        return os.path.normpath(str(self.rename(DEFAULT_BIN_NAME)))

    def target_path(self) -> Path:
        """Absolute path the binary is installed at."""
        base = self.cwd if self.cwd is not None else Path.cwd()
        return Path(base).absolute() / self.bin_name()


def parse_options(options: InstallOptions | Mapping[str, Any] | None) -> InstallOptions:
    """Coerce caller input into ``InstallOptions``.

    Raises
    ------
    InstallOptionsError
        When *options* is not a mapping or fails validation.
    """
    if options is None:
        return InstallOptions()
    if isinstance(options, InstallOptions):
        return options
    if not isinstance(options, Mapping):
        raise InstallOptionsError(
            f"Expected a mapping to set install options, but got "
            f"{options!r} ({type(options).__name__})."
        )
    try:
        return InstallOptions.model_validate(dict(options))
    except ValidationError as exc:
        raise InstallOptionsError(f"Invalid install options: {exc}") from exc
