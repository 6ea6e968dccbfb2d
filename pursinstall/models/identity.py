"""Artifact identity — which variant of the binary a request wants."""

from __future__ import annotations

import platform as _platform
import sys

from pydantic import BaseModel, ConfigDict

_ARCH_ALIASES: dict[str, str] = {
    "x86_64": "x64",
    "amd64": "x64",
    "i386": "ia32",
    "i686": "ia32",
    "x86": "ia32",
    "aarch64": "arm64",
    "armv7l": "arm",
}


def current_platform() -> str:
    """Return the running platform name (``linux``, ``darwin``, ``win32``...)."""
    return sys.platform


def current_arch() -> str:
    """Return the normalized CPU architecture of the running interpreter."""
    machine = _platform.machine().lower()
    return _ARCH_ALIASES.get(machine, machine or "unknown")


class Identity(BaseModel):
    """Composite (version, platform, arch) identity of an installed binary.

    The identity is fixed for the lifetime of one installation request. Its
    ``cache_id`` is stored in cache entry metadata so a foreign or stale
    entry can be told apart from a usable one.
    """

    model_config = ConfigDict(frozen=True)

    version: str
    platform: str
    arch: str

    @classmethod
    def for_version(cls, version: str) -> Identity:
        """Build the identity of *version* on the running platform."""
        return cls(version=version, platform=current_platform(), arch=current_arch())

    @property
    def cache_id(self) -> str:
        return f"{self.version}-{self.platform}-{self.arch}"

    def matches(self, metadata: dict[str, object]) -> bool:
        """Whether an entry's metadata was written for this identity."""
        return metadata.get("id") == self.cache_id
