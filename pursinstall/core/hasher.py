"""Canonical hashing helpers for content addressing and index records.

Index records are written as canonical JSON so two writers producing the
same record produce byte-identical files.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any


def canonical_json_bytes(obj: Any) -> bytes:
    """Produce canonical JSON bytes — deterministic, sorted, compact."""
    return json.dumps(
        obj, sort_keys=True, separators=(",", ":"), ensure_ascii=True
    ).encode("utf-8")


def sha256_hex(data: bytes) -> str:
    """Return the SHA-256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def integrity_of(digest: str) -> str:
    """Format a hex digest as an integrity string (``sha256:<hex>``)."""
    return f"sha256:{digest}"


def digest_of(integrity: str) -> str:
    """Strip the ``sha256:`` prefix from an integrity string, if present."""
    return integrity.removeprefix("sha256:")


def index_name(key: str) -> str:
    """Return the file-system-safe name of the index record for *key*."""
    return sha256_hex(key.encode("utf-8"))
