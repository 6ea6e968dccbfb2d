"""Key-indexed, content-addressed cache store.

Storage layout under the store root::

    index-v1/{h[0:2]}/{h}.json                 h = sha256(key)
    content-v1/sha256/{d[0:2]}/{d[2:4]}/{d}    d = sha256(content)
    tmp/                                       in-flight writes

An index record maps a key to the integrity of one content blob plus
caller metadata. Blobs and index records only become visible through an
atomic rename, so a reader never observes a half-written entry, and a
writer that is cancelled or fails leaves nothing behind but a temp file
that ``verify()`` collects later.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import os
import tempfile
import time
from collections.abc import AsyncIterator
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Any

from pydantic import ValidationError

from pursinstall.core.hasher import (
    canonical_json_bytes,
    digest_of,
    index_name,
    integrity_of,
)
from pursinstall.models.artifacts import CacheEntry, VerifyReport

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024


class StoreError(RuntimeError):
    """Base class for content store failures."""


class EntryNotFoundError(StoreError):
    """Raised when no usable index record exists for a key."""


class ContentIntegrityError(StoreError):
    """Raised when stored bytes do not hash to their recorded integrity."""


class ContentSizeError(StoreError):
    """Raised when a write delivers a different byte count than declared."""


class ContentStore:
    """Content-addressed blob store with a key index.

    Parameters
    ----------
    root:
        Root directory of the store. Created if missing.
    chunk_size:
        Read size used when streaming blobs.
    gc_grace_seconds:
        Unreferenced blobs and temp files younger than this are left alone
        by ``verify()``; another process may be about to commit them.
    """

    def __init__(
        self,
        root: Path,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        gc_grace_seconds: float = 600.0,
    ) -> None:
        self.root = Path(root)
        self.chunk_size = chunk_size
        self.gc_grace_seconds = gc_grace_seconds
        for sub in (self._index_dir, self._content_dir, self._tmp_dir):
            sub.mkdir(parents=True, exist_ok=True)

    @property
    def _index_dir(self) -> Path:
        return self.root / "index-v1"

    @property
    def _content_dir(self) -> Path:
        return self.root / "content-v1" / "sha256"

    @property
    def _tmp_dir(self) -> Path:
        return self.root / "tmp"

    def _index_path(self, key: str) -> Path:
        name = index_name(key)
        return self._index_dir / name[:2] / f"{name}.json"

    def content_path(self, integrity: str) -> Path:
        """Compute the blob path for an integrity string.

        Layout: {content}/{sha256[0:2]}/{sha256[2:4]}/{sha256}
        """
        digest = digest_of(integrity)
        return self._content_dir / digest[:2] / digest[2:4] / digest

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    async def get_info(self, key: str) -> CacheEntry:
        """Return the entry stored under *key*.

        Raises
        ------
        EntryNotFoundError
            When no record exists or the record cannot be parsed.
        """
        return await asyncio.to_thread(self.get_info_sync, key)

    def get_info_sync(self, key: str) -> CacheEntry:
        path = self._index_path(key)
        try:
            record = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError as exc:
            raise EntryNotFoundError(f"No cache entry for key {key!r}") from exc
        except (OSError, ValueError) as exc:
            raise EntryNotFoundError(f"Unreadable cache entry for key {key!r}: {exc}") from exc
        return self._entry_from_record(key, record)

    def _entry_from_record(self, key: str, record: Any) -> CacheEntry:
        if (
            not isinstance(record, dict)
            or record.get("key") != key
            or not isinstance(record.get("integrity"), str)
        ):
            raise EntryNotFoundError(f"Cache index record for {key!r} has invalid structure")
        try:
            return CacheEntry(
                key=key,
                integrity=record["integrity"],
                path=self.content_path(record["integrity"]),
                size=record["size"],
                metadata=record.get("metadata") or {},
                time=record.get("time") or datetime.now(timezone.utc),
            )
        except (KeyError, TypeError, ValueError, ValidationError) as exc:
            raise EntryNotFoundError(f"Cache index record for {key!r} is incomplete: {exc}") from exc

    async def read_chunks(self, entry: CacheEntry) -> AsyncIterator[bytes]:
        """Stream an entry's blob, checking its integrity once fully read.

        Raises
        ------
        ContentIntegrityError
            After the last chunk, when the bytes do not match the entry.
        """
        hasher = hashlib.sha256()
        size = 0
        fh = await asyncio.to_thread(open, entry.path, "rb")
        try:
            while True:
                chunk = await asyncio.to_thread(fh.read, self.chunk_size)
                if not chunk:
                    break
                hasher.update(chunk)
                size += len(chunk)
                yield chunk
        finally:
            await asyncio.to_thread(fh.close)
        if size != entry.size or integrity_of(hasher.hexdigest()) != entry.integrity:
            raise ContentIntegrityError(
                f"Cached content for {entry.key!r} is corrupt: expected "
                f"{entry.integrity} ({entry.size} bytes), got "
                f"{integrity_of(hasher.hexdigest())} ({size} bytes)"
            )

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def put_stream(
        self,
        key: str,
        *,
        size: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ContentWriter:
        """Open a writer that stores its bytes under *key* on commit.

        Use as ``async with store.put_stream(key, size=n) as sink:`` and call
        ``await sink.write(chunk)``. The entry is committed when the block
        exits cleanly and discarded otherwise.
        """
        return ContentWriter(self, key, size=size, metadata=metadata or {})

    def _commit(
        self,
        key: str,
        tmp_path: Path,
        digest: str,
        size: int,
        metadata: dict[str, Any],
    ) -> CacheEntry:
        integrity = integrity_of(digest)
        blob = self.content_path(integrity)
        blob.parent.mkdir(parents=True, exist_ok=True)
        os.replace(tmp_path, blob)

        record = {
            "key": key,
            "integrity": integrity,
            "size": size,
            "metadata": metadata,
            "time": datetime.now(timezone.utc).isoformat(),
        }
        index_path = self._index_path(key)
        index_path.parent.mkdir(parents=True, exist_ok=True)
        self._atomic_write(index_path, canonical_json_bytes(record))
        logger.debug("Committed %s (%d bytes) under %r", integrity, size, key)
        return self._entry_from_record(key, record)

    def _atomic_write(self, path: Path, data: bytes) -> None:
        fd, tmp_name = tempfile.mkstemp(dir=self._tmp_dir, prefix="index-")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    # ------------------------------------------------------------------
    # Removal and verification
    # ------------------------------------------------------------------

    async def remove_entry(self, key: str) -> bool:
        """Remove the index record for *key*.

        The blob is left for ``verify()`` to collect. Returns whether a
        record existed.
        """
        return await asyncio.to_thread(self.remove_entry_sync, key)

    def remove_entry_sync(self, key: str) -> bool:
        path = self._index_path(key)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        logger.debug("Removed cache index record for %r", key)
        return True

    async def verify(self) -> VerifyReport:
        """Check every entry and collect garbage. See ``verify_sync``."""
        return await asyncio.to_thread(self.verify_sync)

    def verify_sync(self) -> VerifyReport:
        """Bring the store back to a consistent state.

        - index records that cannot be parsed, or whose blob is missing or
          corrupt, are removed
        - corrupt blobs are removed
        - unreferenced blobs and temp files older than the grace period
          are removed
        """
        now = time.time()
        referenced: set[Path] = set()
        checked: dict[Path, bool] = {}
        verified = removed_entries = removed_content = reclaimed = removed_tmp = 0

        for index_path in sorted(self._index_dir.glob("*/*.json")):
            try:
                record = json.loads(index_path.read_text(encoding="utf-8"))
                entry = self._entry_from_record(record.get("key"), record)
            except (OSError, ValueError, AttributeError, StoreError):
                index_path.unlink(missing_ok=True)
                removed_entries += 1
                continue

            if entry.path not in checked:
                checked[entry.path] = self._blob_matches(entry)
            if checked[entry.path]:
                referenced.add(entry.path)
                verified += 1
            else:
                index_path.unlink(missing_ok=True)
                removed_entries += 1

        for blob, ok in checked.items():
            if not ok and blob.exists():
                reclaimed += blob.stat().st_size
                blob.unlink(missing_ok=True)
                removed_content += 1

        for blob in self._content_dir.glob("*/*/*"):
            if blob in referenced or blob in checked or not blob.is_file():
                continue
            stat = blob.stat()
            if now - stat.st_mtime >= self.gc_grace_seconds:
                blob.unlink(missing_ok=True)
                reclaimed += stat.st_size
                removed_content += 1

        for tmp in self._tmp_dir.iterdir():
            if tmp.is_file() and now - tmp.stat().st_mtime >= self.gc_grace_seconds:
                tmp.unlink(missing_ok=True)
                removed_tmp += 1

        report = VerifyReport(
            verified_entries=verified,
            removed_entries=removed_entries,
            removed_content=removed_content,
            reclaimed_bytes=reclaimed,
            removed_tmp=removed_tmp,
        )
        logger.debug("Verified cache store at %s: %s", self.root, report)
        return report

    def _blob_matches(self, entry: CacheEntry) -> bool:
        hasher = hashlib.sha256()
        size = 0
        try:
            with open(entry.path, "rb") as fh:
                for chunk in iter(lambda: fh.read(self.chunk_size), b""):
                    hasher.update(chunk)
                    size += len(chunk)
        except OSError:
            return False
        return size == entry.size and integrity_of(hasher.hexdigest()) == entry.integrity


class ContentWriter:
    """Writable sink returned by :meth:`ContentStore.put_stream`."""

    def __init__(
        self,
        store: ContentStore,
        key: str,
        *,
        size: int | None,
        metadata: dict[str, Any],
    ) -> None:
        self._store = store
        self._key = key
        self._expected_size = size
        self._metadata = metadata
        self._hasher = hashlib.sha256()
        self._written = 0
        self._fh: IO[bytes] | None = None
        self._tmp_path: Path | None = None
        self.entry: CacheEntry | None = None

    async def __aenter__(self) -> ContentWriter:
        fd, name = await asyncio.to_thread(
            tempfile.mkstemp, dir=self._store._tmp_dir, prefix="content-"
        )
        self._tmp_path = Path(name)
        self._fh = os.fdopen(fd, "wb")
        return self

    async def write(self, chunk: bytes) -> None:
        if self._fh is None:
            raise StoreError("ContentWriter used outside of its context")
        await asyncio.to_thread(self._fh.write, chunk)
        self._hasher.update(chunk)
        self._written += len(chunk)

    async def __aexit__(self, exc_type, exc, tb) -> None:
        assert self._fh is not None and self._tmp_path is not None
        await asyncio.to_thread(self._fh.close)
        if exc_type is not None:
            self._tmp_path.unlink(missing_ok=True)
            return
        if self._expected_size is not None and self._written != self._expected_size:
            self._tmp_path.unlink(missing_ok=True)
            raise ContentSizeError(
                f"Expected {self._expected_size} bytes for {self._key!r}, "
                f"got {self._written}"
            )
        try:
            self.entry = await asyncio.to_thread(
                self._store._commit,
                self._key,
                self._tmp_path,
                self._hasher.hexdigest(),
                self._written,
                self._metadata,
            )
        except BaseException:
            self._tmp_path.unlink(missing_ok=True)
            raise
