"""Cache gate — decides whether a cached binary is usable and installs it.

The gate looks the binary up in the content store, restores a matching
entry to the target path with its stored file mode, and runs the restored
binary with ``--version`` to prove it works. Any miss, stale entry, restore
fault or failed probe hands control back to the pipeline, which rebuilds.
Faults that implicate the cached entry mark it broken so the pipeline
purges it before rebuilding.
"""

from __future__ import annotations

import asyncio
import errno
import logging
import os
from collections.abc import Awaitable
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict

from pursinstall.core.content_store import ContentStore, StoreError
from pursinstall.core.state_machine import InstallStateMachine
from pursinstall.core.stream import Emit
from pursinstall.models.artifacts import CacheEntry
from pursinstall.models.events import EventKind, InstallEvent, StageError
from pursinstall.models.identity import Identity
from pursinstall.models.states import InstallState

logger = logging.getLogger(__name__)

CACHE_KEY = "purs-install:binary"
DEFAULT_CHECK_TIMEOUT = 8.0
DEFAULT_MODE = 0o755
PROBE_ARGS: tuple[str, ...] = ("--version",)


class TargetConflictError(IsADirectoryError):
    """Raised when a directory occupies the path the binary must go to."""

    def __init__(self, path: Path) -> None:
        super().__init__(
            errno.EISDIR,
            f"Tried to create a binary at {path}, but a directory already exists there",
            str(path),
        )
        self.path = path


class BinaryCheckError(RuntimeError):
    """Raised when the installed binary fails its ``--version`` probe."""

    def __init__(self, message: str, *, returncode: int | None = None, stderr: str = "") -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class CacheStatus(str, Enum):
    HIT = "hit"
    MISS = "miss"
    STALE = "stale"


class CacheLookup(BaseModel):
    """Result of looking the requested identity up in the store."""

    model_config = ConfigDict(frozen=True)

    status: CacheStatus
    entry: CacheEntry | None = None


class GateResult(BaseModel):
    """What the gate leaves for the pipeline to do."""

    model_config = ConfigDict(frozen=True)

    installed: bool
    broken_cache: bool = False


async def _join_first_error(*aws: Awaitable[Any]) -> list[Any]:
    """Await *aws* concurrently; the first exception cancels the rest."""
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        for task in tasks:
            if task in done and task.exception() is not None:
                raise task.exception()  # type: ignore[misc]
        return [task.result() for task in tasks]
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


class CacheGate:
    """Restore-then-verify path of a single installation request.

    Parameters
    ----------
    store:
        Content store holding the cached binary.
    identity:
        Identity the request asks for.
    target:
        Absolute path the binary is installed at.
    key:
        Store key the binary is cached under.
    check_timeout:
        Seconds the ``--version`` probe may run before it counts as failed.
    env:
        Extra environment variables for the probe.
    cwd:
        Working directory of the probe.
    machine:
        State machine of the request; a private one is created if omitted.
    """

    def __init__(
        self,
        store: ContentStore,
        identity: Identity,
        target: Path,
        *,
        key: str = CACHE_KEY,
        check_timeout: float = DEFAULT_CHECK_TIMEOUT,
        env: dict[str, str] | None = None,
        cwd: Path | None = None,
        machine: InstallStateMachine | None = None,
    ) -> None:
        self.store = store
        self.identity = identity
        self.target = Path(target)
        self.key = key
        self.check_timeout = check_timeout
        self.env = env
        self.cwd = cwd
        self.machine = machine or InstallStateMachine(str(self.target))
        self.probe_count = 0

    # ------------------------------------------------------------------
    # Target path
    # ------------------------------------------------------------------

    async def ensure_no_conflict(self) -> None:
        """Raise ``TargetConflictError`` if a directory sits at the target."""
        if await asyncio.to_thread(self.target.is_dir):
            raise TargetConflictError(self.target)

    async def _clear_target(self) -> bool:
        """Delete a stale file at the target; a directory is a conflict."""
        def clear() -> bool:
            try:
                if self.target.is_dir():
                    raise TargetConflictError(self.target)
                self.target.unlink()
            except FileNotFoundError:
                pass
            except TargetConflictError:
                raise
            except OSError as exc:
                logger.warning("Could not remove existing file at %s: %s", self.target, exc)
                return False
            return True

        return await asyncio.to_thread(clear)

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    async def _find_entry(self) -> CacheEntry | None:
        try:
            return await self.store.get_info(self.key)
        except StoreError as exc:
            logger.debug("Cache lookup for %r missed: %s", self.key, exc)
            return None
        except Exception as exc:
            logger.warning("Cache lookup for %r failed, treating as a miss: %s", self.key, exc)
            return None

    async def lookup(self) -> CacheLookup:
        """Look the identity up while clearing the target path.

        Raises
        ------
        TargetConflictError
            When a directory occupies the target, whatever the cache holds.
        """
        entry, cleared = await _join_first_error(self._find_entry(), self._clear_target())
        if entry is None:
            logger.info("No cached binary for %s", self.identity.cache_id)
            return CacheLookup(status=CacheStatus.MISS)
        if not self.identity.matches(entry.metadata):
            logger.info(
                "Cached binary is for %s, not %s",
                entry.metadata.get("id"),
                self.identity.cache_id,
            )
            return CacheLookup(status=CacheStatus.STALE, entry=entry)
        if not cleared:
            logger.info("Cannot restore over %s, treating the cache as a miss", self.target)
            return CacheLookup(status=CacheStatus.MISS)
        logger.info("Found cached binary for %s at %s", self.identity.cache_id, entry.path)
        return CacheLookup(status=CacheStatus.HIT, entry=entry)

    # ------------------------------------------------------------------
    # Restore and verify
    # ------------------------------------------------------------------

    async def restore(self, entry: CacheEntry) -> None:
        """Copy the cached content to the target and apply its file mode.

        Raises
        ------
        StageError
            Tagged ``restore-cache``; the partial target is removed.
        """
        try:
            fh = await asyncio.to_thread(open, self.target, "wb")
            try:
                async for chunk in self.store.read_chunks(entry):
                    await asyncio.to_thread(fh.write, chunk)
            finally:
                await asyncio.to_thread(fh.close)
            mode = entry.mode if entry.mode is not None else DEFAULT_MODE
            await asyncio.to_thread(os.chmod, self.target, mode)
        except Exception as exc:
            self.target.unlink(missing_ok=True)
            raise StageError(EventKind.RESTORE_CACHE.value, exc) from exc

    async def verify(self) -> str:
        """Run the target with ``--version`` under the probe timeout.

        Returns the probe's trimmed stdout.

        Raises
        ------
        StageError
            Tagged ``check-binary`` on spawn failure, timeout or non-zero exit.
        """
        self.probe_count += 1
        try:
            return await self._probe()
        except Exception as exc:
            raise StageError(EventKind.CHECK_BINARY.value, exc) from exc

    async def _probe(self) -> str:
        env = {**os.environ, **self.env} if self.env else None
        proc = await asyncio.create_subprocess_exec(
            str(self.target),
            *PROBE_ARGS,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=self.cwd,
            env=env,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), self.check_timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise BinaryCheckError(
                f"{self.target} {' '.join(PROBE_ARGS)} timed out after {self.check_timeout}s"
            ) from None
        except asyncio.CancelledError:
            proc.kill()
            await asyncio.shield(proc.wait())
            raise
        if proc.returncode != 0:
            message = stderr.decode(errors="replace").strip()
            raise BinaryCheckError(
                f"{self.target} {' '.join(PROBE_ARGS)} exited with {proc.returncode}: {message}",
                returncode=proc.returncode,
                stderr=message,
            )
        return stdout.decode(errors="replace").strip()

    # ------------------------------------------------------------------
    # Orchestration
    # ------------------------------------------------------------------

    async def run(self, emit: Emit) -> GateResult:
        """Run lookup, restore and verify, emitting their events.

        Raises ``TargetConflictError``; every other fault is reported as a
        ``*:fail`` event and turned into a rebuild request.
        """
        self.machine.transition(InstallState.SEARCHING)
        try:
            found = await self.lookup()
        except TargetConflictError:
            self.machine.transition(InstallState.FAILED, reason="target conflict")
            raise

        if found.status is not CacheStatus.HIT or found.entry is None:
            await emit(InstallEvent.of(EventKind.SEARCH_CACHE, found=False))
            return GateResult(installed=False, broken_cache=found.status is CacheStatus.STALE)

        entry = found.entry
        await emit(InstallEvent.of(EventKind.SEARCH_CACHE, found=True, path=entry.path))

        self.machine.transition(InstallState.RESTORING)
        await emit(InstallEvent.of(EventKind.RESTORE_CACHE))
        try:
            await self.restore(entry)
        except StageError as exc:
            logger.warning("Restoring cached binary failed, rebuilding: %s", exc)
            await emit(InstallEvent.failure(EventKind.RESTORE_CACHE_FAIL, exc.stage, exc))
            return GateResult(installed=False, broken_cache=True)
        await emit(InstallEvent.of(EventKind.RESTORE_CACHE_COMPLETE))

        self.machine.transition(InstallState.VERIFYING)
        await emit(InstallEvent.of(EventKind.CHECK_BINARY))
        try:
            version = await self.verify()
        except StageError as exc:
            logger.warning("Cached binary failed its check, rebuilding: %s", exc)
            await emit(InstallEvent.failure(EventKind.CHECK_BINARY_FAIL, exc.stage, exc))
            return GateResult(installed=False, broken_cache=True)
        logger.info("Restored %s (%s) from cache", self.target, version)
        await emit(InstallEvent.of(EventKind.CHECK_BINARY_COMPLETE))

        self.machine.transition(InstallState.DONE)
        return GateResult(installed=True)
