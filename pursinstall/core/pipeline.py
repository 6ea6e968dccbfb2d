"""Installation pipeline — the single entry point for installing the binary.

The pipeline wires the content store, cache gate and artifact producer
into one cancellable event stream:

1. Unless a reinstall is forced, the cache gate tries to restore and
   verify a cached binary.
2. On a miss, stale entry, or failed restore/verify, the rebuild path
   purges the broken entry and checks the store (both best-effort), runs
   the producer, and forwards its events.
3. After a successful rebuild the new binary is written back to the cache.
   A failed write-back is reported but does not fail the installation.
"""

from __future__ import annotations

import asyncio
import logging
import os
import stat
from collections.abc import Mapping
from typing import Any

from pursinstall.config import InstallerSettings, cache_root, settings as default_settings
from pursinstall.core.cache_gate import CACHE_KEY, CacheGate, TargetConflictError
from pursinstall.core.content_store import ContentStore
from pursinstall.core.producer import ArtifactProducer
from pursinstall.core.state_machine import InstallStateMachine
from pursinstall.core.stream import Emit, EventStream
from pursinstall.models.events import EventKind, InstallEvent
from pursinstall.models.identity import Identity
from pursinstall.models.options import InstallOptions, parse_options
from pursinstall.models.states import InstallState

logger = logging.getLogger(__name__)


def open_store(config: InstallerSettings | None = None) -> ContentStore:
    """Open the shared content store under the configured cache root."""
    config = config or default_settings
    return ContentStore(
        cache_root(config),
        chunk_size=config.chunk_size,
        gc_grace_seconds=config.gc_grace_seconds,
    )


class InstallationPipeline:
    """Runs one installation request.

    Parameters
    ----------
    producer:
        Backend that downloads or builds the binary on a cache miss.
    options:
        Validated caller options.
    store:
        Content store; the shared store under the cache root if omitted.
    config:
        Installer settings; the module-level settings if omitted.
    """

    def __init__(
        self,
        producer: ArtifactProducer,
        options: InstallOptions,
        *,
        store: ContentStore | None = None,
        config: InstallerSettings | None = None,
    ) -> None:
        self.producer = producer
        self.options = options
        self.config = config or default_settings
        self.store = store or open_store(self.config)

        self.target = options.target_path()
        self.identity = Identity.for_version(options.version or producer.default_version)
        self.machine = InstallStateMachine(str(self.target))
        self.gate = CacheGate(
            self.store,
            self.identity,
            self.target,
            key=CACHE_KEY,
            check_timeout=options.check_timeout or self.config.check_timeout_seconds,
            env=options.env,
            cwd=self.target.parent,
            machine=self.machine,
        )
        self._subscriptions: set[EventStream] = set()

    # ------------------------------------------------------------------
    # Stream
    # ------------------------------------------------------------------

    def stream(self) -> EventStream:
        """Return the cold event stream of this installation."""
        return EventStream(
            self._run,
            maxsize=self.config.channel_size,
            on_cancel=self._cancel_subscriptions,
        )

    def _cancel_subscriptions(self) -> None:
        for subscription in list(self._subscriptions):
            subscription.cancel()

    async def _run(self, emit: Emit) -> None:
        if self.options.force_reinstall:
            try:
                await self.gate.ensure_no_conflict()
            except TargetConflictError:
                self.machine.transition(InstallState.FAILED, reason="target conflict")
                raise
            await self._rebuild(emit, purge=True, reason="forced reinstall")
            return

        result = await self.gate.run(emit)
        if result.installed:
            return
        await self._rebuild(
            emit,
            purge=result.broken_cache,
            reason="broken cache" if result.broken_cache else "cache miss",
        )

    # ------------------------------------------------------------------
    # Rebuild path
    # ------------------------------------------------------------------

    async def _purge_entry(self) -> None:
        try:
            await self.store.remove_entry(CACHE_KEY)
        except Exception as exc:
            logger.debug("Ignoring failure to purge cache entry %r: %s", CACHE_KEY, exc)

    async def _verify_store(self) -> None:
        try:
            report = await self.store.verify()
        except Exception as exc:
            logger.debug("Ignoring cache store verification failure: %s", exc)
            return
        if report.removed_entries or report.removed_content:
            logger.info("Cache store repaired: %s", report)

    async def _clean_cache(self, purge: bool) -> None:
        cleanups = [self._verify_store()]
        if purge:
            cleanups.insert(0, self._purge_entry())
        await asyncio.gather(*cleanups)

    async def _rebuild(self, emit: Emit, *, purge: bool, reason: str) -> None:
        self.machine.transition(InstallState.REBUILDING, reason=reason)
        logger.info("Installing %s %s (%s)", self.target, self.identity.cache_id, reason)
        cleaning = asyncio.ensure_future(self._clean_cache(purge))
        try:
            try:
                await self._forward_producer(emit)
            except Exception:
                # The cleanup settles before the error reaches the caller.
                await cleaning
                self.machine.transition(InstallState.FAILED, reason="producer error")
                raise

            await emit(InstallEvent.of(EventKind.WRITE_CACHE))
            await cleaning
            try:
                await self._write_back()
            except Exception as exc:
                logger.warning("Could not write %s to the cache: %s", self.target, exc)
                await emit(
                    InstallEvent.failure(
                        EventKind.WRITE_CACHE_FAIL, EventKind.WRITE_CACHE.value, exc
                    )
                )
            else:
                await emit(InstallEvent.of(EventKind.WRITE_CACHE_COMPLETE))
            self.machine.transition(InstallState.DONE)
        finally:
            if not cleaning.done():
                cleaning.cancel()

    async def _forward_producer(self, emit: Emit) -> None:
        subscription = self.producer.produce(self.options, self.target)
        self._subscriptions.add(subscription)
        try:
            async for event in subscription:
                await emit(event)
        finally:
            self._subscriptions.discard(subscription)
            await subscription.aclose()

    async def _write_back(self) -> None:
        st = await asyncio.to_thread(os.lstat, self.target)
        metadata = {"id": self.identity.cache_id, "mode": stat.S_IMODE(st.st_mode)}
        async with self.store.put_stream(CACHE_KEY, size=st.st_size, metadata=metadata) as sink:
            fh = await asyncio.to_thread(open, self.target, "rb")
            try:
                while chunk := await asyncio.to_thread(fh.read, self.config.chunk_size):
                    await sink.write(chunk)
            finally:
                await asyncio.to_thread(fh.close)
        logger.info("Cached %s as %s", self.target, self.identity.cache_id)


def install(
    producer: ArtifactProducer,
    options: InstallOptions | Mapping[str, Any] | None = None,
    *,
    store: ContentStore | None = None,
    config: InstallerSettings | None = None,
) -> EventStream:
    """Install the binary into ``options.cwd`` (default: the working directory).

    Returns a cold ``EventStream``: iterating it runs the installation,
    closing it cancels the installation.

    Raises
    ------
    InstallOptionsError
        Synchronously, when *options* are malformed or rejected by the
        producer.
    """
    parsed = parse_options(options)
    producer.validate_options(parsed)
    return InstallationPipeline(producer, parsed, store=store, config=config).stream()
