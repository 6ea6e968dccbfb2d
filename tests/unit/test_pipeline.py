"""Tests for InstallationPipeline — cache hits, fallbacks, write-back, cancellation."""

from __future__ import annotations

import asyncio
import json
import stat
from pathlib import Path

import pytest

from pursinstall.core.cache_gate import CACHE_KEY, BinaryCheckError, TargetConflictError
from pursinstall.core.content_store import ContentStore, EntryNotFoundError, StoreError
from pursinstall.core.hasher import index_name
from pursinstall.core.pipeline import InstallationPipeline, install
from pursinstall.core.producer import DEFAULT_VERSION, ProducerError
from pursinstall.models.events import EventKind, StageError
from pursinstall.models.identity import Identity
from pursinstall.models.options import (
    DEFAULT_BIN_NAME,
    InstallOptions,
    InstallOptionsError,
    parse_options,
)
from pursinstall.models.states import InstallState

from tests.conftest import RecordingProducer, posix_only

pytestmark = posix_only

REBUILD_TAIL = ["produce", "produce:complete", "write-cache", "write-cache:complete"]
RESTORE_SEQUENCE = [
    "search-cache",
    "restore-cache",
    "restore-cache:complete",
    "check-binary",
    "check-binary:complete",
]


def _seed(store: ContentStore, data: bytes, *, cache_id: str, mode: int = 0o755) -> None:
    """Write an entry straight into the store."""

    async def put() -> None:
        async with store.put_stream(
            CACHE_KEY, size=len(data), metadata={"id": cache_id, "mode": mode}
        ) as sink:
            await sink.write(data)

    asyncio.run(put())


def _default_id() -> str:
    return Identity.for_version(DEFAULT_VERSION).cache_id


class SpyStore(ContentStore):
    """Content store recording purge calls."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.removed: list[str] = []

    async def remove_entry(self, key: str) -> bool:
        self.removed.append(key)
        return await super().remove_entry(key)


class BrokenWriteStore(ContentStore):
    """Content store whose writes always fail."""

    def put_stream(self, key, *, size=None, metadata=None):
        raise StoreError("disk full")


class HangingVerifyStore(ContentStore):
    """Content store whose verify never finishes until cancelled."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.verify_cancelled = False

    async def verify(self):
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.verify_cancelled = True
            raise


class BrokenCleanupStore(ContentStore):
    """Content store whose purge and verify always fail."""

    async def remove_entry(self, key: str) -> bool:
        raise StoreError("cannot remove")

    async def verify(self):
        raise StoreError("cannot verify")


# ---------------------------------------------------------------------------
# Test: Empty cache
# ---------------------------------------------------------------------------


class TestEmptyCache:
    def test_miss_rebuilds_and_writes_back(self, run_install, binary, store, workdir):
        producer = RecordingProducer(binary)
        run = run_install(producer)

        assert run.error is None
        assert run.kinds == ["search-cache"] + REBUILD_TAIL
        assert run.first("search-cache").found is False
        assert producer.calls == 1

        target = workdir / DEFAULT_BIN_NAME
        assert target.read_bytes() == binary.read_bytes()
        entry = store.get_info_sync(CACHE_KEY)
        assert entry.metadata["id"] == _default_id()
        assert entry.metadata["mode"] == stat.S_IMODE(target.stat().st_mode)

    def test_miss_never_restores_or_checks(self, run_install, binary):
        run = run_install(RecordingProducer(binary))
        assert not any(k.startswith(("restore-cache", "check-binary")) for k in run.kinds)

    def test_state_machine_ends_done(self, run_install, binary):
        run = run_install(RecordingProducer(binary))
        machine = run.pipeline.machine
        assert machine.state == InstallState.DONE
        assert machine.visits(InstallState.REBUILDING) == 1

    def test_existing_file_at_target_is_replaced(self, run_install, binary, workdir):
        (workdir / DEFAULT_BIN_NAME).write_text("old", encoding="utf-8")
        run = run_install(RecordingProducer(binary))
        assert run.error is None
        assert (workdir / DEFAULT_BIN_NAME).read_bytes() == binary.read_bytes()


# ---------------------------------------------------------------------------
# Test: Cache hit and round trip
# ---------------------------------------------------------------------------


class TestCacheHit:
    def test_second_install_restores_from_cache(self, run_install, binary, workdir):
        run_install(RecordingProducer(binary))
        (workdir / DEFAULT_BIN_NAME).unlink()

        producer = RecordingProducer(binary)
        run = run_install(producer)

        assert run.error is None
        assert run.kinds == RESTORE_SEQUENCE
        assert producer.calls == 0

    def test_hit_reports_content_path(self, run_install, binary, store):
        run_install(RecordingProducer(binary))
        run = run_install(RecordingProducer(binary))

        event = run.first("search-cache")
        assert event.found is True
        assert event.path == store.get_info_sync(CACHE_KEY).path

    def test_round_trip_preserves_bytes_and_mode(self, run_install, binary, workdir):
        run_install(RecordingProducer(binary))
        target = workdir / DEFAULT_BIN_NAME
        original_bytes = target.read_bytes()
        original_mode = stat.S_IMODE(target.stat().st_mode)
        target.unlink()

        run_install(RecordingProducer(binary))

        assert target.read_bytes() == original_bytes
        assert stat.S_IMODE(target.stat().st_mode) == original_mode
        assert target.stat().st_mode & stat.S_IXUSR

    def test_hit_runs_exactly_one_probe(self, run_install, binary):
        run_install(RecordingProducer(binary))
        run = run_install(RecordingProducer(binary))
        assert run.pipeline.gate.probe_count == 1
        assert run.pipeline.machine.visits(InstallState.REBUILDING) == 0


# ---------------------------------------------------------------------------
# Test: Stale and broken entries
# ---------------------------------------------------------------------------


class TestStaleEntry:
    def test_foreign_identity_is_a_miss(self, run_install, binary, config, make_binary):
        store = SpyStore(config.cache_root, gc_grace_seconds=0)
        _seed(store, make_binary("0.0.1").read_bytes(), cache_id="0.0.1-linux-x64")

        producer = RecordingProducer(binary)
        run = run_install(producer, store_override=store)

        assert run.error is None
        assert run.kinds == ["search-cache"] + REBUILD_TAIL
        assert run.first("search-cache").found is False
        assert store.removed == [CACHE_KEY]
        assert producer.calls == 1
        assert store.get_info_sync(CACHE_KEY).metadata["id"] == _default_id()

    def test_entry_without_identity_is_stale(self, run_install, binary, config):
        store = SpyStore(config.cache_root, gc_grace_seconds=0)
        _seed(store, binary.read_bytes(), cache_id="")

        run = run_install(RecordingProducer(binary), store_override=store)

        assert "restore-cache" not in run.kinds
        assert store.removed == [CACHE_KEY]

    def test_plain_miss_does_not_purge(self, run_install, binary, config):
        store = SpyStore(config.cache_root, gc_grace_seconds=0)
        run_install(RecordingProducer(binary), store_override=store)
        assert store.removed == []


class TestBrokenEntry:
    def test_corrupt_content_rebuilds_once(self, run_install, binary, store):
        run_install(RecordingProducer(binary))
        entry = store.get_info_sync(CACHE_KEY)
        entry.path.write_bytes(b"garbage")

        producer = RecordingProducer(binary)
        run = run_install(producer)

        assert run.error is None
        assert run.kinds == [
            "search-cache",
            "restore-cache",
            "restore-cache:fail",
        ] + REBUILD_TAIL
        assert producer.calls == 1
        assert run.pipeline.machine.visits(InstallState.REBUILDING) == 1

        error = run.first("restore-cache:fail").error
        assert isinstance(error, StageError)
        assert error.stage == "restore-cache"

        report = store.verify_sync()
        assert report.verified_entries == 1
        assert report.removed_entries == 0
        assert store.get_info_sync(CACHE_KEY).path.read_bytes() == binary.read_bytes()

    def test_missing_content_rebuilds(self, run_install, binary, store):
        run_install(RecordingProducer(binary))
        store.get_info_sync(CACHE_KEY).path.unlink()

        run = run_install(RecordingProducer(binary))
        assert "restore-cache:fail" in run.kinds
        assert run.kinds[-1] == "write-cache:complete"

    @pytest.mark.parametrize("integrity", [42, None, ["sha256:abc"]])
    def test_malformed_index_record_is_a_miss(self, run_install, binary, store, integrity):
        name = index_name(CACHE_KEY)
        index = store.root / "index-v1" / name[:2] / f"{name}.json"
        index.parent.mkdir(parents=True, exist_ok=True)
        index.write_text(
            json.dumps({"key": CACHE_KEY, "integrity": integrity, "size": 1, "metadata": {}}),
            encoding="utf-8",
        )

        producer = RecordingProducer(binary)
        run = run_install(producer)

        assert run.error is None
        assert run.kinds == ["search-cache"] + REBUILD_TAIL
        assert run.first("search-cache").found is False
        assert producer.calls == 1
        assert store.get_info_sync(CACHE_KEY).metadata["id"] == _default_id()

    def test_failing_probe_rebuilds_once(self, run_install, binary, store, make_binary):
        _seed(store, make_binary(exit_code=1).read_bytes(), cache_id=_default_id())

        producer = RecordingProducer(binary)
        run = run_install(producer)

        assert run.error is None
        assert run.kinds == RESTORE_SEQUENCE[:-1] + ["check-binary:fail"] + REBUILD_TAIL
        assert producer.calls == 1
        assert run.pipeline.gate.probe_count == 1

        error = run.first("check-binary:fail").error
        assert isinstance(error, StageError)
        assert error.stage == "check-binary"
        assert isinstance(error.__cause__, BinaryCheckError)

    def test_failing_probe_purges_entry(self, run_install, binary, config, make_binary):
        store = SpyStore(config.cache_root, gc_grace_seconds=0)
        _seed(store, make_binary(exit_code=1).read_bytes(), cache_id=_default_id())

        run_install(RecordingProducer(binary), store_override=store)

        assert store.removed == [CACHE_KEY]
        assert store.get_info_sync(CACHE_KEY).path.read_bytes() == binary.read_bytes()

    def test_probe_timeout_override(self, run_install, binary, store, make_binary):
        _seed(store, make_binary(sleep=3).read_bytes(), cache_id=_default_id())

        run = run_install(RecordingProducer(binary), {"check_timeout": 0.3})

        assert "check-binary:fail" in run.kinds
        assert "timed out" in str(run.first("check-binary:fail").error)

    def test_cleanup_failures_are_ignored(self, run_install, binary, config):
        store = BrokenCleanupStore(config.cache_root, gc_grace_seconds=0)
        _seed(store, binary.read_bytes(), cache_id="other-id")

        run = run_install(RecordingProducer(binary), store_override=store)

        assert run.error is None
        assert run.kinds[-1] == "write-cache:complete"


# ---------------------------------------------------------------------------
# Test: Forced reinstall
# ---------------------------------------------------------------------------


class TestForcedReinstall:
    def test_skips_cache_and_overwrites_entry(self, run_install, binary, store, make_binary):
        run_install(RecordingProducer(binary))
        old_integrity = store.get_info_sync(CACHE_KEY).integrity

        newer = make_binary("0.15.16-rebuilt")
        producer = RecordingProducer(newer)
        run = run_install(producer, {"force_reinstall": True})

        assert run.error is None
        assert run.kinds == REBUILD_TAIL
        assert producer.calls == 1
        assert store.get_info_sync(CACHE_KEY).integrity != old_integrity

    def test_forced_reinstall_purges_first(self, run_install, binary, config):
        store = SpyStore(config.cache_root, gc_grace_seconds=0)
        run_install(RecordingProducer(binary), {"force_reinstall": True}, store_override=store)
        assert store.removed == [CACHE_KEY]


# ---------------------------------------------------------------------------
# Test: Fatal errors
# ---------------------------------------------------------------------------


class TestFatalErrors:
    @pytest.mark.parametrize("seed_cache", [False, True])
    def test_directory_at_target_conflicts(self, run_install, binary, store, workdir, seed_cache):
        if seed_cache:
            _seed(store, binary.read_bytes(), cache_id=_default_id())
        (workdir / DEFAULT_BIN_NAME).mkdir()

        producer = RecordingProducer(binary)
        run = run_install(producer)

        assert isinstance(run.error, TargetConflictError)
        assert run.events == []
        assert producer.calls == 0
        assert run.pipeline.machine.state == InstallState.FAILED

    def test_directory_conflict_in_forced_mode(self, run_install, binary, workdir):
        (workdir / DEFAULT_BIN_NAME).mkdir()
        producer = RecordingProducer(binary)
        run = run_install(producer, {"force_reinstall": True})

        assert isinstance(run.error, TargetConflictError)
        assert run.events == []
        assert producer.calls == 0

    def test_producer_error_is_terminal(self, run_install, store):
        failure = ProducerError("build failed")
        run = run_install(RecordingProducer(error=failure))

        assert run.error is failure
        assert run.kinds == ["search-cache", "produce"]
        assert run.pipeline.machine.state == InstallState.FAILED
        with pytest.raises(EntryNotFoundError):
            store.get_info_sync(CACHE_KEY)


# ---------------------------------------------------------------------------
# Test: Write-back
# ---------------------------------------------------------------------------


class TestWriteBack:
    def test_write_failure_is_not_fatal(self, run_install, binary, config, workdir):
        store = BrokenWriteStore(config.cache_root, gc_grace_seconds=0)
        run = run_install(RecordingProducer(binary), store_override=store)

        assert run.error is None
        assert run.kinds[-2:] == ["write-cache", "write-cache:fail"]
        error = run.first("write-cache:fail").error
        assert isinstance(error, StageError)
        assert error.stage == "write-cache"
        assert (workdir / DEFAULT_BIN_NAME).exists()
        assert run.pipeline.machine.state == InstallState.DONE


# ---------------------------------------------------------------------------
# Test: Cancellation
# ---------------------------------------------------------------------------


class TestCancellation:
    def test_cancel_before_start(self, store, config, binary, workdir):
        producer = RecordingProducer(binary)

        async def scenario() -> list:
            stream = install(producer, {"cwd": workdir}, store=store, config=config)
            await stream.aclose()
            return [event async for event in stream]

        assert asyncio.run(scenario()) == []
        assert producer.calls == 0
        assert not (workdir / DEFAULT_BIN_NAME).exists()

    def test_cancel_reaches_producer(self, store, config, workdir):
        producer = RecordingProducer(block=True)

        async def scenario() -> list[str]:
            stream = install(producer, {"cwd": workdir}, store=store, config=config)
            kinds = []
            async for event in stream:
                kinds.append(event.kind)
                if event.kind == "produce":
                    await stream.aclose()
            return kinds

        kinds = asyncio.run(scenario())
        assert kinds == ["search-cache", "produce"]
        assert producer.cancelled is True

    def test_cancel_while_channel_full_stops_cleanup(self, config, binary, workdir):
        store = HangingVerifyStore(config.cache_root, gc_grace_seconds=0)
        narrow = config.model_copy(update={"channel_size": 1})
        pipeline = InstallationPipeline(
            RecordingProducer(binary), parse_options({"cwd": workdir}), store=store, config=narrow
        )

        async def scenario() -> bool:
            stream = pipeline.stream()
            async for event in stream:
                if event.kind == "produce":
                    break
            # Stop reading so the worker blocks emitting into the full channel.
            await asyncio.sleep(0.2)
            await stream.aclose()
            await asyncio.sleep(0.05)
            return store.verify_cancelled

        assert asyncio.run(scenario()) is True

    def test_cancel_is_idempotent(self, store, config, binary, workdir):
        async def scenario() -> None:
            stream = install(RecordingProducer(binary), {"cwd": workdir}, store=store, config=config)
            events = await stream.collect()
            assert events[-1].kind == EventKind.WRITE_CACHE_COMPLETE
            await stream.aclose()
            await stream.aclose()
            stream.cancel()

        asyncio.run(scenario())


# ---------------------------------------------------------------------------
# Test: Options
# ---------------------------------------------------------------------------


class TestOptions:
    def test_non_mapping_options_rejected(self, binary):
        with pytest.raises(InstallOptionsError):
            install(RecordingProducer(binary), "options")  # type: ignore[arg-type]

    def test_non_boolean_force_reinstall_rejected(self, binary):
        with pytest.raises(InstallOptionsError):
            install(RecordingProducer(binary), {"force_reinstall": "yes"})

    def test_unsupported_build_flag_rejected(self, binary):
        with pytest.raises(InstallOptionsError):
            install(RecordingProducer(binary), {"build_flags": ["--not-a-flag"]})

    def test_rename_changes_target(self, run_install, binary, workdir):
        run = run_install(RecordingProducer(binary), {"rename": lambda name: f"{name}-custom"})
        assert run.error is None
        assert run.pipeline.target == workdir / f"{DEFAULT_BIN_NAME}-custom"
        assert run.pipeline.target.exists()

    def test_version_selects_identity(self, run_install, binary, store):
        run_install(RecordingProducer(binary), {"version": "0.14.0"})
        assert store.get_info_sync(CACHE_KEY).metadata["id"].startswith("0.14.0-")

    def test_other_version_misses_cache(self, run_install, binary):
        run_install(RecordingProducer(binary), {"version": "0.14.0"})
        run = run_install(RecordingProducer(binary), {"version": "0.14.1"})
        assert run.first("search-cache").found is False

    def test_extra_options_reach_producer(self, run_install, binary):
        producer = RecordingProducer(binary)
        run_install(producer, {"mirror": "https://example.invalid"})
        assert producer.seen_options[0].extras == {"mirror": "https://example.invalid"}

    def test_pipeline_accepts_options_model(self, store, config, binary, workdir):
        options = InstallOptions(cwd=workdir)
        pipeline = InstallationPipeline(RecordingProducer(binary), options, store=store, config=config)
        assert pipeline.target == Path(workdir).absolute() / DEFAULT_BIN_NAME
