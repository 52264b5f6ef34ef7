from __future__ import annotations

import asyncio
from dataclasses import replace
from typing import Any

import pytest

from jobsync.engine.cache_bridge import QueryCacheBridge
from jobsync.engine.domains import applied_job_ids, build_domain
from jobsync.engine.models import CacheSnapshot, DuplicateDomainError, SyncDomain, SyncStatus, UnknownDomainError
from jobsync.engine.registry import DomainSyncRegistry
from jobsync.engine.snapshots import SnapshotStore
from jobsync.services.query_cache import QueryCache
from jobsync.services.storage import MemoryKeyValueStorage

OWNER = "u:user-1"


class FakeClock:
    def __init__(self, now: int = 1_000_000) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class RecordingFetcher:
    def __init__(self, payloads: list[Any] | None = None, *, gate: asyncio.Event | None = None) -> None:
        self.payloads = list(payloads or [["row"]])
        self.gate = gate
        self.calls: list[str] = []
        self.error: Exception | None = None

    async def __call__(self, owner_key: str) -> Any:
        self.calls.append(owner_key)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        if len(self.payloads) > 1:
            return self.payloads.pop(0)
        return self.payloads[0]


def _registry(clock: FakeClock | None = None) -> tuple[DomainSyncRegistry, SnapshotStore, QueryCache]:
    store = SnapshotStore(MemoryKeyValueStorage())
    cache = QueryCache()
    registry = DomainSyncRegistry(store, QueryCacheBridge(cache), clock=clock or FakeClock())
    return registry, store, cache


def _domain(name: str, fetcher: RecordingFetcher, window_ms: int = 180_000, **kwargs: Any) -> SyncDomain:
    return replace(build_domain(name, fetcher, **kwargs), freshness_window_ms=window_ms)


def test_register_rejects_duplicate_names() -> None:
    registry, _, _ = _registry()
    fetcher = RecordingFetcher()
    registry.register(_domain("available_jobs", fetcher))

    with pytest.raises(DuplicateDomainError):
        registry.register(_domain("available_jobs", fetcher))


def test_run_unknown_domain_raises() -> None:
    registry, _, _ = _registry()
    with pytest.raises(UnknownDomainError):
        asyncio.run(registry.run("nope", OWNER))


def test_concurrent_runs_share_a_single_fetch() -> None:
    registry, store, cache = _registry()
    gate = asyncio.Event()
    fetcher = RecordingFetcher([[{"id": "job-1"}]], gate=gate)
    registry.register(_domain("available_jobs", fetcher))

    async def run() -> tuple[Any, Any]:
        first = asyncio.ensure_future(registry.run("available_jobs", OWNER))
        await asyncio.sleep(0)
        assert registry.in_flight("available_jobs", OWNER)
        second = await registry.run("available_jobs", OWNER)
        gate.set()
        return await first, second

    first, second = asyncio.run(run())

    assert fetcher.calls == [OWNER]
    assert first.status is SyncStatus.FETCHED
    assert first.persisted is True
    assert second.status is SyncStatus.IN_FLIGHT
    assert not registry.in_flight("available_jobs", OWNER)
    assert store.read("available_jobs", OWNER) is not None
    assert cache.get_entry(("available_jobs", OWNER)) == [{"id": "job-1"}]


def test_forced_run_joins_pending_fetch() -> None:
    registry, _, _ = _registry()
    gate = asyncio.Event()
    fetcher = RecordingFetcher(gate=gate)
    registry.register(_domain("conversations", fetcher))

    async def run() -> tuple[Any, Any]:
        first = asyncio.ensure_future(registry.run("conversations", OWNER))
        await asyncio.sleep(0)
        joined = asyncio.ensure_future(registry.run("conversations", OWNER, force=True))
        await asyncio.sleep(0)
        gate.set()
        return await first, await joined

    first, joined = asyncio.run(run())

    assert len(fetcher.calls) == 1
    assert first.status is SyncStatus.FETCHED
    assert joined.status is SyncStatus.JOINED


def test_fresh_snapshot_skips_fetch_unless_forced() -> None:
    clock = FakeClock()
    registry, store, _ = _registry(clock)
    fetcher = RecordingFetcher()
    registry.register(_domain("available_jobs", fetcher, window_ms=180_000))
    store.write(CacheSnapshot("available_jobs", OWNER, ["cached"], clock.now - 100_000))

    skipped = asyncio.run(registry.run("available_jobs", OWNER))
    assert skipped.status is SyncStatus.FRESH
    assert fetcher.calls == []

    forced = asyncio.run(registry.run("available_jobs", OWNER, force=True))
    assert forced.status is SyncStatus.FETCHED
    assert fetcher.calls == [OWNER]


def test_stale_snapshot_is_refetched() -> None:
    clock = FakeClock()
    registry, store, _ = _registry(clock)
    fetcher = RecordingFetcher([["fresh"]])
    registry.register(_domain("available_jobs", fetcher, window_ms=180_000))
    store.write(CacheSnapshot("available_jobs", OWNER, ["old"], clock.now - 200_000))

    result = asyncio.run(registry.run("available_jobs", OWNER))

    assert result.status is SyncStatus.FETCHED
    snapshot = store.read("available_jobs", OWNER)
    assert snapshot is not None
    assert snapshot.payload == ["fresh"]
    assert snapshot.captured_at == clock.now


def test_failed_fetch_keeps_previous_snapshot() -> None:
    clock = FakeClock()
    registry, store, cache = _registry(clock)
    fetcher = RecordingFetcher()
    fetcher.error = RuntimeError("network down")
    registry.register(_domain("conversations", fetcher))
    previous = CacheSnapshot("conversations", OWNER, [{"id": "c-1"}], clock.now - 500_000)
    store.write(previous)

    result = asyncio.run(registry.run("conversations", OWNER))

    assert result.status is SyncStatus.FAILED
    assert result.error == "network down"
    assert not result.ok
    assert store.read("conversations", OWNER) == previous
    assert not cache.has_entry(("conversations", OWNER))
    assert not registry.in_flight("conversations", OWNER)


def test_failure_in_one_domain_does_not_block_others() -> None:
    registry, _, _ = _registry()
    broken = RecordingFetcher()
    broken.error = RuntimeError("boom")
    registry.register(_domain("conversations", broken))
    registry.register(_domain("available_jobs", RecordingFetcher()))

    results = asyncio.run(registry.run_many({"conversations": OWNER, "available_jobs": OWNER}))

    statuses = {result.domain: result.status for result in results}
    assert statuses == {"conversations": SyncStatus.FAILED, "available_jobs": SyncStatus.FETCHED}


def test_captured_at_never_decreases_across_runs() -> None:
    clock = FakeClock()
    registry, store, _ = _registry(clock)
    registry.register(_domain("messages", RecordingFetcher([["a"], ["b"], ["c"]])))

    seen: list[int] = []
    for _ in range(3):
        asyncio.run(registry.run("messages", OWNER, force=True))
        snapshot = store.read("messages", OWNER)
        assert snapshot is not None
        seen.append(snapshot.captured_at)
        clock.advance(1_000)

    assert seen == sorted(seen)
    assert store.read("messages", OWNER).payload == ["c"]


def test_hydrate_pushes_snapshots_and_projections() -> None:
    registry, store, cache = _registry()
    registry.register(
        _domain("my_applications", RecordingFetcher(), projections={"applied_job_ids": applied_job_ids})
    )
    registry.register(_domain("saved_jobs", RecordingFetcher()))
    store.write(CacheSnapshot("my_applications", OWNER, [{"id": "a-1", "job_id": "job-9"}], 10))

    hydrated = registry.hydrate({"my_applications": OWNER, "saved_jobs": OWNER})

    assert hydrated == 1
    assert cache.get_entry(("my_applications", OWNER)) == [{"id": "a-1", "job_id": "job-9"}]
    assert cache.get_entry(("applied_job_ids", OWNER)) == ["job-9"]
    assert not cache.has_entry(("saved_jobs", OWNER))


def test_local_patch_updates_snapshot_and_cache() -> None:
    registry, store, cache = _registry()
    registry.register(_domain("saved_jobs", RecordingFetcher()))
    store.write(CacheSnapshot("saved_jobs", OWNER, ["job-1"], 500))

    applied = registry.apply_local_patch("saved_jobs", OWNER, lambda ids: [*ids, "job-2"])

    assert applied is True
    snapshot = store.read("saved_jobs", OWNER)
    assert snapshot is not None
    assert snapshot.payload == ["job-1", "job-2"]
    assert snapshot.captured_at == 500
    assert cache.get_entry(("saved_jobs", OWNER)) == ["job-1", "job-2"]


def test_local_patch_without_snapshot_is_ignored() -> None:
    registry, _, _ = _registry()
    registry.register(_domain("saved_jobs", RecordingFetcher()))
    assert registry.apply_local_patch("saved_jobs", OWNER, lambda ids: ids) is False


def test_fetch_resolving_after_close_is_discarded() -> None:
    registry, store, cache = _registry()
    gate = asyncio.Event()
    registry.register(_domain("available_jobs", RecordingFetcher(gate=gate)))

    async def run() -> Any:
        pending = asyncio.ensure_future(registry.run("available_jobs", OWNER))
        await asyncio.sleep(0)
        registry.close()
        gate.set()
        return await pending

    result = asyncio.run(run())

    assert result.status is SyncStatus.DISCARDED
    assert store.read("available_jobs", OWNER) is None
    assert not cache.has_entry(("available_jobs", OWNER))


def test_closed_registry_starts_no_fetches() -> None:
    registry, _, _ = _registry()
    fetcher = RecordingFetcher()
    registry.register(_domain("available_jobs", fetcher))
    registry.close()

    result = asyncio.run(registry.run("available_jobs", OWNER, force=True))

    assert result.status is SyncStatus.DISCARDED
    assert fetcher.calls == []
