from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
import logging

from opentelemetry import trace

from jobsync.engine.cache_bridge import QueryCacheBridge
from jobsync.engine.freshness import check_freshness, now_ms
from jobsync.engine.models import (
    CacheSnapshot,
    DuplicateDomainError,
    Payload,
    Session,
    SyncDomain,
    SyncResult,
    SyncStatus,
    UnknownDomainError,
)
from jobsync.engine.snapshots import SnapshotStore, SnapshotWrite

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class DomainSyncRegistry:
    """Owns every registered domain and the in-flight marker per (domain, owner).

    The in-flight marker is the pending task stored in `_in_flight`; it is set
    before the fetch coroutine first runs and removed when it finishes, so at
    most one fetch per key exists without any lock.
    """

    def __init__(
        self,
        store: SnapshotStore,
        bridge: QueryCacheBridge,
        *,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._store = store
        self._bridge = bridge
        self._clock = clock
        self._domains: dict[str, SyncDomain] = {}
        self._in_flight: dict[tuple[str, str], asyncio.Future[SyncResult]] = {}
        self._closed = False

    def register(self, spec: SyncDomain) -> None:
        if spec.name in self._domains:
            raise DuplicateDomainError(f"domain already registered: {spec.name}")
        self._domains[spec.name] = spec

    def domain(self, name: str) -> SyncDomain:
        try:
            return self._domains[name]
        except KeyError:
            raise UnknownDomainError(name) from None

    def owner_keys(self, session: Session) -> dict[str, str]:
        return {name: spec.owner_key_of(session) for name, spec in self._domains.items()}

    def is_fresh(self, name: str, owner_key: str) -> bool:
        spec = self.domain(name)
        snapshot = self._store.read(name, owner_key)
        return check_freshness(snapshot, spec.freshness_window_ms, now=self._clock()).fresh

    def in_flight(self, name: str, owner_key: str) -> bool:
        return (name, owner_key) in self._in_flight

    def hydrate(self, targets: Mapping[str, str]) -> int:
        """Push every stored snapshot into the UI cache without touching the network."""
        hydrated = 0
        for name, owner_key in targets.items():
            spec = self.domain(name)
            snapshot = self._store.read(name, owner_key)
            if snapshot is None:
                continue
            self._bridge.push(spec, owner_key, snapshot.payload)
            hydrated += 1
        if hydrated:
            logger.info("hydrated ui cache from snapshots count=%s", hydrated)
        return hydrated

    async def run(self, name: str, owner_key: str, *, force: bool = False) -> SyncResult:
        spec = self.domain(name)
        key = (name, owner_key)

        if not force:
            verdict = check_freshness(self._store.read(name, owner_key), spec.freshness_window_ms, now=self._clock())
            if verdict.fresh:
                logger.debug("skip fresh domain=%s owner=%s age_ms=%s", name, owner_key, verdict.age_ms)
                return SyncResult(domain=name, owner_key=owner_key, status=SyncStatus.FRESH)

        pending = self._in_flight.get(key)
        if pending is not None:
            if not force:
                return SyncResult(domain=name, owner_key=owner_key, status=SyncStatus.IN_FLIGHT)
            outcome = await asyncio.shield(pending)
            status = SyncStatus.JOINED if outcome.status is SyncStatus.FETCHED else outcome.status
            return SyncResult(
                domain=name,
                owner_key=owner_key,
                status=status,
                error=outcome.error,
                persisted=outcome.persisted,
            )

        if self._closed:
            return SyncResult(domain=name, owner_key=owner_key, status=SyncStatus.DISCARDED, error="registry closed")

        task = asyncio.ensure_future(self._fetch(spec, owner_key))
        self._in_flight[key] = task
        return await asyncio.shield(task)

    async def run_many(self, targets: Mapping[str, str], *, force: bool = False) -> tuple[SyncResult, ...]:
        results = await asyncio.gather(
            *(self.run(name, owner_key, force=force) for name, owner_key in targets.items())
        )
        return tuple(results)

    def apply_local_patch(self, name: str, owner_key: str, patch: Callable[[Payload], Payload]) -> bool:
        """Apply an optimistic change now; the next authoritative fetch replaces it."""
        spec = self.domain(name)
        snapshot = self._store.read(name, owner_key)
        if snapshot is None:
            return False
        try:
            patched = patch(snapshot.payload)
        except Exception:
            logger.exception("local patch failed domain=%s owner=%s", name, owner_key)
            return False

        self._store.write(
            CacheSnapshot(domain=name, owner_key=owner_key, payload=patched, captured_at=snapshot.captured_at)
        )
        self._bridge.push(spec, owner_key, patched)
        return True

    def close(self) -> None:
        self._closed = True

    async def _fetch(self, spec: SyncDomain, owner_key: str) -> SyncResult:
        key = (spec.name, owner_key)
        try:
            with tracer.start_as_current_span("sync.fetch") as span:
                span.set_attribute("sync.domain", spec.name)
                span.set_attribute("sync.owner_key", owner_key)
                try:
                    payload = await spec.fetch(owner_key)
                except Exception as exc:
                    span.record_exception(exc)
                    logger.warning("sync fetch failed domain=%s owner=%s: %s", spec.name, owner_key, exc)
                    return SyncResult(
                        domain=spec.name,
                        owner_key=owner_key,
                        status=SyncStatus.FAILED,
                        error=str(exc) or exc.__class__.__name__,
                    )

                if self._closed:
                    logger.info("discarding fetch resolved after teardown domain=%s owner=%s", spec.name, owner_key)
                    return SyncResult(domain=spec.name, owner_key=owner_key, status=SyncStatus.DISCARDED)

                written = self._store.write(
                    CacheSnapshot(domain=spec.name, owner_key=owner_key, payload=payload, captured_at=self._clock())
                )
                if written is SnapshotWrite.REJECTED_STALE:
                    return SyncResult(domain=spec.name, owner_key=owner_key, status=SyncStatus.SUPERSEDED)

                self._bridge.push(spec, owner_key, payload)
                persisted = written is SnapshotWrite.WRITTEN
                span.set_attribute("sync.persisted", persisted)
                return SyncResult(domain=spec.name, owner_key=owner_key, status=SyncStatus.FETCHED, persisted=persisted)
        finally:
            self._in_flight.pop(key, None)
