from __future__ import annotations

from collections.abc import Callable, Iterable
from functools import lru_cache
import logging
from typing import Any

from jobsync.core.config import Settings, get_settings
from jobsync.engine.cache_bridge import QueryCacheBridge
from jobsync.engine.domains import DomainCatalog, build_role_bindings, build_role_domains
from jobsync.engine.freshness import check_freshness, now_ms
from jobsync.engine.models import (
    EngineNotInitializedError,
    Payload,
    PassReport,
    Role,
    Session,
    SyncDomain,
    SyncError,
    SyncResult,
    TriggerEvent,
    TriggerKind,
    user_owner_key,
)
from jobsync.engine.realtime import RealtimeBinding, RealtimeInvalidator
from jobsync.engine.registry import DomainSyncRegistry
from jobsync.engine.side_fetch import with_soft_timeout
from jobsync.engine.snapshots import SnapshotStore
from jobsync.engine.timings import resolve_domain_timings
from jobsync.engine.triggers import DeviceProfile, InteractionKind, TriggerCoordinator
from jobsync.services.data_source import SupabaseDataSource
from jobsync.services.query_cache import QueryCache
from jobsync.services.realtime_channel import ChangeEvent, InMemoryRealtimeChannel, RealtimeChannel
from jobsync.services.storage import KeyValueStorage, MemoryKeyValueStorage, SqliteKeyValueStorage

logger = logging.getLogger(__name__)

PROFILE_MEDIA_KEY = "profile_media"


class SyncEngine:
    """Process-wide sync service bound to at most one authenticated session.

    `init` wires registry, invalidator and coordinator for a session;
    `teardown` unwinds them, purging snapshots when the session ends.
    """

    def __init__(
        self,
        *,
        data_source: SupabaseDataSource,
        channel: RealtimeChannel,
        storage: KeyValueStorage,
        query_cache: QueryCache | None = None,
        settings: Settings | None = None,
        device: DeviceProfile | None = None,
        clock: Callable[[], int] = now_ms,
        domain_builder: Callable[[Role], Iterable[SyncDomain]] | None = None,
        bindings_builder: Callable[[Role], Iterable[RealtimeBinding]] | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.data_source = data_source
        self.channel = channel
        self._storage = storage
        self.store = SnapshotStore(storage)
        self.query_cache = query_cache or QueryCache()
        self.bridge = QueryCacheBridge(self.query_cache)
        self.timings = resolve_domain_timings(self.settings.domain_timings_json)
        self.catalog = DomainCatalog(data_source)
        self._clock = clock
        self._domain_builder = domain_builder or (lambda role: build_role_domains(role, self.catalog, self.timings))
        self._bindings_builder = bindings_builder or build_role_bindings
        self.coordinator = TriggerCoordinator(
            debounce_ms=self.settings.full_pass_debounce_ms,
            degraded_debounce_multiplier=self.settings.degraded_debounce_multiplier,
            idle_defer_seconds=self.settings.idle_defer_seconds,
            device=device,
            clock=clock,
        )
        self.invalidator = RealtimeInvalidator(channel)
        self.registry: DomainSyncRegistry | None = None
        self.session: Session | None = None
        self.targets: dict[str, str] = {}

    @property
    def active(self) -> bool:
        return self.registry is not None and self.session is not None

    async def init(self, session: Session, *, initial_pass: bool = True, device: DeviceProfile | None = None) -> int:
        """Bind the engine to `session` and hydrate the UI cache from stored snapshots.

        Returns the number of domains hydrated. Re-initialising with the same
        identity is a no-op apart from refreshing the access token.
        """
        if device is not None:
            self.coordinator.device = device

        current = self.session
        if current is not None:
            if _same_identity(current, session):
                self.session = session
                self.data_source.set_access_token(session.access_token)
                return 0
            await self.teardown(purge=current.user_id != session.user_id)

        self.data_source.set_access_token(session.access_token)
        registry = DomainSyncRegistry(self.store, self.bridge, clock=self._clock)
        for spec in self._domain_builder(Role(session.role)):
            registry.register(spec)
        targets = registry.owner_keys(session)

        hydrated = registry.hydrate(targets)
        self.registry = registry
        self.session = session
        self.targets = targets

        self.invalidator.open(registry, session, targets, self._bindings_builder(Role(session.role)))
        self.coordinator.start(
            registry,
            targets,
            initial_pass=initial_pass,
            before_full_pass=self.invalidator.retry_failed,
        )
        logger.info(
            "sync engine initialised user=%s role=%s domains=%s hydrated=%s",
            session.user_id,
            Role(session.role).value,
            len(targets),
            hydrated,
        )
        return hydrated

    async def teardown(self, *, purge: bool = False) -> int:
        """Stop triggers and subscriptions; with `purge`, drop every snapshot and cached view."""
        session = self.session
        targets = self.targets
        await self.coordinator.stop()
        self.invalidator.close()
        if self.registry is not None:
            self.registry.close()
        self.registry = None
        self.session = None
        self.targets = {}

        removed = 0
        if purge:
            removed = self.store.purge_all()
            # Registered keys go too, in case the index was unreadable.
            for name, owner_key in targets.items():
                self.store.purge_owner(owner_key, (name,))
            self.bridge.reset()
            logger.info(
                "sync engine purged user=%s snapshots_removed=%s",
                session.user_id if session else None,
                removed,
            )
        return removed

    async def on_login_complete(self, session: Session, *, device: DeviceProfile | None = None) -> PassReport | None:
        await self.init(session, initial_pass=False, device=device)
        await self._resolve_profile_media(session)
        return await self.coordinator.on_login_complete()

    async def on_sign_out(self) -> int:
        return await self.teardown(purge=True)

    async def on_visibility_change(self, visible: bool) -> PassReport | None:
        self._require_session()
        return await self.coordinator.on_visibility_change(visible)

    async def on_user_interaction(self, kind: InteractionKind | str) -> PassReport | None:
        self._require_session()
        return await self.coordinator.on_user_interaction(kind)

    async def full_pass(self, *, force: bool = True) -> PassReport | None:
        self._require_session()
        return await self.coordinator.full_pass(TriggerEvent(kind=TriggerKind.MANUAL), force=force)

    async def run_domain(self, name: str, *, force: bool = False) -> SyncResult:
        registry = self._require_registry()
        registry.domain(name)
        return await registry.run(name, self.targets[name], force=force)

    def apply_local_patch(self, name: str, patch: Callable[[Payload], Payload]) -> bool:
        registry = self._require_registry()
        registry.domain(name)
        return registry.apply_local_patch(name, self.targets[name], patch)

    async def publish_change(self, change: ChangeEvent) -> int:
        if not isinstance(self.channel, InMemoryRealtimeChannel):
            raise SyncError("realtime channel does not accept published changes")
        return await self.channel.publish(change)

    def cache_entry(self, name: str) -> Any | None:
        session = self._require_session()
        owner_key = self.targets.get(name, user_owner_key(session))
        return self.query_cache.get_entry((name, owner_key))

    def status(self) -> dict[str, Any]:
        last_pass = self.coordinator.last_pass
        status: dict[str, Any] = {
            "active": self.active,
            "user_id": self.session.user_id if self.session else None,
            "role": Role(self.session.role).value if self.session else None,
            "debounce_ms": self.coordinator.effective_debounce_ms,
            "device_degraded": self.coordinator.device.degraded,
            "subscriptions": {
                "active": self.invalidator.active_subscriptions,
                "failed": [binding.entity for binding in self.invalidator.failed_bindings],
            },
            "last_pass": _pass_summary(last_pass) if last_pass else None,
            "domains": [],
        }
        registry = self.registry
        if registry is None:
            return status

        now = self._clock()
        for name, owner_key in self.targets.items():
            spec = registry.domain(name)
            snapshot = self.store.read(name, owner_key)
            verdict = check_freshness(snapshot, spec.freshness_window_ms, now=now)
            status["domains"].append(
                {
                    "name": name,
                    "owner_key": owner_key,
                    "in_flight": registry.in_flight(name, owner_key),
                    "fresh": verdict.fresh,
                    "reason": verdict.reason,
                    "age_ms": verdict.age_ms,
                    "captured_at": snapshot.captured_at if snapshot else None,
                    "freshness_window_ms": spec.freshness_window_ms,
                    "refresh_interval_ms": spec.refresh_interval_ms,
                }
            )
        return status

    async def close(self) -> None:
        await self.teardown(purge=False)
        closer = getattr(self._storage, "close", None)
        if callable(closer):
            closer()

    async def _resolve_profile_media(self, session: Session) -> None:
        if not session.avatar_path:
            return
        signed_url = await with_soft_timeout(
            self.data_source.create_signed_url(self.settings.avatar_bucket, session.avatar_path),
            self.settings.side_fetch_timeout_seconds,
            label="avatar_signed_url",
        )
        if signed_url:
            self.bridge.push(PROFILE_MEDIA_KEY, user_owner_key(session), {"avatar_url": signed_url})

    def _require_session(self) -> Session:
        if self.session is None:
            raise EngineNotInitializedError("sync engine has no active session")
        return self.session

    def _require_registry(self) -> DomainSyncRegistry:
        self._require_session()
        if self.registry is None:
            raise EngineNotInitializedError("sync engine has no active session")
        return self.registry


def _same_identity(left: Session, right: Session) -> bool:
    return (
        left.user_id == right.user_id
        and Role(left.role) == Role(right.role)
        and left.organization_id == right.organization_id
    )


def _pass_summary(report: PassReport) -> dict[str, Any]:
    return {
        "kind": report.event.kind.value,
        "forced": report.forced,
        "started_at": report.started_at,
        "finished_at": report.finished_at,
        "failed_domains": report.failed_domains,
    }


@lru_cache
def get_engine() -> SyncEngine:
    settings = get_settings()
    storage: KeyValueStorage
    if settings.snapshot_db_path:
        storage = SqliteKeyValueStorage(settings.snapshot_db_path)
    else:
        storage = MemoryKeyValueStorage()
    data_source = SupabaseDataSource(
        settings.supabase_url,
        settings.supabase_anon_key,
        timeout_seconds=settings.request_timeout_seconds,
    )
    return SyncEngine(
        data_source=data_source,
        channel=InMemoryRealtimeChannel(),
        storage=storage,
        settings=settings,
    )
