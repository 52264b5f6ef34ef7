from __future__ import annotations

import asyncio
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
import logging

from opentelemetry import trace

from jobsync.engine.models import Session, SyncResult, TriggerEvent, TriggerKind
from jobsync.engine.registry import DomainSyncRegistry
from jobsync.services.realtime_channel import (
    WILDCARD_EVENT,
    ChangeEvent,
    ChangePredicate,
    RealtimeChannel,
    Subscription,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

USER_SCOPE = "user"
ORGANIZATION_SCOPE = "organization"


@dataclass(frozen=True, slots=True)
class RealtimeBinding:
    """Maps change notifications on one entity to the domains they invalidate."""

    entity: str
    domains: tuple[str, ...]
    event: str = WILDCARD_EVENT
    owner_column: str | None = None
    scope: str = USER_SCOPE
    fallback_column: str | None = None

    def predicate_for(self, session: Session) -> ChangePredicate:
        if self.owner_column is None:
            return ChangePredicate(event=self.event)
        if self.scope == ORGANIZATION_SCOPE:
            if session.organization_id:
                return ChangePredicate(event=self.event, column=self.owner_column, value=session.organization_id)
            column = self.fallback_column or self.owner_column
            return ChangePredicate(event=self.event, column=column, value=session.user_id)
        return ChangePredicate(event=self.event, column=self.owner_column, value=session.user_id)


class RealtimeInvalidator:
    """Turns change notifications into forced runs of the affected domains.

    Subscriptions live exactly as long as one owner identity: `open` tears
    down whatever the previous owner had before subscribing again.
    """

    def __init__(self, channel: RealtimeChannel, bindings: Iterable[RealtimeBinding] = ()) -> None:
        self._channel = channel
        self._bindings: tuple[RealtimeBinding, ...] = tuple(bindings)
        self._registry: DomainSyncRegistry | None = None
        self._session: Session | None = None
        self._targets: dict[str, str] = {}
        self._subscriptions: dict[RealtimeBinding, Subscription] = {}
        self._failed: list[RealtimeBinding] = []
        self._last_event: TriggerEvent | None = None

    @property
    def active_subscriptions(self) -> int:
        return len(self._subscriptions)

    @property
    def last_event(self) -> TriggerEvent | None:
        return self._last_event

    @property
    def failed_bindings(self) -> list[RealtimeBinding]:
        return list(self._failed)

    def open(
        self,
        registry: DomainSyncRegistry,
        session: Session,
        targets: Mapping[str, str],
        bindings: Iterable[RealtimeBinding] | None = None,
    ) -> int:
        self.close()
        if bindings is not None:
            self._bindings = tuple(bindings)
        self._registry = registry
        self._session = session
        self._targets = dict(targets)

        for binding in self._bindings:
            if not any(domain in self._targets for domain in binding.domains):
                continue
            self._subscribe(binding)
        logger.info(
            "realtime subscriptions opened user=%s active=%s failed=%s",
            session.user_id,
            len(self._subscriptions),
            len(self._failed),
        )
        return len(self._subscriptions)

    def retry_failed(self) -> int:
        if self._session is None or not self._failed:
            return 0
        pending = self._failed
        self._failed = []
        recovered = 0
        for binding in pending:
            if self._subscribe(binding):
                recovered += 1
        if recovered:
            logger.info("realtime subscriptions recovered count=%s", recovered)
        return recovered

    def close(self) -> None:
        for binding, subscription in list(self._subscriptions.items()):
            try:
                self._channel.unsubscribe(subscription)
            except Exception as exc:
                logger.warning("realtime unsubscribe failed entity=%s: %s", binding.entity, exc)
        self._subscriptions.clear()
        self._failed = []
        self._registry = None
        self._session = None
        self._targets = {}

    async def invalidate(self, binding: RealtimeBinding, change: ChangeEvent) -> tuple[SyncResult, ...]:
        registry = self._registry
        if registry is None:
            return ()
        targets = {domain: self._targets[domain] for domain in binding.domains if domain in self._targets}
        if not targets:
            return ()
        event = TriggerEvent(kind=TriggerKind.REALTIME, domain=next(iter(targets)) if len(targets) == 1 else None)
        self._last_event = event

        with tracer.start_as_current_span("sync.realtime") as span:
            span.set_attribute("sync.entity", change.entity)
            span.set_attribute("sync.trigger", event.kind.value)
            span.set_attribute("sync.change", change.kind.value)
            results = await asyncio.gather(
                *(registry.run(domain, owner_key, force=True) for domain, owner_key in targets.items())
            )
        logger.info(
            "realtime invalidation trigger=%s entity=%s change=%s domains=%s",
            event.kind.value,
            change.entity,
            change.kind.value,
            sorted(targets),
        )
        return tuple(results)

    def _subscribe(self, binding: RealtimeBinding) -> bool:
        session = self._session
        if session is None:
            return False

        async def on_change(change: ChangeEvent) -> None:
            await self.invalidate(binding, change)

        try:
            subscription = self._channel.subscribe(binding.entity, binding.predicate_for(session), on_change)
        except Exception as exc:
            logger.warning("realtime subscribe failed entity=%s: %s", binding.entity, exc)
            self._failed.append(binding)
            return False
        self._subscriptions[binding] = subscription
        return True
