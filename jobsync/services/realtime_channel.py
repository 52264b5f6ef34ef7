from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
import itertools
import logging
from typing import Any, Protocol

logger = logging.getLogger(__name__)

WILDCARD_EVENT = "*"


class RealtimeChannelError(Exception):
    """Raised when a subscription cannot be opened."""


class ChangeKind(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass(frozen=True, slots=True)
class ChangeEvent:
    entity: str
    kind: ChangeKind
    record: dict[str, Any] | None = None
    old_record: dict[str, Any] | None = None


@dataclass(frozen=True, slots=True)
class ChangePredicate:
    event: str = WILDCARD_EVENT
    column: str | None = None
    value: str | None = None

    def matches(self, change: ChangeEvent) -> bool:
        if self.event != WILDCARD_EVENT and self.event.upper() != change.kind.value:
            return False
        if self.column is None:
            return True
        for row in (change.record, change.old_record):
            if row and self.column in row and str(row[self.column]) == self.value:
                return True
        return False

    @property
    def filter_expression(self) -> str | None:
        if self.column is None:
            return None
        return f"{self.column}=eq.{self.value}"


ChangeHandler = Callable[[ChangeEvent], Awaitable[None]]


@dataclass(eq=False, slots=True)
class Subscription:
    id: int
    entity: str
    predicate: ChangePredicate
    handler: ChangeHandler = field(repr=False)


class RealtimeChannel(Protocol):
    def subscribe(self, entity: str, predicate: ChangePredicate, on_change: ChangeHandler) -> Subscription: ...

    def unsubscribe(self, subscription: Subscription) -> None: ...


class InMemoryRealtimeChannel:
    """Fan-out hub for change notifications delivered by database webhooks."""

    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self._subscriptions: dict[int, Subscription] = {}

    @property
    def active_subscriptions(self) -> int:
        return len(self._subscriptions)

    def subscriptions(self) -> list[Subscription]:
        return list(self._subscriptions.values())

    def subscribe(self, entity: str, predicate: ChangePredicate, on_change: ChangeHandler) -> Subscription:
        subscription = Subscription(id=next(self._ids), entity=entity, predicate=predicate, handler=on_change)
        self._subscriptions[subscription.id] = subscription
        logger.debug(
            "realtime subscribed id=%s entity=%s event=%s filter=%s",
            subscription.id,
            entity,
            predicate.event,
            predicate.filter_expression,
        )
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        self._subscriptions.pop(subscription.id, None)

    async def publish(self, change: ChangeEvent) -> int:
        matching = [
            subscription
            for subscription in self._subscriptions.values()
            if subscription.entity == change.entity and subscription.predicate.matches(change)
        ]
        if not matching:
            return 0

        outcomes = await asyncio.gather(
            *(subscription.handler(change) for subscription in matching),
            return_exceptions=True,
        )
        for subscription, outcome in zip(matching, outcomes):
            if isinstance(outcome, Exception):
                logger.error(
                    "realtime handler failed id=%s entity=%s: %s",
                    subscription.id,
                    change.entity,
                    outcome,
                )
        return len(matching)
