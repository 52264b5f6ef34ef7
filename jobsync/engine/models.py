from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

Payload = Any
Fetcher = Callable[[str], Awaitable[Payload]]
Projection = Callable[[Payload], Any]

USER_PREFIX = "u:"
ORG_PREFIX = "o:"


class SyncError(Exception):
    """Base error for programming mistakes surfaced by the sync engine."""


class UnknownDomainError(SyncError, KeyError):
    """Raised when a run targets a domain that was never registered."""


class DuplicateDomainError(SyncError):
    """Raised when a domain name is registered twice."""


class EngineNotInitializedError(SyncError):
    """Raised when the engine is driven without an active session."""


class Role(str, Enum):
    JOB_SEEKER = "job_seeker"
    EMPLOYER = "employer"


@dataclass(frozen=True, slots=True)
class Session:
    user_id: str
    role: Role
    organization_id: str | None = None
    access_token: str | None = None
    avatar_path: str | None = None


@dataclass(frozen=True, slots=True)
class OwnerScope:
    user_id: str
    organization_id: str | None = None


def user_owner_key(session: Session) -> str:
    return f"{USER_PREFIX}{session.user_id}"


def organization_owner_key(session: Session) -> str:
    if not session.organization_id:
        return user_owner_key(session)
    return f"{USER_PREFIX}{session.user_id}|{ORG_PREFIX}{session.organization_id}"


def parse_owner_key(owner_key: str) -> OwnerScope:
    user_id: str | None = None
    organization_id: str | None = None
    for part in owner_key.split("|"):
        if part.startswith(USER_PREFIX):
            user_id = part[len(USER_PREFIX) :]
        elif part.startswith(ORG_PREFIX):
            organization_id = part[len(ORG_PREFIX) :] or None
    if not user_id:
        raise ValueError(f"owner key carries no user identity: {owner_key!r}")
    return OwnerScope(user_id=user_id, organization_id=organization_id)


@dataclass(frozen=True, slots=True)
class SyncDomain:
    name: str
    owner_key_of: Callable[[Session], str]
    fetch: Fetcher
    freshness_window_ms: int
    refresh_interval_ms: int | None = None
    projections: Mapping[str, Projection] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class CacheSnapshot:
    domain: str
    owner_key: str
    payload: Payload
    captured_at: int


class TriggerKind(str, Enum):
    LOGIN = "login"
    FIRST_INTERACTION = "first-interaction"
    VISIBILITY_REGAIN = "visibility-regain"
    TIMER = "timer"
    REALTIME = "realtime"
    MOUNT = "mount"
    MANUAL = "manual"


@dataclass(frozen=True, slots=True)
class TriggerEvent:
    kind: TriggerKind
    domain: str | None = None


class SyncStatus(str, Enum):
    FETCHED = "fetched"
    FRESH = "fresh"
    IN_FLIGHT = "in_flight"
    JOINED = "joined"
    FAILED = "failed"
    SUPERSEDED = "superseded"
    DISCARDED = "discarded"


@dataclass(frozen=True, slots=True)
class SyncResult:
    domain: str
    owner_key: str
    status: SyncStatus
    error: str | None = None
    persisted: bool = False

    @property
    def ok(self) -> bool:
        return self.status not in {SyncStatus.FAILED, SyncStatus.DISCARDED}


@dataclass(frozen=True, slots=True)
class PassReport:
    event: TriggerEvent
    forced: bool
    started_at: int
    finished_at: int
    results: tuple[SyncResult, ...]

    @property
    def failed_domains(self) -> list[str]:
        return [result.domain for result in self.results if result.status is SyncStatus.FAILED]
