from __future__ import annotations

from dataclasses import dataclass
import time

from jobsync.engine.models import CacheSnapshot


@dataclass(frozen=True, slots=True)
class FreshnessVerdict:
    fresh: bool
    reason: str
    age_ms: int | None


def now_ms() -> int:
    return int(time.time() * 1000)


def is_fresh(snapshot: CacheSnapshot | None, freshness_window_ms: int, *, now: int | None = None) -> bool:
    return check_freshness(snapshot, freshness_window_ms, now=now).fresh


def check_freshness(
    snapshot: CacheSnapshot | None,
    freshness_window_ms: int,
    *,
    now: int | None = None,
) -> FreshnessVerdict:
    if snapshot is None:
        return FreshnessVerdict(fresh=False, reason="missing_snapshot", age_ms=None)

    current = now if now is not None else now_ms()
    # Clock skew between writer and reader must not produce a negative age.
    age_ms = max(0, current - snapshot.captured_at)
    if age_ms < max(0, freshness_window_ms):
        return FreshnessVerdict(fresh=True, reason="freshness_within_window", age_ms=age_ms)
    return FreshnessVerdict(fresh=False, reason="stale_threshold_exceeded", age_ms=age_ms)
