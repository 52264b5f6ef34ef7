from __future__ import annotations

from dataclasses import dataclass, replace
import json
import logging
from typing import Any

logger = logging.getLogger(__name__)

MINUTE_MS = 60 * 1000
PIPELINE_POLL_MS = 10 * 1000


@dataclass(frozen=True, slots=True)
class DomainTiming:
    freshness_window_ms: int
    refresh_interval_ms: int | None = None


DEFAULT_DOMAIN_TIMING = DomainTiming(freshness_window_ms=5 * MINUTE_MS, refresh_interval_ms=5 * MINUTE_MS)

DEFAULT_DOMAIN_TIMINGS: dict[str, DomainTiming] = {
    "available_jobs": DomainTiming(5 * MINUTE_MS, 5 * MINUTE_MS),
    "saved_jobs": DomainTiming(5 * MINUTE_MS, 5 * MINUTE_MS),
    "my_applications": DomainTiming(5 * MINUTE_MS, 5 * MINUTE_MS),
    "candidate_interviews": DomainTiming(5 * MINUTE_MS, 5 * MINUTE_MS),
    "conversations": DomainTiming(5 * MINUTE_MS, 5 * MINUTE_MS),
    "messages": DomainTiming(3 * MINUTE_MS, 3 * MINUTE_MS),
    "unread_count": DomainTiming(3 * MINUTE_MS, 3 * MINUTE_MS),
    # Employer listings are kept current by realtime bindings, not polling.
    "employer_jobs": DomainTiming(0, None),
    "employer_interviews": DomainTiming(0, None),
    # Candidate pipeline: realtime first, short backup polling.
    "my_candidates": DomainTiming(PIPELINE_POLL_MS, PIPELINE_POLL_MS),
    "candidate_applications": DomainTiming(PIPELINE_POLL_MS, PIPELINE_POLL_MS),
    "stage_settings": DomainTiming(PIPELINE_POLL_MS, PIPELINE_POLL_MS),
}


def parse_domain_timing_overrides(raw: str | None) -> dict[str, dict[str, int | None]]:
    """Parse `{"domain": {"freshness_window_ms": int, "refresh_interval_ms": int | null}}`.

    Invalid JSON or entries are ignored rather than failing startup.
    """
    if not raw:
        return {}
    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("ignoring unparsable domain timing overrides")
        return {}
    if not isinstance(decoded, dict):
        return {}

    parsed: dict[str, dict[str, int | None]] = {}
    for raw_domain, raw_rules in decoded.items():
        if not isinstance(raw_domain, str) or not isinstance(raw_rules, dict):
            continue
        domain = raw_domain.strip()
        if not domain:
            continue

        rules: dict[str, int | None] = {}
        window = _as_non_negative_int(raw_rules.get("freshness_window_ms"))
        if window is not None:
            rules["freshness_window_ms"] = window
        if "refresh_interval_ms" in raw_rules:
            interval = raw_rules.get("refresh_interval_ms")
            if interval is None:
                rules["refresh_interval_ms"] = None
            else:
                parsed_interval = _as_non_negative_int(interval)
                if parsed_interval:
                    rules["refresh_interval_ms"] = parsed_interval
        if rules:
            parsed[domain] = rules
    return parsed


def resolve_domain_timings(raw_overrides: str | None = None) -> dict[str, DomainTiming]:
    timings = dict(DEFAULT_DOMAIN_TIMINGS)
    for domain, rules in parse_domain_timing_overrides(raw_overrides).items():
        timings[domain] = replace(timings.get(domain, DEFAULT_DOMAIN_TIMING), **rules)
    return timings


def _as_non_negative_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        return None
