from __future__ import annotations

import logging

from jobsync.engine.models import Payload, SyncDomain
from jobsync.services.query_cache import QueryCache

logger = logging.getLogger(__name__)


class QueryCacheBridge:
    """Write-only sink from the sync engine into the reactive UI cache."""

    def __init__(self, cache: QueryCache) -> None:
        self._cache = cache

    def push(self, domain: SyncDomain | str, owner_key: str, payload: Payload) -> None:
        name = domain if isinstance(domain, str) else domain.name
        self._cache.set_entry((name, owner_key), payload)
        if isinstance(domain, str):
            return

        for projection_name, project in domain.projections.items():
            try:
                derived = project(payload)
            except Exception:
                logger.exception("projection failed domain=%s projection=%s", name, projection_name)
                continue
            self._cache.set_entry((projection_name, owner_key), derived)

    def reset(self) -> None:
        self._cache.clear()
