from __future__ import annotations

from collections.abc import Callable
import logging
from typing import Any

logger = logging.getLogger(__name__)

CacheKey = tuple[str, ...]
CacheListener = Callable[[CacheKey, Any], None]


class QueryCache:
    """Reactive in-memory cache read by views; listeners fire on every write."""

    def __init__(self) -> None:
        self._entries: dict[CacheKey, Any] = {}
        self._listeners: list[CacheListener] = []

    def set_entry(self, cache_key: CacheKey, value: Any) -> None:
        self._entries[cache_key] = value
        self._notify(cache_key, value)

    def get_entry(self, cache_key: CacheKey) -> Any | None:
        return self._entries.get(cache_key)

    def has_entry(self, cache_key: CacheKey) -> bool:
        return cache_key in self._entries

    def keys(self) -> list[CacheKey]:
        return list(self._entries)

    def clear(self) -> None:
        self._entries.clear()

    def subscribe(self, listener: CacheListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, cache_key: CacheKey, value: Any) -> None:
        for listener in list(self._listeners):
            try:
                listener(cache_key, value)
            except Exception:
                logger.exception("query cache listener failed key=%s", cache_key)
