from __future__ import annotations

from enum import Enum
import json
import logging
from typing import Any

from jobsync.engine.models import CacheSnapshot
from jobsync.services.storage import KeyValueStorage, StorageError

logger = logging.getLogger(__name__)

SNAPSHOT_KEY_PREFIX = "jobsync:snapshot:"
SNAPSHOT_INDEX_KEY = "jobsync:snapshot-index"

_STORAGE_FAILURES = (StorageError, OSError)


class SnapshotWrite(str, Enum):
    WRITTEN = "written"
    REJECTED_STALE = "rejected_stale"
    STORAGE_ERROR = "storage_error"


def snapshot_key(domain: str, owner_key: str) -> str:
    return f"{SNAPSHOT_KEY_PREFIX}{domain}:{owner_key}"


class SnapshotStore:
    """Durable (domain, owner_key) -> snapshot map over a key-value storage.

    Reads are synchronous so the UI cache can be hydrated before the first
    network response. Storage failures and corrupt values are reported as a
    cache miss and never raised to the caller.
    """

    def __init__(self, storage: KeyValueStorage) -> None:
        self._storage = storage

    def read(self, domain: str, owner_key: str) -> CacheSnapshot | None:
        key = snapshot_key(domain, owner_key)
        try:
            raw = self._storage.get(key)
        except _STORAGE_FAILURES as exc:
            logger.warning("snapshot read failed domain=%s owner=%s: %s", domain, owner_key, exc)
            return None
        if raw is None:
            return None

        try:
            decoded = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("discarding corrupt snapshot domain=%s owner=%s", domain, owner_key)
            return None
        captured_at = decoded.get("captured_at") if isinstance(decoded, dict) else None
        if not isinstance(captured_at, int) or isinstance(captured_at, bool) or "payload" not in decoded:
            logger.warning("discarding malformed snapshot domain=%s owner=%s", domain, owner_key)
            return None
        return CacheSnapshot(domain=domain, owner_key=owner_key, payload=decoded["payload"], captured_at=captured_at)

    def write(self, snapshot: CacheSnapshot) -> SnapshotWrite:
        current = self.read(snapshot.domain, snapshot.owner_key)
        if current is not None and current.captured_at > snapshot.captured_at:
            logger.warning(
                "rejecting out-of-order snapshot domain=%s owner=%s stored=%s incoming=%s",
                snapshot.domain,
                snapshot.owner_key,
                current.captured_at,
                snapshot.captured_at,
            )
            return SnapshotWrite.REJECTED_STALE

        try:
            encoded = json.dumps({"payload": snapshot.payload, "captured_at": snapshot.captured_at})
        except (TypeError, ValueError) as exc:
            logger.warning("snapshot payload not serializable domain=%s: %s", snapshot.domain, exc)
            return SnapshotWrite.STORAGE_ERROR

        try:
            self._storage.set(snapshot_key(snapshot.domain, snapshot.owner_key), encoded)
        except _STORAGE_FAILURES as exc:
            logger.warning(
                "snapshot write failed domain=%s owner=%s: %s",
                snapshot.domain,
                snapshot.owner_key,
                exc,
            )
            return SnapshotWrite.STORAGE_ERROR

        self._remember(snapshot.domain, snapshot.owner_key)
        return SnapshotWrite.WRITTEN

    def entries(self) -> list[tuple[str, str]]:
        return list(self._read_index())

    def purge_owner(self, owner_key: str, domains: tuple[str, ...] = ()) -> int:
        """Remove every snapshot of `owner_key`.

        `domains` are removed even when the index lost track of them.
        """
        index = self._read_index()
        doomed = [entry for entry in index if entry[1] == owner_key]
        for domain in domains:
            if (domain, owner_key) not in doomed:
                doomed.append((domain, owner_key))
        removed = self._remove_entries(doomed)
        self._write_index([entry for entry in index if entry not in removed])
        return len(removed)

    def purge_all(self) -> int:
        index = self._read_index()
        removed = self._remove_entries(index)
        self._write_index([entry for entry in index if entry not in removed])
        return len(removed)

    def _remove_entries(self, entries: list[tuple[str, str]]) -> list[tuple[str, str]]:
        removed: list[tuple[str, str]] = []
        for domain, owner_key in entries:
            try:
                self._storage.remove(snapshot_key(domain, owner_key))
            except _STORAGE_FAILURES as exc:
                logger.error("snapshot purge failed domain=%s owner=%s: %s", domain, owner_key, exc)
                continue
            removed.append((domain, owner_key))
        return removed

    def _remember(self, domain: str, owner_key: str) -> None:
        index = self._read_index()
        if (domain, owner_key) in index:
            return
        index.append((domain, owner_key))
        self._write_index(index)

    def _read_index(self) -> list[tuple[str, str]]:
        try:
            raw = self._storage.get(SNAPSHOT_INDEX_KEY)
        except _STORAGE_FAILURES as exc:
            logger.warning("snapshot index read failed: %s", exc)
            return []
        if not raw:
            return []
        try:
            decoded: Any = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("discarding corrupt snapshot index")
            return []
        if not isinstance(decoded, list):
            return []

        entries: list[tuple[str, str]] = []
        for item in decoded:
            if isinstance(item, list) and len(item) == 2 and all(isinstance(part, str) for part in item):
                entries.append((item[0], item[1]))
        return entries

    def _write_index(self, entries: list[tuple[str, str]]) -> None:
        try:
            self._storage.set(SNAPSHOT_INDEX_KEY, json.dumps([list(entry) for entry in entries]))
        except _STORAGE_FAILURES as exc:
            logger.warning("snapshot index write failed: %s", exc)
