"""Process-local metadata store."""

from __future__ import annotations

import threading

from tryon_render.cache.base import MetadataStore
from tryon_render.cache.stats import CacheEntry, CacheWrite


class InMemoryMetadataStore(MetadataStore):
    """Dict-backed store for single-process deployments and tests."""

    def __init__(self) -> None:
        self._store: dict[tuple[str, str], CacheEntry] = {}
        self._lock = threading.Lock()

    def get(self, user_id: str, render_hash: str, now: float) -> CacheEntry | None:
        with self._lock:
            entry = self._store.get((user_id, render_hash))
            if entry is None or entry.is_expired(now):
                return None
            return entry.model_copy(deep=True)

    def upsert(self, write: CacheWrite, ttl_seconds: float, now: float) -> CacheEntry:
        key = (write.user_id, write.render_hash)
        with self._lock:
            existing = self._store.get(key)
            if existing is None:
                entry = CacheEntry(
                    **write.model_dump(),
                    hit_count=0,
                    last_hit_at=now,
                    expires_at=now + ttl_seconds,
                    created_at=now,
                    updated_at=now,
                )
            else:
                entry = existing.model_copy(
                    update={
                        **write.model_dump(),
                        "expires_at": now + ttl_seconds,
                        "updated_at": now,
                    }
                )
            self._store[key] = entry
            return entry.model_copy(deep=True)

    def increment_hit(self, user_id: str, render_hash: str, now: float) -> bool:
        key = (user_id, render_hash)
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return False
            self._store[key] = entry.model_copy(
                update={"hit_count": entry.hit_count + 1, "last_hit_at": now}
            )
            return True

    def purge_expired(self, now: float) -> int:
        with self._lock:
            expired = [key for key, entry in self._store.items() if entry.is_expired(now)]
            for key in expired:
                del self._store[key]
            return len(expired)

    def count(self) -> int:
        with self._lock:
            return len(self._store)

    def __len__(self) -> int:
        return self.count()
