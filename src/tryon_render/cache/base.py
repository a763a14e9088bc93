"""Metadata store interface shared by the in-memory and SQLite backends."""

from __future__ import annotations

from abc import ABC, abstractmethod

from tryon_render.cache.stats import CacheEntry, CacheWrite


class MetadataStore(ABC):
    """Relational-style table keyed by ``(user_id, render_hash)``.

    Implementations must make ``upsert`` and ``increment_hit`` atomic with
    respect to concurrent callers.
    """

    @abstractmethod
    def get(self, user_id: str, render_hash: str, now: float) -> CacheEntry | None:
        """Return the entry if it exists and ``expires_at > now``."""

    @abstractmethod
    def upsert(self, write: CacheWrite, ttl_seconds: float, now: float) -> CacheEntry:
        """Insert or refresh the entry; ``expires_at = now + ttl_seconds``."""

    @abstractmethod
    def increment_hit(self, user_id: str, render_hash: str, now: float) -> bool:
        """Add one to ``hit_count``. Returns False when there is no such row."""

    @abstractmethod
    def purge_expired(self, now: float) -> int:
        """Delete expired rows and return how many were removed."""

    @abstractmethod
    def count(self) -> int: ...

    def close(self) -> None:
        return None
