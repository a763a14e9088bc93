"""Render cache store: metadata rows plus content-addressed blobs."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable

from tryon_render.cache.base import MetadataStore
from tryon_render.cache.keys import build_storage_path
from tryon_render.cache.stats import CacheEntry, CacheStats, CacheWrite
from tryon_render.errors.exceptions import CacheUnavailable
from tryon_render.storage.base import ObjectStorage
from tryon_render.utils.image import normalize_for_cache

logger = logging.getLogger(__name__)

_DAY_SECONDS = 24 * 3600


class CacheStore:
    """Per-user render cache with TTL expiry and hit accounting.

    Lookups resolve a short-lived signed URL for the blob on every call and
    fall back to the public URL when signing fails. With ``fail_open`` (the
    default) lookup errors count as misses; otherwise they raise
    CacheUnavailable.
    """

    def __init__(
        self,
        metadata: MetadataStore,
        storage: ObjectStorage,
        ttl_days: float = 14,
        signed_url_ttl_seconds: int = 3600,
        optimize_images: bool = True,
        image_max_side: int = 1400,
        image_quality: int = 88,
        fail_open: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._metadata = metadata
        self._storage = storage
        self._ttl_seconds = ttl_days * _DAY_SECONDS
        self._signed_url_ttl = signed_url_ttl_seconds
        self._optimize = optimize_images
        self._max_side = image_max_side
        self._quality = image_quality
        self._fail_open = fail_open
        self._clock = clock
        self._stats = CacheStats()

    @property
    def ttl_seconds(self) -> float:
        return self._ttl_seconds

    async def lookup(self, user_id: str, render_hash: str) -> CacheEntry | None:
        """Return the live entry for this render, or None on miss or failure."""
        try:
            entry = self._metadata.get(user_id, render_hash, self._clock())
            if entry is None:
                self._stats.misses += 1
                return None
            entry.image_url = await self.resolve_image_url(entry.storage_path)
        except Exception as exc:
            self._stats.errors += 1
            if not self._fail_open:
                raise CacheUnavailable(f"Cache lookup failed: {exc}", original=exc) from exc
            logger.warning("Cache lookup failed for %s, treating as miss: %s", render_hash, exc)
            self._stats.misses += 1
            return None

        self._stats.hits += 1
        return entry

    async def upsert(self, write: CacheWrite) -> CacheEntry:
        """Insert or refresh the row for ``(user_id, render_hash)``."""
        try:
            entry = self._metadata.upsert(write, self._ttl_seconds, self._clock())
        except Exception as exc:
            self._stats.errors += 1
            raise CacheUnavailable(f"Cache upsert failed: {exc}", original=exc) from exc
        self._stats.writes += 1
        entry.image_url = await self.resolve_image_url(entry.storage_path)
        return entry

    async def record_hit(self, user_id: str, render_hash: str) -> None:
        """Count one reuse. Silently ignores rows that no longer exist."""
        try:
            found = self._metadata.increment_hit(user_id, render_hash, self._clock())
        except Exception as exc:
            logger.warning("Hit accounting failed for %s: %s", render_hash, exc)
            return
        if not found:
            logger.debug("Hit accounting skipped, %s is gone", render_hash)

    async def put_blob(self, user_id: str, render_hash: str, image_bytes: bytes) -> str:
        """Write the render under ``cache/{user_id}/{render_hash}.{ext}``."""
        try:
            data, ext, content_type = await asyncio.to_thread(
                normalize_for_cache,
                image_bytes,
                self._max_side,
                self._quality,
                self._optimize,
            )
            path = build_storage_path(user_id, render_hash, ext)
            await self._storage.put(path, data, content_type)
        except Exception as exc:
            self._stats.errors += 1
            raise CacheUnavailable(f"Blob write failed: {exc}", original=exc) from exc
        return path

    async def resolve_image_url(self, storage_path: str) -> str:
        try:
            return await self._storage.signed_url(storage_path, self._signed_url_ttl)
        except Exception as exc:
            logger.debug("Signing %s failed, using public URL: %s", storage_path, exc)
            return self._storage.public_url(storage_path)

    def purge_expired(self) -> int:
        """Drop expired rows. Blobs are left for the storage lifecycle rules."""
        removed = self._metadata.purge_expired(self._clock())
        if removed:
            logger.info("Purged %d expired render cache entries", removed)
        return removed

    def stats(self) -> CacheStats:
        return self._stats.model_copy(update={"entries": self._metadata.count()})

    async def close(self) -> None:
        self._metadata.close()
        await self._storage.close()
