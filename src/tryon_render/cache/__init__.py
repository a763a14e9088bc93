"""Render cache: content-addressed keys, metadata stores and blob persistence."""

from tryon_render.cache.base import MetadataStore
from tryon_render.cache.keys import build_storage_path, canonical_render_payload, compute_render_hash
from tryon_render.cache.memory import InMemoryMetadataStore
from tryon_render.cache.sqlite import SQLiteMetadataStore
from tryon_render.cache.stats import CacheEntry, CacheStats, CacheWrite
from tryon_render.cache.store import CacheStore

__all__ = [
    "CacheStore",
    "CacheEntry",
    "CacheStats",
    "CacheWrite",
    "MetadataStore",
    "InMemoryMetadataStore",
    "SQLiteMetadataStore",
    "build_storage_path",
    "canonical_render_payload",
    "compute_render_hash",
]
