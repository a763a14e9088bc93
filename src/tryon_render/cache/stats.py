"""Cache entry and statistics models."""

from __future__ import annotations

import time
import uuid

from pydantic import BaseModel, Field

from tryon_render.types import Quality, SourceSurface, View


class CacheEntry(BaseModel):
    """A cached render: blob location, provenance and reuse telemetry.

    ``image_url`` is resolved per lookup and never written to the
    metadata store.
    """

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    user_id: str
    render_hash: str
    storage_path: str
    image_url: str | None = None

    source_surface: SourceSurface
    quality: Quality
    preset: str
    view: View
    keep_pose: bool = False
    use_face_refs: bool = True
    slot_signature: dict[str, str] = Field(default_factory=dict)
    face_refs_signature: str | None = None
    model: str

    hit_count: int = Field(default=0, ge=0)
    last_hit_at: float = Field(default_factory=time.time)

    expires_at: float
    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)

    def is_expired(self, now: float | None = None) -> bool:
        return (time.time() if now is None else now) >= self.expires_at


class CacheWrite(BaseModel):
    """Fields a caller supplies when upserting a render into the cache."""

    user_id: str
    render_hash: str
    storage_path: str
    source_surface: SourceSurface
    quality: Quality
    preset: str
    view: View
    keep_pose: bool = False
    use_face_refs: bool = True
    slot_signature: dict[str, str] = Field(default_factory=dict)
    face_refs_signature: str | None = None
    model: str


class CacheStats(BaseModel):
    """Aggregate cache statistics."""

    entries: int = 0
    hits: int = 0
    misses: int = 0
    errors: int = 0
    writes: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0
