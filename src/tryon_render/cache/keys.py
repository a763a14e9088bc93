"""Render hash generation: content-addressed, order-independent."""

from __future__ import annotations

import hashlib
import json
from typing import Any

from tryon_render.types import RenderRequest

HASH_VERSION = 1
CACHE_PREFIX = "cache"


def canonical_render_payload(request: RenderRequest, version: int = HASH_VERSION) -> bytes:
    """Serialize every render-determining field into stable, compact JSON.

    Optional fields stay as explicit ``null`` so a missing value never
    collides with an empty string. Mapping fields are key-sorted.
    """
    document: dict[str, Any] = {
        "version": version,
        "user_id": request.user_id,
        "source_surface": request.source_surface.value,
        "quality": request.quality.value,
        "preset": request.preset,
        "custom_scene": request.custom_scene if request.preset == "custom" else None,
        "view": request.view.value,
        "keep_pose": request.keep_pose,
        "use_face_refs": request.use_face_refs,
        "slot_signature": _sorted_items(request.slot_signature),
        "slot_fits": _sorted_items({k: v.value for k, v in request.slot_fits.items()}),
        "face_refs_signature": request.face_refs_signature,
        "base_image_signature": request.base_image_signature,
    }
    serialized = json.dumps(document, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return serialized.encode("utf-8")


def compute_render_hash(request: RenderRequest, version: int = HASH_VERSION) -> str:
    """Return the 64-char SHA256 hex digest identifying this render."""
    return hashlib.sha256(canonical_render_payload(request, version)).hexdigest()


def build_storage_path(user_id: str, render_hash: str, ext: str) -> str:
    """Blob path for a cached render: ``cache/{user_id}/{render_hash}.{ext}``."""
    return f"{CACHE_PREFIX}/{user_id}/{render_hash}.{ext.lstrip('.')}"


def _sorted_items(mapping: dict[str, str]) -> list[list[str]]:
    return [[key, mapping[key]] for key in sorted(mapping)]
