"""Blob storage backends for rendered images."""

from tryon_render.storage.base import ObjectStorage
from tryon_render.storage.local import LocalObjectStorage
from tryon_render.storage.supabase import SupabaseObjectStorage

__all__ = ["ObjectStorage", "LocalObjectStorage", "SupabaseObjectStorage"]
