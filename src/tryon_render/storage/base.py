"""Object storage interface for rendered images."""

from __future__ import annotations

from abc import ABC, abstractmethod


class ObjectStorage(ABC):
    """Durable blob storage with signed and public URLs."""

    @abstractmethod
    async def put(self, path: str, data: bytes, content_type: str) -> None:
        """Write ``data`` at ``path``, overwriting any existing object."""

    @abstractmethod
    async def signed_url(self, path: str, ttl_seconds: int) -> str:
        """Short-lived authenticated URL for a private object."""

    @abstractmethod
    def public_url(self, path: str) -> str:
        """Stable unauthenticated URL for ``path``."""

    async def close(self) -> None:
        return None
