"""Filesystem object storage for local development and tests."""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import time
from pathlib import Path
from urllib.parse import quote

from tryon_render.storage.base import ObjectStorage

_DEFAULT_ROOT = Path.home() / ".tryon-render" / "objects"


class LocalObjectStorage(ObjectStorage):
    """Stores blobs under ``root``; signs URLs with HMAC-SHA256 when keyed."""

    def __init__(
        self,
        root: Path | str | None = None,
        base_url: str | None = None,
        signing_key: str | None = None,
        clock=time.time,
    ) -> None:
        self._root = Path(root) if root else _DEFAULT_ROOT
        self._base_url = base_url.rstrip("/") if base_url else None
        self._signing_key = signing_key
        self._clock = clock

    @property
    def root(self) -> Path:
        return self._root

    async def put(self, path: str, data: bytes, content_type: str) -> None:
        target = self._resolve(path)
        await asyncio.to_thread(self._write, target, data)

    async def signed_url(self, path: str, ttl_seconds: int) -> str:
        if not self._signing_key:
            raise RuntimeError("Local storage has no signing key configured")
        if not self._resolve(path).exists():
            raise FileNotFoundError(f"Object not found: {path}")
        expires = int(self._clock()) + int(ttl_seconds)
        token = self.sign(path, expires)
        return f"{self.public_url(path)}?expires={expires}&token={token}"

    def public_url(self, path: str) -> str:
        if self._base_url:
            return f"{self._base_url}/{quote(path)}"
        return self._resolve(path).as_uri()

    def sign(self, path: str, expires: int) -> str:
        message = f"{path}:{expires}".encode()
        return hmac.new(
            (self._signing_key or "").encode(), message, hashlib.sha256
        ).hexdigest()

    def _resolve(self, path: str) -> Path:
        target = (self._root / path).resolve()
        if not target.is_relative_to(self._root.resolve()):
            raise ValueError(f"Path escapes storage root: {path}")
        return target

    @staticmethod
    def _write(target: Path, data: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_suffix(target.suffix + ".tmp")
        tmp.write_bytes(data)
        tmp.replace(target)
