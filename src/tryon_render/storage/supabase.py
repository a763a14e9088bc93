"""Supabase Storage adapter over its REST API."""

from __future__ import annotations

from urllib.parse import quote

import httpx

from tryon_render.storage.base import ObjectStorage

DEFAULT_BUCKET = "generated-looks"
_CACHE_CONTROL_SECONDS = 604800


class SupabaseObjectStorage(ObjectStorage):
    """Uploads with upsert semantics into one bucket and signs read URLs."""

    def __init__(
        self,
        url: str,
        service_key: str,
        bucket: str = DEFAULT_BUCKET,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._url = url.rstrip("/")
        self._bucket = bucket
        self._client = client or httpx.AsyncClient(
            base_url=f"{self._url}/storage/v1",
            headers={"Authorization": f"Bearer {service_key}", "apikey": service_key},
            timeout=timeout,
        )

    async def put(self, path: str, data: bytes, content_type: str) -> None:
        response = await self._client.post(
            f"/object/{self._bucket}/{quote(path)}",
            content=data,
            headers={
                "Content-Type": content_type,
                "x-upsert": "true",
                "cache-control": f"max-age={_CACHE_CONTROL_SECONDS}",
            },
        )
        response.raise_for_status()

    async def signed_url(self, path: str, ttl_seconds: int) -> str:
        response = await self._client.post(
            f"/object/sign/{self._bucket}/{quote(path)}",
            json={"expiresIn": int(ttl_seconds)},
        )
        response.raise_for_status()
        signed = response.json().get("signedURL")
        if not signed:
            raise ValueError(f"Storage returned no signed URL for {path}")
        return f"{self._url}/storage/v1{signed}"

    def public_url(self, path: str) -> str:
        return f"{self._url}/storage/v1/object/public/{self._bucket}/{quote(path)}"

    async def close(self) -> None:
        await self._client.aclose()
