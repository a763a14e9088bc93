"""Fallback provider: OpenAI image models."""

from __future__ import annotations

import base64
import logging

import httpx
import openai

from tryon_render.errors.exceptions import ProviderServerError
from tryon_render.errors.retry import classify_openai_error
from tryon_render.providers.base import GenerationOptions, Provider
from tryon_render.types import ProviderImage, Quality
from tryon_render.utils.image import sniff_mime_type

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-image-1"

_QUALITY = {
    Quality.FLASH: "medium",
    Quality.PRO: "high",
}

_EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/webp": "webp",
}


class OpenAIImageProvider(Provider):
    """Edits the person photo when images are given, generates from text otherwise."""

    name = "openai"

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str = DEFAULT_MODEL,
        size: str = "1024x1536",
        timeout_seconds: float | None = None,
        client: openai.AsyncOpenAI | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._client = client or openai.AsyncOpenAI(
            api_key=api_key, base_url=base_url, timeout=timeout_seconds, max_retries=0
        )
        self._http = http_client
        self._model = model
        self._size = size

    def model_for(self, quality: Quality) -> str:
        return self._model

    async def generate(
        self,
        prompt: str,
        images: list[bytes],
        options: GenerationOptions,
    ) -> ProviderImage:
        model = options.model or self.model_for(options.quality)
        kwargs: dict = {
            "model": model,
            "prompt": prompt,
            "size": self._size,
            "quality": _QUALITY[options.quality],
            "n": 1,
        }
        try:
            if images:
                files = [
                    (f"input_{i}.{_EXTENSIONS.get(sniff_mime_type(img), 'png')}", img, sniff_mime_type(img))
                    for i, img in enumerate(images)
                ]
                response = await self._client.images.edit(image=files, **kwargs)
            else:
                response = await self._client.images.generate(**kwargs)
        except openai.OpenAIError as exc:
            raise classify_openai_error(exc, self.name) from exc

        if not response.data:
            raise ProviderServerError(
                "Image response contained no data",
                provider=self.name,
                error_type="empty_response",
                http_status=502,
            )
        item = response.data[0]
        if item.b64_json:
            data = base64.b64decode(item.b64_json)
        elif item.url:
            data = await self._download(item.url)
        else:
            raise ProviderServerError(
                "Image response had neither b64_json nor url",
                provider=self.name,
                error_type="empty_response",
                http_status=502,
            )
        return ProviderImage(data=data, mime_type=sniff_mime_type(data), model=model)

    async def _download(self, url: str) -> bytes:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=60.0)
        try:
            response = await self._http.get(url)
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise ProviderServerError(
                str(exc), provider=self.name, error_type="download_timeout", original=exc
            ) from exc
        except httpx.HTTPError as exc:
            raise ProviderServerError(
                str(exc), provider=self.name, error_type="download_failed", original=exc
            ) from exc
        return response.content

    async def close(self) -> None:
        await self._client.close()
        if self._http is not None:
            await self._http.aclose()
