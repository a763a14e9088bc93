"""Primary provider: Gemini image models through google-genai."""

from __future__ import annotations

import base64
import logging

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from tryon_render.errors.exceptions import ProviderRejected, ProviderServerError, ProviderTimeout
from tryon_render.errors.retry import classify_genai_error
from tryon_render.providers.base import GenerationOptions, Provider
from tryon_render.types import ProviderImage, Quality
from tryon_render.utils.image import sniff_mime_type

logger = logging.getLogger(__name__)

DEFAULT_MODELS: dict[Quality, str] = {
    Quality.FLASH: "gemini-2.5-flash-image",
    Quality.PRO: "gemini-3-pro-image-preview",
}

_BLOCKED_FINISH_REASONS = {"SAFETY", "PROHIBITED_CONTENT", "BLOCKLIST", "IMAGE_SAFETY", "SPII"}


class GeminiImageProvider(Provider):
    name = "gemini"

    def __init__(
        self,
        api_key: str | None = None,
        models: dict[Quality, str] | None = None,
        timeout_ms: int | None = None,
        client: genai.Client | None = None,
    ) -> None:
        self._models = {**DEFAULT_MODELS, **(models or {})}
        if client is None:
            # google-genai expects timeout in milliseconds.
            http_options = types.HttpOptions(timeout=timeout_ms) if timeout_ms else None
            client = genai.Client(api_key=api_key, http_options=http_options)
        self._client = client

    def model_for(self, quality: Quality) -> str:
        return self._models[quality]

    async def generate(
        self,
        prompt: str,
        images: list[bytes],
        options: GenerationOptions,
    ) -> ProviderImage:
        model = options.model or self.model_for(options.quality)
        parts = [types.Part.from_text(text=prompt)]
        parts.extend(
            types.Part.from_bytes(data=image, mime_type=sniff_mime_type(image)) for image in images
        )
        try:
            response = await self._client.aio.models.generate_content(
                model=model,
                contents=[types.Content(role="user", parts=parts)],
                config=types.GenerateContentConfig(response_modalities=["TEXT", "IMAGE"]),
            )
        except genai_errors.APIError as exc:
            raise classify_genai_error(exc, self.name) from exc
        except httpx.TimeoutException as exc:
            raise ProviderTimeout(str(exc), provider=self.name, original=exc) from exc
        except httpx.TransportError as exc:
            raise ProviderServerError(
                str(exc), provider=self.name, error_type="connection", original=exc
            ) from exc

        return self._extract_image(response, model)

    def _extract_image(self, response: types.GenerateContentResponse, model: str) -> ProviderImage:
        feedback = getattr(response, "prompt_feedback", None)
        block_reason = getattr(feedback, "block_reason", None)
        if block_reason:
            raise ProviderRejected(
                f"Prompt blocked by safety filter: {block_reason}",
                provider=self.name,
                error_type="content_policy",
                http_status=400,
            )

        text_parts: list[str] = []
        for candidate in response.candidates or []:
            finish_reason = str(getattr(candidate.finish_reason, "value", candidate.finish_reason) or "")
            if finish_reason in _BLOCKED_FINISH_REASONS:
                raise ProviderRejected(
                    f"Generation blocked: {finish_reason}",
                    provider=self.name,
                    error_type="content_policy",
                    http_status=400,
                )
            content = candidate.content
            if not content:
                continue
            for part in content.parts or []:
                if part.text:
                    text_parts.append(part.text)
                inline_data = part.inline_data
                if inline_data is None or not inline_data.data:
                    continue
                raw = inline_data.data
                data = base64.b64decode(raw) if isinstance(raw, str) else bytes(raw)
                return ProviderImage(
                    data=data,
                    mime_type=inline_data.mime_type or "image/png",
                    model=model,
                )

        if text_parts:
            logger.warning("Model returned text but no image: %s", "".join(text_parts)[:300])
        raise ProviderServerError(
            "Model response completed without image data",
            provider=self.name,
            error_type="empty_response",
            http_status=502,
        )
