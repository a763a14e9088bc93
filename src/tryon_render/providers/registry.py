"""Provider registry and the primary/fallback routing policy."""

from __future__ import annotations

import logging
from typing import NamedTuple

from tryon_render.config.schema import RenderConfig
from tryon_render.errors.exceptions import ValidationError
from tryon_render.providers.base import Provider
from tryon_render.providers.gemini import GeminiImageProvider
from tryon_render.providers.openai_images import OpenAIImageProvider
from tryon_render.types import Quality

logger = logging.getLogger(__name__)


class ProviderInfo(NamedTuple):
    name: str
    flash_model: str
    pro_model: str


class ProviderRegistry:
    """Named, ready-to-call providers."""

    def __init__(self, providers: list[Provider] | None = None) -> None:
        self._providers: dict[str, Provider] = {}
        for provider in providers or []:
            self.register(provider)

    def register(self, provider: Provider) -> None:
        self._providers[provider.name] = provider

    def get(self, name: str) -> Provider:
        if name not in self._providers:
            raise KeyError(f"Provider '{name}' not found in registry")
        return self._providers[name]

    def has(self, name: str) -> bool:
        return name in self._providers

    def list_providers(self) -> list[ProviderInfo]:
        return [
            ProviderInfo(
                name=p.name,
                flash_model=p.model_for(Quality.FLASH),
                pro_model=p.model_for(Quality.PRO),
            )
            for p in self._providers.values()
        ]

    async def close(self) -> None:
        for provider in self._providers.values():
            await provider.close()


def build_provider_registry(config: RenderConfig) -> ProviderRegistry:
    """Instantiate every provider that has credentials configured."""
    registry = ProviderRegistry()

    if config.gemini_api_key:
        models = {}
        if config.gemini_flash_model:
            models[Quality.FLASH] = config.gemini_flash_model
        if config.gemini_pro_model:
            models[Quality.PRO] = config.gemini_pro_model
        registry.register(
            GeminiImageProvider(
                api_key=config.gemini_api_key,
                models=models,
                timeout_ms=config.provider_timeout_ms,
            )
        )

    if config.openai_api_key:
        registry.register(
            OpenAIImageProvider(
                api_key=config.openai_api_key,
                base_url=config.openai_base_url,
                model=config.openai_image_model,
                size=config.openai_image_size,
                timeout_seconds=config.provider_timeout_ms / 1000,
            )
        )

    return registry


def select_providers(
    config: RenderConfig, registry: ProviderRegistry
) -> tuple[Provider, Provider | None]:
    """Pick the primary and optional fallback provider.

    The configured primary wins when available. If only the configured
    fallback is available it is promoted to primary and no fallback is
    used. A fallback equal to the primary is dropped.
    """
    primary_name = config.primary_provider
    fallback_name = config.fallback_provider

    if not registry.has(primary_name):
        if fallback_name and registry.has(fallback_name):
            logger.warning(
                "Primary provider '%s' is not configured, using '%s' alone",
                primary_name,
                fallback_name,
            )
            return registry.get(fallback_name), None
        raise ValidationError(
            f"No image provider available: configure credentials for '{primary_name}'"
            + (f" or '{fallback_name}'" if fallback_name else "")
        )

    primary = registry.get(primary_name)
    if not fallback_name or fallback_name == primary_name or not registry.has(fallback_name):
        return primary, None
    return primary, registry.get(fallback_name)
