"""Top-level entry points: build_orchestrator(), render(), and their builders."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from tryon_render.cache.base import MetadataStore
from tryon_render.cache.memory import InMemoryMetadataStore
from tryon_render.cache.sqlite import SQLiteMetadataStore
from tryon_render.cache.store import CacheStore
from tryon_render.config.loader import load_render_config
from tryon_render.config.schema import MetadataBackend, RenderConfig, StorageBackend
from tryon_render.errors.exceptions import ValidationError
from tryon_render.gate.usage import UsageGate, UsageLedger
from tryon_render.orchestrator import GenerationOrchestrator
from tryon_render.providers.registry import (
    ProviderRegistry,
    build_provider_registry,
    select_providers,
)
from tryon_render.storage.base import ObjectStorage
from tryon_render.storage.local import LocalObjectStorage
from tryon_render.storage.supabase import SupabaseObjectStorage
from tryon_render.types import GenerationResult, RenderAssets, RenderRequest

logger = logging.getLogger(__name__)


def build_metadata_store(config: RenderConfig) -> MetadataStore:
    if config.metadata_backend == MetadataBackend.MEMORY:
        return InMemoryMetadataStore()
    return SQLiteMetadataStore(config.cache_db_path)


def build_object_storage(config: RenderConfig) -> ObjectStorage:
    if config.storage_backend == StorageBackend.SUPABASE:
        if not config.supabase_url or not config.supabase_service_key:
            raise ValidationError(
                "Supabase storage needs SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY"
            )
        return SupabaseObjectStorage(
            url=config.supabase_url,
            service_key=config.supabase_service_key,
            bucket=config.supabase_bucket,
        )
    return LocalObjectStorage(
        root=config.storage_root,
        base_url=config.storage_base_url,
        signing_key=config.storage_signing_key,
    )


def build_cache_store(config: RenderConfig) -> CacheStore:
    return CacheStore(
        metadata=build_metadata_store(config),
        storage=build_object_storage(config),
        ttl_days=config.cache_ttl_days,
        signed_url_ttl_seconds=config.signed_url_ttl_seconds,
        optimize_images=config.optimize_images,
        image_max_side=config.image_max_side,
        image_quality=config.image_quality,
        fail_open=config.cache_fail_open,
    )


def build_orchestrator(
    config: RenderConfig | None = None,
    ledger: UsageLedger | None = None,
    registry: ProviderRegistry | None = None,
    cache_store: CacheStore | None = None,
) -> GenerationOrchestrator:
    """Assemble an orchestrator from configuration.

    Providers come from ``registry`` when given, otherwise from whichever
    API keys the config carries. Without a ledger the usage gate is off.
    """
    config = config or load_render_config()
    registry = registry or build_provider_registry(config)
    primary, fallback = select_providers(config, registry)
    logger.info(
        "Provider routing: primary=%s fallback=%s",
        primary.name,
        fallback.name if fallback else "none",
    )
    gate = UsageGate(
        ledger,
        enabled=config.gate_enabled,
        fail_open=config.gate_fail_open,
    )
    return GenerationOrchestrator(
        config=config,
        cache_store=cache_store or build_cache_store(config),
        primary=primary,
        fallback=fallback,
        gate=gate,
    )


async def render_async(
    request: RenderRequest | dict[str, Any],
    assets: RenderAssets | None = None,
    config: RenderConfig | None = None,
    ledger: UsageLedger | None = None,
) -> GenerationResult:
    """One-shot render with a freshly built orchestrator."""
    orchestrator = build_orchestrator(config, ledger=ledger)
    try:
        return await orchestrator.generate_render(request, assets)
    finally:
        await orchestrator.aclose()


def render(
    request: RenderRequest | dict[str, Any],
    assets: RenderAssets | None = None,
    config: RenderConfig | None = None,
    ledger: UsageLedger | None = None,
) -> GenerationResult:
    """Synchronous wrapper around render_async()."""
    return asyncio.run(render_async(request, assets, config=config, ledger=ledger))
