"""Pydantic model for the resolved runtime configuration."""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, Field

from tryon_render.config.defaults import (
    DEFAULT_CACHE_TTL_DAYS,
    DEFAULT_IMAGE_MAX_SIDE,
    DEFAULT_IMAGE_QUALITY,
    DEFAULT_LEASE_WAIT_TIMEOUT_MS,
    DEFAULT_MAX_RETRIES,
    DEFAULT_PROVIDER_TIMEOUT_MS,
    DEFAULT_SIGNED_URL_TTL_SECONDS,
    DEFAULT_SUPABASE_BUCKET,
)
from tryon_render.types import OperationKind, RetryConfig, RetryStrategy


class MetadataBackend(StrEnum):
    MEMORY = "memory"
    SQLITE = "sqlite"


class StorageBackend(StrEnum):
    LOCAL = "local"
    SUPABASE = "supabase"


class RenderConfig(BaseModel):
    """Everything the orchestrator and its collaborators are built from."""

    model_config = {"extra": "ignore"}

    # Cache
    cache_ttl_days: int = Field(default=DEFAULT_CACHE_TTL_DAYS, ge=1)
    signed_url_ttl_seconds: int = Field(default=DEFAULT_SIGNED_URL_TTL_SECONDS, ge=1)
    cache_fail_open: bool = True
    metadata_backend: MetadataBackend = MetadataBackend.SQLITE
    cache_db_path: str | None = None
    optimize_images: bool = True
    image_max_side: int = Field(default=DEFAULT_IMAGE_MAX_SIDE, ge=64)
    image_quality: int = Field(default=DEFAULT_IMAGE_QUALITY, ge=1, le=100)

    # Object storage
    storage_backend: StorageBackend = StorageBackend.LOCAL
    storage_root: str | None = None
    storage_base_url: str | None = None
    storage_signing_key: str | None = None
    supabase_url: str | None = None
    supabase_service_key: str | None = None
    supabase_bucket: str = DEFAULT_SUPABASE_BUCKET

    # Retry
    max_retries: int = Field(default=DEFAULT_MAX_RETRIES, ge=0)
    retry_strategy: RetryStrategy = RetryStrategy.EXPONENTIAL
    retry_initial_wait: float = Field(default=1.0, ge=0)
    retry_jitter: float = Field(default=0.25, ge=0, le=1)
    retry_max_wait: float = Field(default=30.0, ge=0)
    provider_timeout_ms: int = Field(default=DEFAULT_PROVIDER_TIMEOUT_MS, ge=1)

    # Single-flight
    lease_wait_timeout_ms: int = Field(default=DEFAULT_LEASE_WAIT_TIMEOUT_MS, ge=1)

    # Providers
    primary_provider: str = "gemini"
    fallback_provider: str | None = "openai"
    gemini_api_key: str | None = None
    gemini_flash_model: str | None = None
    gemini_pro_model: str | None = None
    openai_api_key: str | None = None
    openai_base_url: str | None = None
    openai_image_model: str = "gpt-image-1"
    openai_image_size: str = "1024x1536"

    # Usage gate
    gate_enabled: bool = True
    gate_fail_open: bool = True
    operation_kind: OperationKind = OperationKind.VIRTUAL_TRY_ON

    log_level: str = "WARNING"

    @property
    def retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_retries=self.max_retries,
            strategy=self.retry_strategy,
            initial_wait=self.retry_initial_wait,
            jitter=self.retry_jitter,
            max_wait=self.retry_max_wait,
            timeout_seconds=self.provider_timeout_ms / 1000,
        )

    @property
    def lease_wait_timeout_seconds(self) -> float:
        return self.lease_wait_timeout_ms / 1000
