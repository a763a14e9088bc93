"""Package-level default configuration values."""

from __future__ import annotations

from typing import Any

# Cache settings
DEFAULT_CACHE_TTL_DAYS = 14
DEFAULT_SIGNED_URL_TTL_SECONDS = 3600
DEFAULT_CACHE_FAIL_OPEN = True
DEFAULT_METADATA_BACKEND = "sqlite"
DEFAULT_STORAGE_BACKEND = "local"
DEFAULT_SUPABASE_BUCKET = "generated-looks"

# Image normalisation before upload
DEFAULT_OPTIMIZE_IMAGES = True
DEFAULT_IMAGE_MAX_SIDE = 1400
DEFAULT_IMAGE_QUALITY = 88

# Retry settings
DEFAULT_MAX_RETRIES = 2
DEFAULT_RETRY_STRATEGY = "exponential"
DEFAULT_PROVIDER_TIMEOUT_MS = 60_000

# Single-flight
DEFAULT_LEASE_WAIT_TIMEOUT_MS = 120_000

# Providers
DEFAULT_PRIMARY_PROVIDER = "gemini"
DEFAULT_FALLBACK_PROVIDER = "openai"

# Usage gate
DEFAULT_GATE_ENABLED = True
DEFAULT_GATE_FAIL_OPEN = True

# Log level
DEFAULT_LOG_LEVEL = "WARNING"


def get_defaults() -> dict[str, Any]:
    """Return all defaults as a flat dictionary for merging."""
    return {
        "cache_ttl_days": DEFAULT_CACHE_TTL_DAYS,
        "signed_url_ttl_seconds": DEFAULT_SIGNED_URL_TTL_SECONDS,
        "cache_fail_open": DEFAULT_CACHE_FAIL_OPEN,
        "metadata_backend": DEFAULT_METADATA_BACKEND,
        "storage_backend": DEFAULT_STORAGE_BACKEND,
        "supabase_bucket": DEFAULT_SUPABASE_BUCKET,
        "optimize_images": DEFAULT_OPTIMIZE_IMAGES,
        "image_max_side": DEFAULT_IMAGE_MAX_SIDE,
        "image_quality": DEFAULT_IMAGE_QUALITY,
        "max_retries": DEFAULT_MAX_RETRIES,
        "retry_strategy": DEFAULT_RETRY_STRATEGY,
        "provider_timeout_ms": DEFAULT_PROVIDER_TIMEOUT_MS,
        "lease_wait_timeout_ms": DEFAULT_LEASE_WAIT_TIMEOUT_MS,
        "primary_provider": DEFAULT_PRIMARY_PROVIDER,
        "fallback_provider": DEFAULT_FALLBACK_PROVIDER,
        "gate_enabled": DEFAULT_GATE_ENABLED,
        "gate_fail_open": DEFAULT_GATE_FAIL_OPEN,
        "log_level": DEFAULT_LOG_LEVEL,
    }
