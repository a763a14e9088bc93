"""Error handling: exceptions, retry logic, and provider fallback."""

from tryon_render.errors.exceptions import (
    CacheUnavailable,
    ProviderError,
    ProviderRejected,
    ProviderServerError,
    ProviderTimeout,
    ProviderUnavailable,
    QuotaExceeded,
    TransientError,
    TryOnRenderError,
    ValidationError,
)

__all__ = [
    "TryOnRenderError",
    "ValidationError",
    "QuotaExceeded",
    "CacheUnavailable",
    "ProviderError",
    "TransientError",
    "ProviderTimeout",
    "ProviderServerError",
    "ProviderRejected",
    "ProviderUnavailable",
]
