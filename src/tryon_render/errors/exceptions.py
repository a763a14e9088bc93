"""Custom exception hierarchy for tryon-render."""

from __future__ import annotations

from typing import Any


class TryOnRenderError(Exception):
    """Base exception for all tryon-render errors."""

    retryable = False

    def __init__(self, message: str = "", **kwargs: Any) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(TryOnRenderError):
    """Malformed render request. Never retried."""


class QuotaExceeded(TryOnRenderError):
    """The usage gate denied the request before any work happened."""

    def __init__(
        self,
        message: str = "",
        reason: str = "quota_exceeded",
        retry_after_seconds: int | None = None,
    ) -> None:
        super().__init__(message)
        self.reason = reason
        self.retry_after_seconds = retry_after_seconds


class CacheUnavailable(TryOnRenderError):
    """Metadata or blob storage failed. Absorbed by the orchestrator."""

    def __init__(self, message: str = "", original: Exception | None = None) -> None:
        super().__init__(message)
        self.original = original


class ProviderError(TryOnRenderError):
    """Base for errors raised while calling an image-generation provider."""

    def __init__(self, message: str = "", provider: str = "") -> None:
        super().__init__(message)
        self.provider = provider


class TransientError(ProviderError):
    """Transient provider error: safe to retry with backoff."""

    retryable = True


class ProviderTimeout(TransientError):
    """The provider call did not finish within the configured timeout."""

    def __init__(
        self,
        message: str = "",
        provider: str = "",
        original: Exception | None = None,
    ) -> None:
        super().__init__(message, provider=provider)
        self.error_type = "timeout"
        self.original = original


class ProviderServerError(TransientError):
    """5xx, rate limit, or connection failure.

    Examples: 429 rate limit, 500/502/503 server error, connection reset.
    """

    def __init__(
        self,
        message: str = "",
        provider: str = "",
        error_type: str = "server_error",
        http_status: int | None = None,
        retry_after: float | None = None,
        original: Exception | None = None,
    ) -> None:
        super().__init__(message, provider=provider)
        self.error_type = error_type
        self.http_status = http_status
        self.retry_after = retry_after
        self.original = original


class ProviderRejected(ProviderError):
    """Fatal for this provider: content policy, account state, auth, bad input.

    ``account_state`` marks rejections caused by the provider account
    (organisation verification, permission, billing) rather than the
    content, which are the only ones a fallback provider can fix.
    """

    def __init__(
        self,
        message: str = "",
        provider: str = "",
        error_type: str = "content_policy",
        http_status: int | None = None,
        account_state: bool = False,
    ) -> None:
        super().__init__(message, provider=provider)
        self.error_type = error_type
        self.http_status = http_status
        self.account_state = account_state


class ProviderUnavailable(ProviderError):
    """Retries exhausted against a provider."""

    def __init__(
        self,
        message: str = "",
        provider: str = "",
        attempts: int = 0,
        last_error: Exception | None = None,
    ) -> None:
        super().__init__(message, provider=provider)
        self.attempts = attempts
        self.last_error = last_error
