"""Retry engine: bounded exponential backoff wrapping single provider calls."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

import openai
from google.genai import errors as genai_errors
from tenacity import AsyncRetrying, RetryCallState, RetryError, retry_if_exception, stop_after_attempt

from tryon_render.errors.exceptions import (
    ProviderError,
    ProviderRejected,
    ProviderServerError,
    ProviderTimeout,
    ProviderUnavailable,
    TryOnRenderError,
)
from tryon_render.types import RetryConfig, RetryStrategy

logger = logging.getLogger(__name__)

T = TypeVar("T")

_SAFETY_MARKERS = ("safety", "policy", "moderation", "prohibited", "blocked")
_ACCOUNT_MARKERS = ("verif", "permission", "billing", "organization", "not available in your")


def classify_openai_error(exc: Exception, provider: str = "openai") -> ProviderError:
    """Convert an openai exception to our exception hierarchy."""
    if isinstance(exc, openai.RateLimitError):
        retry_after = None
        if getattr(exc, "response", None) is not None:
            retry_after_str = exc.response.headers.get("retry-after")
            if retry_after_str:
                with contextlib.suppress(ValueError):
                    retry_after = float(retry_after_str)
        return ProviderServerError(
            str(exc),
            provider=provider,
            error_type="rate_limit",
            http_status=429,
            retry_after=retry_after,
            original=exc,
        )
    if isinstance(exc, openai.APITimeoutError):
        return ProviderTimeout(str(exc), provider=provider, original=exc)
    if isinstance(exc, openai.APIConnectionError):
        return ProviderServerError(
            str(exc), provider=provider, error_type="connection", original=exc
        )
    if isinstance(exc, openai.InternalServerError):
        return ProviderServerError(
            str(exc),
            provider=provider,
            http_status=getattr(exc, "status_code", 500),
            original=exc,
        )
    if isinstance(exc, openai.AuthenticationError):
        return ProviderRejected(
            str(exc), provider=provider, error_type="auth_failure", http_status=401
        )
    if isinstance(exc, openai.PermissionDeniedError):
        return ProviderRejected(
            str(exc),
            provider=provider,
            error_type="account_verification",
            http_status=403,
            account_state=True,
        )
    if isinstance(exc, openai.NotFoundError):
        return ProviderRejected(
            str(exc),
            provider=provider,
            error_type="model_not_found",
            http_status=404,
            account_state=True,
        )
    if isinstance(exc, openai.BadRequestError):
        text = str(exc).lower()
        error_type = "content_policy" if any(m in text for m in _SAFETY_MARKERS) else "bad_input"
        return ProviderRejected(str(exc), provider=provider, error_type=error_type, http_status=400)
    if isinstance(exc, openai.APIStatusError) and exc.status_code >= 500:
        return ProviderServerError(
            str(exc), provider=provider, http_status=exc.status_code, original=exc
        )
    return ProviderRejected(str(exc), provider=provider, error_type="unknown")


def classify_genai_error(exc: Exception, provider: str = "gemini") -> ProviderError:
    """Convert a google-genai exception to our exception hierarchy."""
    if not isinstance(exc, genai_errors.APIError):
        return ProviderRejected(str(exc), provider=provider, error_type="unknown")

    code = exc.code or 0
    status = (exc.status or "").upper()
    text = str(exc).lower()

    if code == 429 or status == "RESOURCE_EXHAUSTED":
        return ProviderServerError(
            str(exc), provider=provider, error_type="rate_limit", http_status=429, original=exc
        )
    if code in (408, 504) or status == "DEADLINE_EXCEEDED":
        return ProviderTimeout(str(exc), provider=provider, original=exc)
    if isinstance(exc, genai_errors.ServerError) or code >= 500:
        return ProviderServerError(str(exc), provider=provider, http_status=code, original=exc)
    if code == 401 or status == "UNAUTHENTICATED":
        return ProviderRejected(
            str(exc), provider=provider, error_type="auth_failure", http_status=code
        )
    if code == 403 or status == "PERMISSION_DENIED" or any(m in text for m in _ACCOUNT_MARKERS):
        return ProviderRejected(
            str(exc),
            provider=provider,
            error_type="account_verification",
            http_status=code,
            account_state=True,
        )
    if code == 404:
        return ProviderRejected(
            str(exc),
            provider=provider,
            error_type="model_not_found",
            http_status=404,
            account_state=True,
        )
    if any(m in text for m in _SAFETY_MARKERS):
        return ProviderRejected(
            str(exc), provider=provider, error_type="content_policy", http_status=code
        )
    return ProviderRejected(str(exc), provider=provider, error_type="bad_input", http_status=code)


def compute_wait(
    attempt: int,
    strategy: RetryStrategy = RetryStrategy.EXPONENTIAL,
    initial_wait: float = 1.0,
    jitter: float = 0.25,
    max_wait: float = 30.0,
) -> float:
    """Compute wait time before retry ``attempt`` (0-based)."""
    if strategy == RetryStrategy.EXPONENTIAL:
        wait = initial_wait * (2**attempt)
    elif strategy == RetryStrategy.LINEAR:
        wait = initial_wait * (attempt + 1)
    else:  # FIXED
        wait = initial_wait

    if jitter:
        wait += random.uniform(-wait * jitter, wait * jitter)

    return min(max(wait, 0.0), max_wait)


def _wait_for(retry_config: RetryConfig) -> Callable[[RetryCallState], float]:
    def wait(retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        retry_after = getattr(exc, "retry_after", None)
        if retry_after is not None:
            return min(float(retry_after), retry_config.max_wait)
        return compute_wait(
            retry_state.attempt_number - 1,
            retry_config.strategy,
            initial_wait=retry_config.initial_wait,
            jitter=retry_config.jitter,
            max_wait=retry_config.max_wait,
        )

    return wait


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, TryOnRenderError) and exc.retryable


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    retry_config: RetryConfig,
    *,
    provider_name: str = "",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run one provider call with timeout, backoff and a bounded retry budget.

    Transient errors are retried up to ``retry_config.max_retries`` times and
    then surface as ProviderUnavailable. Anything else is raised on the spot.
    Exceptions from outside the package hierarchy are raised as
    ProviderRejected with ``error_type="unknown"``.
    """

    async def attempt() -> T:
        try:
            async with asyncio.timeout(retry_config.timeout_seconds):
                return await operation()
        except TryOnRenderError:
            raise
        except TimeoutError as exc:
            raise ProviderTimeout(
                f"{provider_name or 'provider'} did not answer within "
                f"{retry_config.timeout_seconds or 0:.1f}s",
                provider=provider_name,
                original=exc,
            ) from exc
        except Exception as exc:
            # Unclassified provider failures are fatal for this provider
            raise ProviderRejected(
                f"{provider_name or 'provider'} failed: {type(exc).__name__}: {exc}",
                provider=provider_name,
                error_type="unknown",
            ) from exc

    def before_sleep(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "Transient error from %s (attempt %d/%d): %s. Retrying in %.2fs",
            provider_name or "provider",
            retry_state.attempt_number,
            retry_config.max_attempts,
            getattr(exc, "error_type", type(exc).__name__),
            retry_state.upcoming_sleep,
        )

    retrying = AsyncRetrying(
        stop=stop_after_attempt(retry_config.max_attempts),
        retry=retry_if_exception(_is_retryable),
        wait=_wait_for(retry_config),
        sleep=sleep,
        before_sleep=before_sleep,
    )
    try:
        return await retrying(attempt)
    except RetryError as exc:
        last_error = exc.last_attempt.exception()
        raise ProviderUnavailable(
            f"{provider_name or 'provider'} unavailable after "
            f"{retry_config.max_attempts} attempts: {last_error}",
            provider=provider_name,
            attempts=retry_config.max_attempts,
            last_error=last_error,
        ) from last_error
