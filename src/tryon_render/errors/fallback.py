"""Provider fallback chain: step to the secondary provider on account rejections."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from tryon_render.errors.exceptions import ProviderRejected

if TYPE_CHECKING:
    from tryon_render.providers.base import Provider

logger = logging.getLogger(__name__)


def should_fall_back(exc: BaseException) -> bool:
    """Only account-state rejections (verification, permission, billing,
    model access) are fixed by switching provider. Content-policy and
    exhausted-retry failures would fail the same way elsewhere."""
    return isinstance(exc, ProviderRejected) and exc.account_state


class FallbackChain:
    """Primary provider followed by at most one fallback, each tried once."""

    def __init__(self, primary: Provider, fallback: Provider | None = None) -> None:
        self._providers = [primary] + ([fallback] if fallback is not None else [])
        self._tried: set[str] = set()
        self._current_index = 0

    @property
    def current(self) -> Provider:
        return self._providers[self._current_index]

    @property
    def exhausted(self) -> bool:
        return self._current_index >= len(self._providers) - 1

    def next_provider(self, cause: BaseException) -> Provider:
        """Advance to the fallback provider.

        Re-raises ``cause`` when there is nothing left to fall back to.
        """
        self._tried.add(self.current.name)
        if self.exhausted:
            raise cause
        self._current_index += 1
        logger.info(
            "Falling back to provider '%s' after %s (tried: %s)",
            self.current.name,
            getattr(cause, "error_type", type(cause).__name__),
            ", ".join(sorted(self._tried)),
        )
        return self.current
