"""Usage gate: daily AI budget checks ahead of any expensive work."""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from enum import StrEnum

from pydantic import BaseModel, Field

from tryon_render.types import OperationKind

logger = logging.getLogger(__name__)


class SubscriptionTier(StrEnum):
    FREE = "free"
    PRO = "pro"
    PREMIUM = "premium"


class DenialReason(StrEnum):
    DAILY_REQUEST_LIMIT = "daily_request_limit"
    DAILY_SUCCESS_LIMIT = "daily_success_limit"
    DAILY_CREDITS_LIMIT = "daily_credits_limit"
    INSUFFICIENT_CREDITS = "insufficient_credits"


class BudgetLimits(BaseModel):
    daily_requests: int = Field(ge=1)
    daily_successes: int = Field(ge=1)
    daily_credits: int = Field(ge=0)


class Authorization(BaseModel):
    allowed: bool
    reason: DenialReason | None = None
    retry_after_seconds: int | None = None
    tier: SubscriptionTier = SubscriptionTier.FREE
    guard_error: bool = False


CREDIT_COSTS: dict[OperationKind, int] = {
    OperationKind.VIRTUAL_TRY_ON: 4,
    OperationKind.GENERATE_FASHION_IMAGE: 2,
}

DEFAULT_LIMITS_BY_TIER: dict[SubscriptionTier, BudgetLimits] = {
    SubscriptionTier.FREE: BudgetLimits(daily_requests=40, daily_successes=24, daily_credits=40),
    SubscriptionTier.PRO: BudgetLimits(daily_requests=120, daily_successes=80, daily_credits=160),
    SubscriptionTier.PREMIUM: BudgetLimits(daily_requests=300, daily_successes=220, daily_credits=500),
}

FEATURE_OVERRIDES: dict[OperationKind, dict[SubscriptionTier, BudgetLimits]] = {
    OperationKind.VIRTUAL_TRY_ON: {
        SubscriptionTier.FREE: BudgetLimits(daily_requests=10, daily_successes=8, daily_credits=24),
        SubscriptionTier.PRO: BudgetLimits(daily_requests=30, daily_successes=24, daily_credits=96),
        SubscriptionTier.PREMIUM: BudgetLimits(daily_requests=80, daily_successes=60, daily_credits=300),
    },
    OperationKind.GENERATE_FASHION_IMAGE: {
        SubscriptionTier.FREE: BudgetLimits(daily_requests=12, daily_successes=10, daily_credits=20),
        SubscriptionTier.PRO: BudgetLimits(daily_requests=40, daily_successes=30, daily_credits=90),
        SubscriptionTier.PREMIUM: BudgetLimits(daily_requests=120, daily_successes=90, daily_credits=270),
    },
}


def resolve_limits(kind: OperationKind, tier: SubscriptionTier) -> BudgetLimits:
    """Feature-specific limits when defined, else the tier defaults."""
    return FEATURE_OVERRIDES.get(kind, {}).get(tier) or DEFAULT_LIMITS_BY_TIER[tier]


def seconds_until_utc_midnight(now: float) -> int:
    current = datetime.fromtimestamp(now, tz=UTC)
    midnight = (current + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
    return max(1, int((midnight - current).total_seconds()))


class UsageLedger(ABC):
    """Credit/subscription ledger. The gate only ever calls ``authorize``."""

    @abstractmethod
    async def authorize(
        self, user_id: str, kind: OperationKind, expected_credits: int
    ) -> Authorization: ...

    @abstractmethod
    async def consume(self, user_id: str, kind: OperationKind, credits: int) -> None: ...

    @abstractmethod
    async def record_success(self, user_id: str, kind: OperationKind) -> None: ...


class _DailyUsage(BaseModel):
    day: str
    requests: int = 0
    successes: int = 0
    credits: int = 0


class InMemoryUsageLedger(UsageLedger):
    """Per-day counters held in process memory.

    ``authorize`` reserves a request slot when it allows. ``consume`` and
    ``record_success`` are the surrounding flow's calls after a generation
    that actually ran.
    """

    def __init__(
        self,
        tiers: dict[str, SubscriptionTier] | None = None,
        unlimited: set[str] | None = None,
        balances: dict[str, int] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._tiers = dict(tiers or {})
        self._unlimited = set(unlimited or ())
        self._balances = dict(balances or {})
        self._clock = clock
        self._usage: dict[tuple[str, OperationKind], _DailyUsage] = {}
        self._lock = threading.Lock()

    def set_tier(self, user_id: str, tier: SubscriptionTier) -> None:
        self._tiers[user_id] = tier

    def get_tier(self, user_id: str) -> SubscriptionTier:
        return self._tiers.get(user_id, SubscriptionTier.FREE)

    def balance(self, user_id: str) -> int | None:
        """Remaining credit balance, or None when the user has no tracked balance."""
        return self._balances.get(user_id)

    def usage_today(self, user_id: str, kind: OperationKind) -> _DailyUsage:
        with self._lock:
            return self._current(user_id, kind).model_copy()

    async def authorize(
        self, user_id: str, kind: OperationKind, expected_credits: int
    ) -> Authorization:
        tier = self.get_tier(user_id)
        if user_id in self._unlimited:
            return Authorization(allowed=True, tier=tier)

        limits = resolve_limits(kind, tier)
        now = self._clock()
        with self._lock:
            usage = self._current(user_id, kind)
            reason = None
            if usage.requests >= limits.daily_requests:
                reason = DenialReason.DAILY_REQUEST_LIMIT
            elif usage.successes >= limits.daily_successes:
                reason = DenialReason.DAILY_SUCCESS_LIMIT
            elif usage.credits + max(0, expected_credits) > limits.daily_credits:
                reason = DenialReason.DAILY_CREDITS_LIMIT
            elif self._balances.get(user_id, expected_credits) < expected_credits:
                reason = DenialReason.INSUFFICIENT_CREDITS

            if reason is not None:
                return Authorization(
                    allowed=False,
                    reason=reason,
                    retry_after_seconds=(
                        None
                        if reason is DenialReason.INSUFFICIENT_CREDITS
                        else seconds_until_utc_midnight(now)
                    ),
                    tier=tier,
                )
            usage.requests += 1
        return Authorization(allowed=True, tier=tier)

    async def consume(self, user_id: str, kind: OperationKind, credits: int) -> None:
        with self._lock:
            self._current(user_id, kind).credits += max(0, credits)
            if user_id in self._balances:
                self._balances[user_id] = max(0, self._balances[user_id] - max(0, credits))

    async def record_success(self, user_id: str, kind: OperationKind) -> None:
        with self._lock:
            self._current(user_id, kind).successes += 1

    def _current(self, user_id: str, kind: OperationKind) -> _DailyUsage:
        day = datetime.fromtimestamp(self._clock(), tz=UTC).date().isoformat()
        usage = self._usage.get((user_id, kind))
        if usage is None or usage.day != day:
            usage = _DailyUsage(day=day)
            self._usage[(user_id, kind)] = usage
        return usage


class UsageGate:
    """Authorizes a request against the ledger before hashing or lookup.

    Cache hits are not charged: the gate never consumes credits. A ledger
    failure allows the request (flagged ``guard_error``) unless the gate is
    configured to fail closed.
    """

    def __init__(
        self,
        ledger: UsageLedger | None,
        enabled: bool = True,
        fail_open: bool = True,
        credit_costs: dict[OperationKind, int] | None = None,
    ) -> None:
        self._ledger = ledger
        self._enabled = enabled and ledger is not None
        self._fail_open = fail_open
        self._credit_costs = {**CREDIT_COSTS, **(credit_costs or {})}

    @property
    def enabled(self) -> bool:
        return self._enabled

    def cost_of(self, kind: OperationKind) -> int:
        return self._credit_costs.get(kind, 1)

    async def authorize(self, user_id: str, kind: OperationKind) -> Authorization:
        if not self._enabled or self._ledger is None:
            return Authorization(allowed=True)

        try:
            decision = await self._ledger.authorize(user_id, kind, self.cost_of(kind))
        except Exception as exc:
            if self._fail_open:
                logger.error("Usage ledger failed for %s, allowing request: %s", user_id, exc)
                return Authorization(allowed=True, guard_error=True)
            logger.error("Usage ledger failed for %s, denying request: %s", user_id, exc)
            return Authorization(allowed=False, guard_error=True)

        if not decision.allowed:
            logger.info("Usage gate denied %s for %s: %s", kind.value, user_id, decision.reason)
        return decision
