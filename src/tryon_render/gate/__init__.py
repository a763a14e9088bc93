"""Usage gate: credit and quota authorization."""

from tryon_render.gate.usage import (
    Authorization,
    DenialReason,
    InMemoryUsageLedger,
    SubscriptionTier,
    UsageGate,
    UsageLedger,
)

__all__ = [
    "Authorization",
    "DenialReason",
    "InMemoryUsageLedger",
    "SubscriptionTier",
    "UsageGate",
    "UsageLedger",
]
