"""Retention warning tiers, computed from hours left in the grace period.

| hours remaining | tier          |
|-----------------|---------------|
| > 12            | reminder      |
| (6, 12]         | warning       |
| (1, 6]          | urgent        |
| (0, 1]          | critical      |
| <= 0            | final_warning |
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum


class RetentionTier(StrEnum):
    REMINDER = "reminder"
    WARNING = "warning"
    URGENT = "urgent"
    CRITICAL = "critical"
    FINAL_WARNING = "final_warning"


TIER_ORDER: list[str] = [
    RetentionTier.REMINDER,
    RetentionTier.WARNING,
    RetentionTier.URGENT,
    RetentionTier.CRITICAL,
    RetentionTier.FINAL_WARNING,
]

# Lower bound (exclusive) of hours remaining for each tier above final_warning
TIER_THRESHOLDS: list[tuple[float, str]] = [
    (12.0, RetentionTier.REMINDER),
    (6.0, RetentionTier.WARNING),
    (1.0, RetentionTier.URGENT),
    (0.0, RetentionTier.CRITICAL),
]


def hours_remaining(grace_period_end: datetime, now: datetime) -> float:
    return (grace_period_end - now).total_seconds() / 3600


def compute_tier(hours: float) -> RetentionTier:
    for threshold, tier in TIER_THRESHOLDS:
        if hours > threshold:
            return RetentionTier(tier)
    return RetentionTier.FINAL_WARNING


def tier_rank(tier: str | None) -> int:
    """Position in escalation order; -1 when nothing was sent yet."""
    if tier is None:
        return -1
    return TIER_ORDER.index(tier)


def tiers_below(tier: str) -> list[str]:
    """Tiers strictly earlier than ``tier``; a stored ``last_tier`` among them may be superseded."""
    return TIER_ORDER[: tier_rank(tier)]
