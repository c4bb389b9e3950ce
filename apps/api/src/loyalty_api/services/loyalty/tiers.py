"""Tier computation from lifetime earned points."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Mapping

from loyalty_api.models import TIER_ORDER, CustomerTier


@dataclass(slots=True)
class TierProgress:
    current_tier: CustomerTier
    next_tier: CustomerTier | None
    points_to_next_tier: int
    progress: Decimal


def determine_tier(lifetime_points: int, thresholds: Mapping[CustomerTier, int]) -> CustomerTier:
    """Return the highest tier whose threshold is at or below ``lifetime_points``."""

    for tier in reversed(TIER_ORDER[1:]):
        threshold = thresholds.get(tier)
        if threshold is not None and lifetime_points >= threshold:
            return tier
    return CustomerTier.BRONZE


def detect_tier_upgrade(
    current: CustomerTier,
    lifetime_points: int,
    thresholds: Mapping[CustomerTier, int],
) -> CustomerTier | None:
    """Return the new tier when it ranks above ``current``; tiers never move down here."""

    candidate = determine_tier(lifetime_points, thresholds)
    if candidate.rank > CustomerTier(current).rank:
        return candidate
    return None


def tier_progress(
    lifetime_points: int,
    current: CustomerTier,
    thresholds: Mapping[CustomerTier, int],
) -> TierProgress:
    current = CustomerTier(current)
    higher = [tier for tier in TIER_ORDER if tier.rank > current.rank and tier in thresholds]
    if not higher:
        return TierProgress(current, None, 0, Decimal("1"))

    next_tier = higher[0]
    floor = thresholds.get(current, 0)
    target = thresholds[next_tier]
    remaining = max(target - lifetime_points, 0)
    span = max(target - floor, 1)
    progress = Decimal(lifetime_points - floor) / Decimal(span)
    progress = max(Decimal("0"), min(progress, Decimal("1")))
    return TierProgress(current, next_tier, remaining, progress)


__all__ = ["TierProgress", "detect_tier_upgrade", "determine_tier", "tier_progress"]
