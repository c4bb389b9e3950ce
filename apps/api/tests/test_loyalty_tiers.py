from decimal import Decimal

from loyalty_api.models import CustomerTier
from loyalty_api.services.loyalty import LoyaltySettings, detect_tier_upgrade, determine_tier, tier_progress


THRESHOLDS = LoyaltySettings().tier_thresholds


def test_determine_tier_uses_highest_reached_threshold() -> None:
    assert determine_tier(0, THRESHOLDS) == CustomerTier.BRONZE
    assert determine_tier(499, THRESHOLDS) == CustomerTier.BRONZE
    assert determine_tier(500, THRESHOLDS) == CustomerTier.SILVER
    assert determine_tier(2000, THRESHOLDS) == CustomerTier.GOLD
    assert determine_tier(99999, THRESHOLDS) == CustomerTier.PLATINUM


def test_upgrade_only_moves_up() -> None:
    assert detect_tier_upgrade(CustomerTier.BRONZE, 520, THRESHOLDS) == CustomerTier.SILVER
    assert detect_tier_upgrade(CustomerTier.SILVER, 520, THRESHOLDS) is None
    assert detect_tier_upgrade(CustomerTier.GOLD, 10, THRESHOLDS) is None


def test_upgrade_can_skip_tiers() -> None:
    assert detect_tier_upgrade(CustomerTier.BRONZE, 6000, THRESHOLDS) == CustomerTier.PLATINUM


def test_progress_towards_next_tier() -> None:
    progress = tier_progress(1250, CustomerTier.SILVER, THRESHOLDS)

    assert progress.next_tier == CustomerTier.GOLD
    assert progress.points_to_next_tier == 750
    assert progress.progress == Decimal("0.5")


def test_progress_at_top_tier() -> None:
    progress = tier_progress(8000, CustomerTier.PLATINUM, THRESHOLDS)

    assert progress.next_tier is None
    assert progress.points_to_next_tier == 0
    assert progress.progress == Decimal("1")
