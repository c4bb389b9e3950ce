"""Loyalty job exports."""

from .birthdays import award_birthday_bonuses  # noqa: F401
from .expiry import run_points_expiry  # noqa: F401
from .segmentation import capture_rfm_snapshot  # noqa: F401

__all__ = [
    "award_birthday_bonuses",
    "capture_rfm_snapshot",
    "run_points_expiry",
]
