"""Loyalty service exports."""

from .analytics import LoyaltyProgramSummary, LoyaltyReportingService  # noqa: F401
from .exceptions import LedgerIntegrityError, LoyaltyError, TenantNotFoundError  # noqa: F401
from .expiry import ExpiringPointsReport, ExpiryOutlook, PointsExpiryService  # noqa: F401
from .ledger import (  # noqa: F401
    LoyaltyLedgerService,
    calculate_max_redeemable_points,
    calculate_points_earned,
    calculate_points_value,
    decode_time_uuid_cursor,
    encode_time_uuid_cursor,
)
from .results import (  # noqa: F401
    AdjustResult,
    BalanceAudit,
    BirthdayEligibility,
    BonusAwardResult,
    EarnResult,
    ExpirySweepReport,
    InactivitySweepReport,
    LedgerErrorCode,
    RedeemResult,
    SweepError,
)
from .rfm import RFMAnalysis, RFMSegment, RFMSegmentationService, segment_info  # noqa: F401
from .rules import LoyaltyBonusRules, next_milestone  # noqa: F401
from .settings import LoyaltySettings, LoyaltySettingsResolver, build_loyalty_settings  # noqa: F401
from .tiers import detect_tier_upgrade, determine_tier, tier_progress  # noqa: F401
from .unit_of_work import LedgerUnitOfWork  # noqa: F401
