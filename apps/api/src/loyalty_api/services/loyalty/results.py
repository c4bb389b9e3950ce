"""Result values returned by ledger, bonus, expiry and segmentation operations."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from loyalty_api.models import CustomerTier


class LedgerErrorCode(str, Enum):
    """Expected validation outcomes; none of these mutate state."""

    LOYALTY_DISABLED = "loyalty_disabled"
    CUSTOMER_NOT_FOUND = "customer_not_found"
    BELOW_MINIMUM = "below_minimum"
    INSUFFICIENT_POINTS = "insufficient_points"
    BILL_NOT_FOUND = "bill_not_found"
    BILL_ALREADY_REDEEMED = "bill_already_redeemed"
    EXCEEDS_MAX_REDEEMABLE = "exceeds_max_redeemable"
    INVALID_POINTS = "invalid_points"
    NOT_BIRTHDAY = "not_birthday"
    NO_DATE_OF_BIRTH = "no_date_of_birth"
    ALREADY_CLAIMED = "already_claimed"


@dataclass(slots=True)
class EarnResult:
    points_earned: int
    new_balance: int
    tier_upgrade: bool = False
    new_tier: CustomerTier | None = None
    transaction_id: UUID | None = None
    error: str | None = None
    error_code: LedgerErrorCode | None = None


@dataclass(slots=True)
class RedeemResult:
    success: bool
    discount_amount: Decimal
    new_balance: int
    transaction_id: UUID | None = None
    error: str | None = None
    error_code: LedgerErrorCode | None = None


@dataclass(slots=True)
class AdjustResult:
    success: bool
    new_balance: int
    transaction_id: UUID | None = None
    error: str | None = None
    error_code: LedgerErrorCode | None = None


@dataclass(slots=True)
class BonusAwardResult:
    success: bool
    points_awarded: int
    new_balance: int
    is_milestone: bool = False
    message: str | None = None
    transaction_id: UUID | None = None
    error: str | None = None
    error_code: LedgerErrorCode | None = None


@dataclass(slots=True)
class BirthdayEligibility:
    can_claim: bool
    is_birthday: bool
    already_claimed: bool
    bonus_amount: int


@dataclass(slots=True)
class BalanceAudit:
    """Replay of a customer's ledger compared against the stored counters."""

    customer_id: UUID
    stored_balance: int
    replayed_balance: int
    transaction_count: int
    earned: int
    redeemed: int
    expired: int
    adjusted: int
    counters_consistent: bool

    @property
    def consistent(self) -> bool:
        return self.stored_balance == self.replayed_balance and self.counters_consistent


@dataclass(slots=True)
class SweepError:
    customer_id: UUID
    message: str


@dataclass(slots=True)
class ExpirySweepReport:
    tenant_id: UUID
    swept_at: datetime
    processed_count: int = 0
    total_expired: int = 0
    transactions_processed: int = 0
    errors: list[SweepError] = field(default_factory=list)

    def as_dict(self) -> dict[str, object]:
        return {
            "tenant_id": str(self.tenant_id),
            "swept_at": self.swept_at.isoformat(),
            "processed_count": self.processed_count,
            "total_expired": self.total_expired,
            "transactions_processed": self.transactions_processed,
            "errors": [{"customer_id": str(err.customer_id), "message": err.message} for err in self.errors],
        }


@dataclass(slots=True)
class InactivitySweepReport:
    tenant_id: UUID
    swept_at: datetime
    inactivity_days: int
    processed_count: int = 0
    total_expired: int = 0
    customers_at_risk: int = 0
    errors: list[SweepError] = field(default_factory=list)

    def as_dict(self) -> dict[str, object]:
        return {
            "tenant_id": str(self.tenant_id),
            "swept_at": self.swept_at.isoformat(),
            "inactivity_days": self.inactivity_days,
            "processed_count": self.processed_count,
            "total_expired": self.total_expired,
            "customers_at_risk": self.customers_at_risk,
            "errors": [{"customer_id": str(err.customer_id), "message": err.message} for err in self.errors],
        }


__all__ = [
    "AdjustResult",
    "BalanceAudit",
    "BirthdayEligibility",
    "BonusAwardResult",
    "EarnResult",
    "ExpirySweepReport",
    "InactivitySweepReport",
    "LedgerErrorCode",
    "RedeemResult",
    "SweepError",
]
