"""Welcome, birthday and visit-milestone bonus rules."""

from __future__ import annotations

from calendar import isleap
from dataclasses import dataclass
from datetime import date, datetime, timezone
from uuid import UUID

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_api.core.clock import resolve_now
from loyalty_api.models import (
    BonusType,
    Customer,
    CustomerStatus,
    PointsTransaction,
    PointsTransactionType,
)

from .ledger import LoyaltyLedgerService
from .results import BirthdayEligibility, BonusAwardResult, LedgerErrorCode
from .settings import LoyaltySettings
from .unit_of_work import LedgerUnitOfWork


@dataclass(slots=True)
class NextMilestone:
    visit_number: int
    bonus_points: int
    visits_remaining: int


def is_birthday(date_of_birth: date | None, today: date) -> bool:
    """Match month and day; 29 February birthdays fall on 28 February in common years."""

    if date_of_birth is None:
        return False
    if (date_of_birth.month, date_of_birth.day) == (today.month, today.day):
        return True
    return (
        (date_of_birth.month, date_of_birth.day) == (2, 29)
        and (today.month, today.day) == (2, 28)
        and not isleap(today.year)
    )


def local_year_window(now: datetime, settings: LoyaltySettings) -> tuple[datetime, datetime]:
    """UTC bounds of the calendar year containing ``now`` in the tenant's timezone."""

    zone = settings.zone
    year = now.astimezone(zone).year
    start = datetime(year, 1, 1, tzinfo=zone).astimezone(timezone.utc)
    end = datetime(year + 1, 1, 1, tzinfo=zone).astimezone(timezone.utc)
    return start, end


def next_milestone(current_visits: int, settings: LoyaltySettings) -> NextMilestone | None:
    upcoming = sorted(visit for visit in settings.visit_milestones if visit > current_visits)
    if not upcoming:
        return None
    visit = upcoming[0]
    return NextMilestone(visit, settings.visit_milestones[visit], visit - current_visits)


class LoyaltyBonusRules:
    """Award welcome, birthday and milestone bonuses at most once per period."""

    def __init__(self, db_session: AsyncSession, *, ledger: LoyaltyLedgerService | None = None) -> None:
        self._db = db_session
        self._ledger = ledger or LoyaltyLedgerService(db_session)

    async def can_claim_birthday_bonus(
        self,
        customer_id: UUID,
        tenant_id: UUID,
        *,
        now: datetime | None = None,
    ) -> BirthdayEligibility | None:
        """Read-only eligibility check; ``None`` when the customer does not exist."""

        current_time = resolve_now(now)
        settings = await self._ledger.load_settings(tenant_id)
        customer = await self._ledger.get_customer(customer_id, tenant_id)
        if customer is None:
            return None

        today = current_time.astimezone(settings.zone).date()
        birthday = is_birthday(customer.date_of_birth, today)
        claimed = await self._birthday_claimed(customer_id, current_time, settings)
        return BirthdayEligibility(
            can_claim=settings.enabled and birthday and not claimed and settings.birthday_bonus > 0,
            is_birthday=birthday,
            already_claimed=claimed,
            bonus_amount=settings.birthday_bonus,
        )

    async def check_and_award_birthday_bonus(
        self,
        customer_id: UUID,
        tenant_id: UUID,
        *,
        now: datetime | None = None,
    ) -> BonusAwardResult:
        current_time = resolve_now(now)

        async with self._ledger.unit_of_work(tenant_id, customer_id) as uow:
            settings = await self._ledger.load_settings(tenant_id)
            if not settings.enabled:
                return _rejected(LedgerErrorCode.LOYALTY_DISABLED, "Loyalty program not enabled")

            customer = await uow.lock_customer()
            if customer is None:
                return _rejected(LedgerErrorCode.CUSTOMER_NOT_FOUND, "Customer not found")
            if customer.date_of_birth is None:
                return _rejected(
                    LedgerErrorCode.NO_DATE_OF_BIRTH,
                    "Customer has no date of birth on file",
                    customer.points_balance,
                )

            today = current_time.astimezone(settings.zone).date()
            if not is_birthday(customer.date_of_birth, today):
                return _rejected(LedgerErrorCode.NOT_BIRTHDAY, "Today is not your birthday", customer.points_balance)
            if await self._birthday_claimed(customer_id, current_time, settings):
                return _rejected(
                    LedgerErrorCode.ALREADY_CLAIMED,
                    "Birthday bonus already claimed this year",
                    customer.points_balance,
                )
            if settings.birthday_bonus <= 0:
                return _rejected(
                    LedgerErrorCode.INVALID_POINTS,
                    "Birthday bonus is not configured",
                    customer.points_balance,
                )

            entry = self._ledger.apply_bonus(
                uow,
                settings.birthday_bonus,
                bonus_type=BonusType.BIRTHDAY,
                reason="Happy Birthday! Enjoy your birthday bonus points.",
                now=current_time,
            )

        return BonusAwardResult(
            success=True,
            points_awarded=settings.birthday_bonus,
            new_balance=customer.points_balance,
            message=f"Happy Birthday! You received {settings.birthday_bonus} bonus points!",
            transaction_id=entry.id,
        )

    async def award_welcome_bonus(
        self,
        customer_id: UUID,
        tenant_id: UUID,
        *,
        now: datetime | None = None,
    ) -> BonusAwardResult:
        """Credit the enrolment bonus; a customer receives it once."""

        current_time = resolve_now(now)

        async with self._ledger.unit_of_work(tenant_id, customer_id) as uow:
            settings = await self._ledger.load_settings(tenant_id)
            if not settings.enabled:
                return _rejected(LedgerErrorCode.LOYALTY_DISABLED, "Loyalty program not enabled")

            customer = await uow.lock_customer()
            if customer is None:
                return _rejected(LedgerErrorCode.CUSTOMER_NOT_FOUND, "Customer not found")
            if settings.welcome_bonus <= 0:
                return BonusAwardResult(success=True, points_awarded=0, new_balance=customer.points_balance)
            if await self._count_bonus(customer_id, BonusType.WELCOME):
                return BonusAwardResult(
                    success=True,
                    points_awarded=0,
                    new_balance=customer.points_balance,
                    message="Welcome bonus already awarded",
                )

            entry = self._ledger.apply_bonus(
                uow,
                settings.welcome_bonus,
                bonus_type=BonusType.WELCOME,
                reason="Welcome bonus for joining loyalty program",
                now=current_time,
            )

        return BonusAwardResult(
            success=True,
            points_awarded=settings.welcome_bonus,
            new_balance=customer.points_balance,
            message=f"Welcome! You received {settings.welcome_bonus} bonus points.",
            transaction_id=entry.id,
        )

    async def check_and_award_visit_milestone(
        self,
        customer_id: UUID,
        visit_number: int,
        tenant_id: UUID,
        *,
        now: datetime | None = None,
    ) -> BonusAwardResult:
        current_time = resolve_now(now)

        async with self._ledger.unit_of_work(tenant_id, customer_id) as uow:
            settings = await self._ledger.load_settings(tenant_id)
            if not settings.enabled:
                return _rejected(LedgerErrorCode.LOYALTY_DISABLED, "Loyalty program not enabled")

            bonus_points = settings.visit_milestones.get(visit_number)
            customer = await uow.lock_customer()
            if customer is None:
                return _rejected(LedgerErrorCode.CUSTOMER_NOT_FOUND, "Customer not found")
            if not bonus_points:
                return BonusAwardResult(success=True, points_awarded=0, new_balance=customer.points_balance)

            already_awarded = await self._count_bonus(
                customer_id,
                BonusType.MILESTONE,
                PointsTransaction.milestone_visit_number == visit_number,
            )
            if already_awarded:
                return BonusAwardResult(
                    success=True,
                    points_awarded=0,
                    new_balance=customer.points_balance,
                    is_milestone=True,
                    message=f"Milestone bonus for visit #{visit_number} already awarded",
                )

            entry = self._ledger.apply_bonus(
                uow,
                bonus_points,
                bonus_type=BonusType.MILESTONE,
                reason=f"Congratulations on your visit #{visit_number}! Milestone bonus awarded.",
                milestone_visit_number=visit_number,
                now=current_time,
            )

        return BonusAwardResult(
            success=True,
            points_awarded=bonus_points,
            new_balance=customer.points_balance,
            is_milestone=True,
            message=f"Milestone reached! Visit #{visit_number} - {bonus_points} bonus points!",
            transaction_id=entry.id,
        )

    async def birthday_candidates(self, tenant_id: UUID, *, now: datetime | None = None) -> list[UUID]:
        """Active customers of the tenant whose birthday is today in its timezone."""

        current_time = resolve_now(now)
        settings = await self._ledger.load_settings(tenant_id)
        today = current_time.astimezone(settings.zone).date()
        stmt = select(Customer.id, Customer.date_of_birth).where(
            Customer.tenant_id == tenant_id,
            Customer.status == CustomerStatus.ACTIVE,
            Customer.date_of_birth.is_not(None),
        )
        result = await self._db.execute(stmt)
        return [customer_id for customer_id, dob in result.all() if is_birthday(dob, today)]

    async def _birthday_claimed(self, customer_id: UUID, now: datetime, settings: LoyaltySettings) -> bool:
        start, end = local_year_window(now, settings)
        count = await self._count_bonus(
            customer_id,
            BonusType.BIRTHDAY,
            PointsTransaction.created_at >= start,
            PointsTransaction.created_at < end,
        )
        if count:
            logger.debug("Birthday bonus already claimed", customer_id=str(customer_id), year_start=start.isoformat())
        return count > 0

    async def _count_bonus(self, customer_id: UUID, bonus_type: BonusType, *criteria) -> int:
        stmt = select(func.count(PointsTransaction.id)).where(
            PointsTransaction.customer_id == customer_id,
            PointsTransaction.type == PointsTransactionType.BONUS,
            PointsTransaction.bonus_type == bonus_type,
            *criteria,
        )
        result = await self._db.execute(stmt)
        return int(result.scalar_one() or 0)


def _rejected(code: LedgerErrorCode, message: str, balance: int = 0) -> BonusAwardResult:
    return BonusAwardResult(success=False, points_awarded=0, new_balance=balance, error=message, error_code=code)


__all__ = [
    "LoyaltyBonusRules",
    "NextMilestone",
    "is_birthday",
    "local_year_window",
    "next_milestone",
]
