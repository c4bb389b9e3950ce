"""Points ledger: earn, redeem, bonus and manual adjustments."""

from __future__ import annotations

import base64
from datetime import datetime
from decimal import ROUND_FLOOR, Decimal
from typing import Sequence, Tuple
from uuid import UUID

from loguru import logger
from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_api.core.clock import resolve_now
from loyalty_api.models import (
    Bill,
    BonusType,
    Customer,
    CustomerTier,
    Order,
    PointsTransaction,
    PointsTransactionType,
)
from loyalty_api.observability.loyalty import LoyaltyObservabilityStore, get_loyalty_store

from .exceptions import LedgerIntegrityError
from .results import (
    AdjustResult,
    BalanceAudit,
    BonusAwardResult,
    EarnResult,
    LedgerErrorCode,
    RedeemResult,
)
from .settings import LoyaltySettings, LoyaltySettingsResolver
from .tiers import detect_tier_upgrade
from .unit_of_work import LedgerUnitOfWork


_CENT = Decimal("0.01")


def _floor(value: Decimal) -> int:
    return int(value.to_integral_value(rounding=ROUND_FLOOR))


def calculate_points_earned(amount: Decimal, tier: CustomerTier, settings: LoyaltySettings) -> int:
    """Whole points for ``amount`` at the tier's multiplier; fractions are dropped."""

    if not settings.enabled or amount <= 0:
        return 0
    base_points = _floor(Decimal(amount) / settings.currency_per_point) * settings.points_per_currency
    return _floor(Decimal(base_points) * settings.multiplier_for(tier))


def calculate_points_value(points: int, settings: LoyaltySettings) -> Decimal:
    return (Decimal(points) * settings.point_value).quantize(_CENT)


def calculate_max_redeemable_points(bill_amount: Decimal, available_points: int, settings: LoyaltySettings) -> int:
    if not settings.enabled or available_points < settings.min_redeem_points:
        return 0
    max_discount = Decimal(bill_amount) * settings.max_redeem_percentage / Decimal(100)
    return max(min(available_points, _floor(max_discount / settings.point_value)), 0)


class LoyaltyLedgerService:
    """Coordinates every write to a customer's points balance.

    Each mutating call loads the tenant's settings, locks the customer row and
    stages the customer update, the ledger row and any order/bill annotation
    inside one ``LedgerUnitOfWork``. Validation failures come back as result
    values; integrity failures roll the unit back and raise.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        settings_resolver: LoyaltySettingsResolver | None = None,
        observability: LoyaltyObservabilityStore | None = None,
    ) -> None:
        self._db = db_session
        self._settings = settings_resolver or LoyaltySettingsResolver(db_session)
        self._observability = observability or get_loyalty_store()

    def unit_of_work(self, tenant_id: UUID, customer_id: UUID) -> LedgerUnitOfWork:
        return LedgerUnitOfWork(self._db, tenant_id=tenant_id, customer_id=customer_id)

    async def load_settings(self, tenant_id: UUID) -> LoyaltySettings:
        return await self._settings.load(tenant_id)

    async def earn(
        self,
        customer_id: UUID,
        order_id: UUID | None,
        order_amount: Decimal | int | float | str,
        tenant_id: UUID,
        *,
        now: datetime | None = None,
    ) -> EarnResult:
        """Credit points for a completed order."""

        amount = Decimal(str(order_amount))
        if amount < 0:
            raise ValueError("Order amount must be non-negative")
        current_time = resolve_now(now)

        async with self.unit_of_work(tenant_id, customer_id) as uow:
            settings = await self._settings.load(tenant_id)
            if not settings.enabled:
                return self._earn_rejected(LedgerErrorCode.LOYALTY_DISABLED, "Loyalty program not enabled")

            customer = await uow.lock_customer()
            if customer is None:
                return self._earn_rejected(LedgerErrorCode.CUSTOMER_NOT_FOUND, "Customer not found")

            current_tier = CustomerTier(customer.tier)
            points = calculate_points_earned(amount, current_tier, settings)
            if points == 0:
                return EarnResult(points_earned=0, new_balance=customer.points_balance)

            order: Order | None = None
            if order_id is not None:
                order = await self._get_order(order_id, tenant_id)
                if order is None:
                    raise LedgerIntegrityError(f"Order {order_id} not found", customer_id=customer_id)

            customer.points_balance = customer.points_balance + points
            customer.points_earned_lifetime = customer.points_earned_lifetime + points
            total_spent = Decimal(customer.total_spent or 0) + amount
            total_visits = int(customer.total_visits or 0) + 1
            customer.total_spent = total_spent
            customer.total_visits = total_visits
            customer.average_order_value = (total_spent / total_visits).quantize(_CENT)

            upgraded = detect_tier_upgrade(current_tier, customer.points_earned_lifetime, settings.tier_thresholds)
            if upgraded is not None:
                customer.tier = upgraded

            window = settings.expiry_window
            entry = uow.append(
                type=PointsTransactionType.EARN,
                points=points,
                order_id=order_id,
                order_amount=amount,
                multiplier=settings.multiplier_for(current_tier),
                expires_at=current_time + window if window else None,
                created_at=current_time,
            )
            if order is not None:
                order.points_earned = points

        self._observability.record_ledger_event(PointsTransactionType.EARN.value, points)
        logger.info(
            "Recorded loyalty earn",
            tenant_id=str(tenant_id),
            customer_id=str(customer_id),
            order_id=str(order_id) if order_id else None,
            points=points,
            balance=customer.points_balance,
        )
        if upgraded is not None:
            logger.info(
                "Upgraded loyalty tier",
                customer_id=str(customer_id),
                previous_tier=current_tier.value,
                tier=upgraded.value,
            )

        return EarnResult(
            points_earned=points,
            new_balance=customer.points_balance,
            tier_upgrade=upgraded is not None,
            new_tier=upgraded,
            transaction_id=entry.id,
        )

    async def redeem(
        self,
        customer_id: UUID,
        bill_id: UUID,
        points_to_redeem: int,
        tenant_id: UUID,
        *,
        now: datetime | None = None,
    ) -> RedeemResult:
        """Spend points as a discount against a bill."""

        current_time = resolve_now(now)

        async with self.unit_of_work(tenant_id, customer_id) as uow:
            settings = await self._settings.load(tenant_id)
            if not settings.enabled:
                return self._redeem_rejected(LedgerErrorCode.LOYALTY_DISABLED, "Loyalty program not enabled", 0)

            customer = await uow.lock_customer()
            if customer is None:
                return self._redeem_rejected(LedgerErrorCode.CUSTOMER_NOT_FOUND, "Customer not found", 0)

            balance = customer.points_balance
            if points_to_redeem < settings.min_redeem_points:
                return self._redeem_rejected(
                    LedgerErrorCode.BELOW_MINIMUM,
                    f"Minimum {settings.min_redeem_points} points required to redeem",
                    balance,
                )
            if points_to_redeem <= 0:
                return self._redeem_rejected(LedgerErrorCode.INVALID_POINTS, "Points to redeem must be positive", balance)
            if balance < points_to_redeem:
                return self._redeem_rejected(LedgerErrorCode.INSUFFICIENT_POINTS, "Insufficient points balance", balance)

            bill = await self._get_bill(bill_id, tenant_id)
            if bill is None:
                return self._redeem_rejected(LedgerErrorCode.BILL_NOT_FOUND, "Bill not found", balance)
            if bill.points_redeemed:
                return self._redeem_rejected(
                    LedgerErrorCode.BILL_ALREADY_REDEEMED,
                    "Points have already been redeemed on this bill",
                    balance,
                )

            max_redeemable = calculate_max_redeemable_points(Decimal(bill.total_amount), balance, settings)
            if points_to_redeem > max_redeemable:
                return self._redeem_rejected(
                    LedgerErrorCode.EXCEEDS_MAX_REDEEMABLE,
                    f"Maximum {max_redeemable} points can be redeemed for this bill",
                    balance,
                )

            discount = calculate_points_value(points_to_redeem, settings)
            customer.points_balance = balance - points_to_redeem
            customer.points_redeemed_lifetime = customer.points_redeemed_lifetime + points_to_redeem
            entry = uow.append(
                type=PointsTransactionType.REDEEM,
                points=-points_to_redeem,
                bill_id=bill_id,
                discount_amount=discount,
                created_at=current_time,
            )
            bill.points_redeemed = points_to_redeem
            bill.points_discount = discount

        self._observability.record_ledger_event(PointsTransactionType.REDEEM.value, points_to_redeem)
        logger.info(
            "Recorded loyalty redemption",
            tenant_id=str(tenant_id),
            customer_id=str(customer_id),
            bill_id=str(bill_id),
            points=points_to_redeem,
            discount=str(discount),
        )
        return RedeemResult(
            success=True,
            discount_amount=discount,
            new_balance=customer.points_balance,
            transaction_id=entry.id,
        )

    async def adjust(
        self,
        customer_id: UUID,
        delta: int,
        reason: str | None,
        staff_id: str | UUID | None,
        tenant_id: UUID,
        *,
        allow_negative: bool = False,
        now: datetime | None = None,
    ) -> AdjustResult:
        """Apply a signed staff correction; negative balances need ``allow_negative``."""

        if delta == 0:
            self._observability.record_rejection(LedgerErrorCode.INVALID_POINTS.value)
            return AdjustResult(
                success=False,
                new_balance=0,
                error="Adjustment must change the balance",
                error_code=LedgerErrorCode.INVALID_POINTS,
            )
        current_time = resolve_now(now)

        async with self.unit_of_work(tenant_id, customer_id) as uow:
            customer = await uow.lock_customer()
            if customer is None:
                self._observability.record_rejection(LedgerErrorCode.CUSTOMER_NOT_FOUND.value)
                return AdjustResult(
                    success=False,
                    new_balance=0,
                    error="Customer not found",
                    error_code=LedgerErrorCode.CUSTOMER_NOT_FOUND,
                )

            new_balance = customer.points_balance + delta
            if new_balance < 0 and not allow_negative:
                self._observability.record_rejection(LedgerErrorCode.INSUFFICIENT_POINTS.value)
                return AdjustResult(
                    success=False,
                    new_balance=customer.points_balance,
                    error="Insufficient points balance",
                    error_code=LedgerErrorCode.INSUFFICIENT_POINTS,
                )

            customer.points_balance = new_balance
            customer.points_adjusted_net = customer.points_adjusted_net + delta
            entry = uow.append(
                type=PointsTransactionType.ADJUST,
                points=delta,
                reason=reason or f"Manual {'credit' if delta > 0 else 'deduction'} by staff",
                adjusted_by=str(staff_id) if staff_id is not None else None,
                created_at=current_time,
            )

        self._observability.record_ledger_event(PointsTransactionType.ADJUST.value, delta)
        logger.info(
            "Recorded loyalty adjustment",
            tenant_id=str(tenant_id),
            customer_id=str(customer_id),
            delta=delta,
            adjusted_by=str(staff_id) if staff_id is not None else None,
            balance=new_balance,
            forced_negative=new_balance < 0,
        )
        return AdjustResult(success=True, new_balance=new_balance, transaction_id=entry.id)

    async def award_bonus(
        self,
        customer_id: UUID,
        points: int,
        tenant_id: UUID,
        *,
        bonus_type: BonusType = BonusType.MANUAL,
        reason: str | None = None,
        awarded_by: str | UUID | None = None,
        now: datetime | None = None,
    ) -> BonusAwardResult:
        """Credit a one-off bonus outside the birthday/milestone rules."""

        if points <= 0:
            return BonusAwardResult(
                success=False,
                points_awarded=0,
                new_balance=0,
                error="Bonus points must be positive",
                error_code=LedgerErrorCode.INVALID_POINTS,
            )
        current_time = resolve_now(now)

        async with self.unit_of_work(tenant_id, customer_id) as uow:
            customer = await uow.lock_customer()
            if customer is None:
                return BonusAwardResult(
                    success=False,
                    points_awarded=0,
                    new_balance=0,
                    error="Customer not found",
                    error_code=LedgerErrorCode.CUSTOMER_NOT_FOUND,
                )
            entry = self.apply_bonus(
                uow,
                points,
                bonus_type=bonus_type,
                reason=reason or "Bonus points awarded by staff",
                adjusted_by=str(awarded_by) if awarded_by is not None else None,
                now=current_time,
            )

        return BonusAwardResult(
            success=True,
            points_awarded=points,
            new_balance=customer.points_balance,
            transaction_id=entry.id,
        )

    def apply_bonus(
        self,
        uow: LedgerUnitOfWork,
        points: int,
        *,
        bonus_type: BonusType,
        reason: str,
        now: datetime,
        milestone_visit_number: int | None = None,
        adjusted_by: str | None = None,
    ) -> PointsTransaction:
        """Stage a BONUS credit on the customer locked by ``uow``."""

        customer = uow.customer
        if customer is None:
            raise LedgerIntegrityError("Bonus requires a locked customer", customer_id=uow.customer_id)

        customer.points_balance = customer.points_balance + points
        customer.points_earned_lifetime = customer.points_earned_lifetime + points
        entry = uow.append(
            type=PointsTransactionType.BONUS,
            points=points,
            bonus_type=bonus_type,
            milestone_visit_number=milestone_visit_number,
            reason=reason,
            adjusted_by=adjusted_by,
            created_at=now,
        )
        self._observability.record_ledger_event(PointsTransactionType.BONUS.value, points)
        logger.info(
            "Staged loyalty bonus",
            tenant_id=str(uow.tenant_id),
            customer_id=str(customer.id),
            bonus_type=bonus_type.value,
            points=points,
            milestone_visit_number=milestone_visit_number,
        )
        return entry

    async def list_transactions(
        self,
        customer_id: UUID,
        tenant_id: UUID,
        *,
        limit: int = 25,
        cursor: Tuple[datetime, UUID] | None = None,
        types: Sequence[PointsTransactionType] | None = None,
    ) -> tuple[list[PointsTransaction], Tuple[datetime, UUID] | None]:
        """Return a newest-first page of a customer's ledger."""

        bounded_limit = max(1, min(limit, 100))
        stmt = (
            select(PointsTransaction)
            .where(
                PointsTransaction.customer_id == customer_id,
                PointsTransaction.tenant_id == tenant_id,
            )
            .order_by(PointsTransaction.created_at.desc(), PointsTransaction.id.desc())
        )
        if types:
            stmt = stmt.where(PointsTransaction.type.in_(list(types)))
        if cursor:
            cursor_time, cursor_id = cursor
            stmt = stmt.where(
                or_(
                    PointsTransaction.created_at < cursor_time,
                    and_(
                        PointsTransaction.created_at == cursor_time,
                        PointsTransaction.id < cursor_id,
                    ),
                )
            )

        stmt = stmt.limit(bounded_limit + 1)
        result = await self._db.execute(stmt)
        rows = list(result.scalars().all())
        has_more = len(rows) > bounded_limit
        entries = rows[:bounded_limit]
        next_cursor: Tuple[datetime, UUID] | None = None
        if has_more and entries:
            tail = entries[-1]
            next_cursor = (tail.created_at, tail.id)

        return entries, next_cursor

    async def audit_balance(self, customer_id: UUID, tenant_id: UUID) -> BalanceAudit:
        """Replay the ledger and compare it with the customer's stored counters."""

        customer = await self._get_customer(customer_id, tenant_id)
        if customer is None:
            raise LedgerIntegrityError(f"Customer {customer_id} not found", customer_id=customer_id)

        stmt = (
            select(
                PointsTransaction.type,
                func.coalesce(func.sum(PointsTransaction.points), 0),
                func.count(PointsTransaction.id),
            )
            .where(PointsTransaction.customer_id == customer_id)
            .group_by(PointsTransaction.type)
        )
        result = await self._db.execute(stmt)
        totals: dict[PointsTransactionType, int] = {}
        count = 0
        for entry_type, total, rows in result.all():
            totals[PointsTransactionType(entry_type)] = int(total or 0)
            count += int(rows or 0)

        earned = totals.get(PointsTransactionType.EARN, 0) + totals.get(PointsTransactionType.BONUS, 0)
        redeemed = -totals.get(PointsTransactionType.REDEEM, 0)
        expired = -totals.get(PointsTransactionType.EXPIRE, 0)
        adjusted = totals.get(PointsTransactionType.ADJUST, 0)
        replayed = earned - redeemed - expired + adjusted

        counters_consistent = (
            customer.points_earned_lifetime == earned
            and customer.points_redeemed_lifetime == redeemed
            and customer.points_expired_lifetime == expired
            and customer.points_adjusted_net == adjusted
        )
        audit = BalanceAudit(
            customer_id=customer_id,
            stored_balance=customer.points_balance,
            replayed_balance=replayed,
            transaction_count=count,
            earned=earned,
            redeemed=redeemed,
            expired=expired,
            adjusted=adjusted,
            counters_consistent=counters_consistent,
        )
        if not audit.consistent:
            logger.warning(
                "Loyalty balance audit mismatch",
                customer_id=str(customer_id),
                stored=audit.stored_balance,
                replayed=audit.replayed_balance,
            )
        return audit

    async def get_customer(self, customer_id: UUID, tenant_id: UUID) -> Customer | None:
        return await self._get_customer(customer_id, tenant_id)

    async def _get_customer(self, customer_id: UUID, tenant_id: UUID) -> Customer | None:
        stmt = select(Customer).where(Customer.id == customer_id, Customer.tenant_id == tenant_id)
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def _get_order(self, order_id: UUID, tenant_id: UUID) -> Order | None:
        stmt = select(Order).where(Order.id == order_id, Order.tenant_id == tenant_id)
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def _get_bill(self, bill_id: UUID, tenant_id: UUID) -> Bill | None:
        stmt = select(Bill).where(Bill.id == bill_id, Bill.tenant_id == tenant_id).with_for_update()
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    def _earn_rejected(self, code: LedgerErrorCode, message: str) -> EarnResult:
        self._observability.record_rejection(code.value)
        return EarnResult(points_earned=0, new_balance=0, error=message, error_code=code)

    def _redeem_rejected(self, code: LedgerErrorCode, message: str, balance: int) -> RedeemResult:
        self._observability.record_rejection(code.value)
        logger.info("Rejected loyalty redemption", reason=code.value, detail=message)
        return RedeemResult(
            success=False,
            discount_amount=Decimal("0"),
            new_balance=balance,
            error=message,
            error_code=code,
        )


def encode_time_uuid_cursor(timestamp: datetime, identifier: UUID) -> str:
    """Encode pagination cursor for chronological queries."""

    payload = f"{timestamp.isoformat()}|{identifier}".encode("utf-8")
    return base64.urlsafe_b64encode(payload).decode("utf-8")


def decode_time_uuid_cursor(cursor: str) -> Tuple[datetime, UUID]:
    """Decode pagination cursor into datetime and UUID parts."""

    raw = base64.urlsafe_b64decode(cursor.encode("utf-8")).decode("utf-8")
    timestamp_str, identifier_str = raw.split("|", 1)
    return datetime.fromisoformat(timestamp_str), UUID(identifier_str)


__all__ = [
    "LoyaltyLedgerService",
    "calculate_max_redeemable_points",
    "calculate_points_earned",
    "calculate_points_value",
    "decode_time_uuid_cursor",
    "encode_time_uuid_cursor",
]
