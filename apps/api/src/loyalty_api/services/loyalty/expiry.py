"""Scheduled points expiry.

Two sweeps share the same shape: a read-only candidate query, then one unit of
work per customer in its own session, fanned out through a bounded semaphore.
A failing customer is logged and reported without stopping the others.
"""

from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Iterable, List
from uuid import UUID

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_api.core.clock import ensure_aware, resolve_now
from loyalty_api.core.settings import settings as app_settings
from loyalty_api.models import Customer, CustomerStatus, Order, PointsTransaction, PointsTransactionType
from loyalty_api.observability.loyalty import LoyaltyObservabilityStore, get_loyalty_store

from .results import ExpirySweepReport, InactivitySweepReport, SweepError
from .settings import LoyaltySettings, LoyaltySettingsResolver
from .unit_of_work import LedgerUnitOfWork


SessionFactory = Callable[[], AsyncSession]


@dataclass(slots=True)
class ExpiringPointsEntry:
    transaction_id: UUID
    points: int
    expires_at: datetime
    days_until_expiry: int


@dataclass(slots=True)
class ExpiringPointsReport:
    customer_id: UUID
    days: int
    total_points: int = 0
    entries: List[ExpiringPointsEntry] = field(default_factory=list)


@dataclass(slots=True)
class ExpiryOutlook:
    tenant_id: UUID
    generated_at: datetime
    customers_with_points: int
    points_expiring_soon: int
    transactions_expiring_soon: int
    customers_at_risk: int
    inactivity_days: int
    points_expiry_days: int


@dataclass(slots=True)
class _CustomerOutcome:
    expired: int = 0
    transactions: int = 0


class PointsExpiryService:
    """Run per-transaction and inactivity expiry sweeps for one tenant."""

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        concurrency: int | None = None,
        observability: LoyaltyObservabilityStore | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._concurrency = max(concurrency or app_settings.expiry_sweep_concurrency, 1)
        self._observability = observability or get_loyalty_store()

    async def sweep_expired_transactions(
        self,
        tenant_id: UUID,
        *,
        now: datetime | None = None,
    ) -> ExpirySweepReport:
        """Deduct EARN rows whose ``expires_at`` has passed, clamped to each balance."""

        current_time = resolve_now(now)
        report = ExpirySweepReport(tenant_id=tenant_id, swept_at=current_time)

        async with self._session_factory() as session:
            stmt = (
                select(PointsTransaction.customer_id)
                .where(
                    PointsTransaction.tenant_id == tenant_id,
                    PointsTransaction.type == PointsTransactionType.EARN,
                    PointsTransaction.points > 0,
                    PointsTransaction.expires_at.is_not(None),
                    PointsTransaction.expires_at < current_time,
                )
                .distinct()
            )
            customer_ids = list((await session.execute(stmt)).scalars().all())

        async def expire_one(customer_id: UUID) -> _CustomerOutcome:
            return await self._expire_customer_transactions(tenant_id, customer_id, current_time)

        outcomes = await self._fan_out(customer_ids, expire_one, report.errors, sweep="transactions")
        for outcome in outcomes:
            report.processed_count += 1
            report.total_expired += outcome.expired
            report.transactions_processed += outcome.transactions

        self._observability.record_sweep(
            "transactions",
            processed=report.processed_count,
            expired=report.total_expired,
            failures=len(report.errors),
        )
        logger.info(
            "Completed points expiry sweep",
            tenant_id=str(tenant_id),
            processed=report.processed_count,
            expired=report.total_expired,
            errors=len(report.errors),
        )
        return report

    async def sweep_inactive_customers(
        self,
        tenant_id: UUID,
        *,
        now: datetime | None = None,
    ) -> InactivitySweepReport:
        """Zero the balance of customers without an order inside the inactivity window."""

        current_time = resolve_now(now)
        loyalty_settings = await self._load_settings(tenant_id)
        inactivity_days = loyalty_settings.inactivity_days
        cutoff = current_time - timedelta(days=inactivity_days)
        warning_end = cutoff + timedelta(days=app_settings.inactivity_warning_days)
        report = InactivitySweepReport(tenant_id=tenant_id, swept_at=current_time, inactivity_days=inactivity_days)

        async with self._session_factory() as session:
            rows = await _customers_with_last_order(session, tenant_id)

        to_expire: list[UUID] = []
        for customer_id, last_order_at in rows:
            if last_order_at is None or last_order_at < cutoff:
                to_expire.append(customer_id)
            elif last_order_at < warning_end:
                report.customers_at_risk += 1

        async def expire_one(customer_id: UUID) -> _CustomerOutcome:
            return await self._expire_inactive_customer(tenant_id, customer_id, cutoff, inactivity_days, current_time)

        outcomes = await self._fan_out(to_expire, expire_one, report.errors, sweep="inactivity")
        for outcome in outcomes:
            if outcome.expired:
                report.processed_count += 1
                report.total_expired += outcome.expired

        self._observability.record_sweep(
            "inactivity",
            processed=report.processed_count,
            expired=report.total_expired,
            failures=len(report.errors),
        )
        logger.info(
            "Completed inactivity expiry sweep",
            tenant_id=str(tenant_id),
            inactivity_days=inactivity_days,
            processed=report.processed_count,
            expired=report.total_expired,
            at_risk=report.customers_at_risk,
            errors=len(report.errors),
        )
        return report

    async def get_expiring_points(
        self,
        customer_id: UUID,
        tenant_id: UUID,
        *,
        days: int = 30,
        now: datetime | None = None,
    ) -> ExpiringPointsReport:
        current_time = resolve_now(now)
        horizon = current_time + timedelta(days=days)
        report = ExpiringPointsReport(customer_id=customer_id, days=days)

        async with self._session_factory() as session:
            stmt = (
                select(PointsTransaction)
                .where(
                    PointsTransaction.customer_id == customer_id,
                    PointsTransaction.tenant_id == tenant_id,
                    PointsTransaction.type == PointsTransactionType.EARN,
                    PointsTransaction.expires_at.is_not(None),
                    PointsTransaction.expires_at >= current_time,
                    PointsTransaction.expires_at <= horizon,
                )
                .order_by(PointsTransaction.expires_at.asc())
            )
            rows = (await session.execute(stmt)).scalars().all()

        for row in rows:
            expires_at = ensure_aware(row.expires_at)
            remaining = (expires_at - current_time).total_seconds() / 86400
            report.entries.append(
                ExpiringPointsEntry(
                    transaction_id=row.id,
                    points=row.points,
                    expires_at=expires_at,
                    days_until_expiry=math.ceil(remaining),
                )
            )
            report.total_points += row.points
        return report

    async def expiry_outlook(self, tenant_id: UUID, *, now: datetime | None = None) -> ExpiryOutlook:
        """Tenant-wide snapshot of upcoming expiry exposure."""

        current_time = resolve_now(now)
        loyalty_settings = await self._load_settings(tenant_id)
        horizon = current_time + timedelta(days=30)
        cutoff = current_time - timedelta(days=loyalty_settings.inactivity_days)
        warning_end = cutoff + timedelta(days=app_settings.inactivity_warning_days)

        async with self._session_factory() as session:
            holders_stmt = select(func.count(Customer.id)).where(
                Customer.tenant_id == tenant_id,
                Customer.points_balance > 0,
            )
            holders = int((await session.execute(holders_stmt)).scalar_one() or 0)

            expiring_stmt = select(
                func.coalesce(func.sum(PointsTransaction.points), 0),
                func.count(PointsTransaction.id),
            ).where(
                PointsTransaction.tenant_id == tenant_id,
                PointsTransaction.type == PointsTransactionType.EARN,
                PointsTransaction.expires_at.is_not(None),
                PointsTransaction.expires_at >= current_time,
                PointsTransaction.expires_at <= horizon,
            )
            expiring_points, expiring_count = (await session.execute(expiring_stmt)).one()

            rows = await _customers_with_last_order(session, tenant_id)

        at_risk = sum(
            1 for _, last_order_at in rows if last_order_at is not None and cutoff <= last_order_at < warning_end
        )
        return ExpiryOutlook(
            tenant_id=tenant_id,
            generated_at=current_time,
            customers_with_points=holders,
            points_expiring_soon=int(expiring_points or 0),
            transactions_expiring_soon=int(expiring_count or 0),
            customers_at_risk=at_risk,
            inactivity_days=loyalty_settings.inactivity_days,
            points_expiry_days=loyalty_settings.points_expiry_days,
        )

    async def _expire_customer_transactions(
        self,
        tenant_id: UUID,
        customer_id: UUID,
        now: datetime,
    ) -> _CustomerOutcome:
        outcome = _CustomerOutcome()
        async with self._session_factory() as session:
            async with LedgerUnitOfWork(session, tenant_id=tenant_id, customer_id=customer_id) as uow:
                customer = await uow.lock_customer()
                if customer is None:
                    return outcome

                stmt = (
                    select(PointsTransaction)
                    .where(
                        PointsTransaction.customer_id == customer_id,
                        PointsTransaction.type == PointsTransactionType.EARN,
                        PointsTransaction.points > 0,
                        PointsTransaction.expires_at.is_not(None),
                        PointsTransaction.expires_at < now,
                    )
                    .with_for_update()
                )
                rows = list((await session.execute(stmt)).scalars().all())
                if not rows:
                    return outcome

                expiring = sum(row.points for row in rows)
                new_balance = max(0, customer.points_balance - expiring)
                deduction = customer.points_balance - new_balance

                for row in rows:
                    row.expires_at = None
                outcome.transactions = len(rows)

                if deduction > 0:
                    customer.points_balance = new_balance
                    customer.points_expired_lifetime = customer.points_expired_lifetime + deduction
                    uow.append(
                        type=PointsTransactionType.EXPIRE,
                        points=-deduction,
                        reason=f"{len(rows)} point transaction(s) expired",
                        created_at=now,
                    )
                    outcome.expired = deduction

        if outcome.expired:
            self._observability.record_ledger_event(PointsTransactionType.EXPIRE.value, outcome.expired)
            logger.info(
                "Expired loyalty points",
                tenant_id=str(tenant_id),
                customer_id=str(customer_id),
                points=outcome.expired,
                transactions=outcome.transactions,
            )
        return outcome

    async def _expire_inactive_customer(
        self,
        tenant_id: UUID,
        customer_id: UUID,
        cutoff: datetime,
        inactivity_days: int,
        now: datetime,
    ) -> _CustomerOutcome:
        outcome = _CustomerOutcome()
        async with self._session_factory() as session:
            async with LedgerUnitOfWork(session, tenant_id=tenant_id, customer_id=customer_id) as uow:
                customer = await uow.lock_customer()
                if customer is None or customer.points_balance <= 0:
                    return outcome

                last_stmt = select(func.max(Order.placed_at)).where(Order.customer_id == customer_id)
                last_order_at = (await session.execute(last_stmt)).scalar_one_or_none()
                if last_order_at is not None and ensure_aware(last_order_at) >= cutoff:
                    return outcome

                deduction = customer.points_balance
                customer.points_balance = 0
                customer.points_expired_lifetime = customer.points_expired_lifetime + deduction
                uow.append(
                    type=PointsTransactionType.EXPIRE,
                    points=-deduction,
                    reason=f"Points expired due to {inactivity_days} days of inactivity",
                    created_at=now,
                )
                outcome.expired = deduction

        self._observability.record_ledger_event(PointsTransactionType.EXPIRE.value, outcome.expired)
        logger.info(
            "Expired inactive customer points",
            tenant_id=str(tenant_id),
            customer_id=str(customer_id),
            points=outcome.expired,
            inactivity_days=inactivity_days,
        )
        return outcome

    async def _fan_out(
        self,
        customer_ids: Iterable[UUID],
        worker: Callable[[UUID], Awaitable[_CustomerOutcome]],
        errors: list[SweepError],
        *,
        sweep: str,
    ) -> list[_CustomerOutcome]:
        semaphore = asyncio.Semaphore(self._concurrency)

        async def guarded(customer_id: UUID) -> _CustomerOutcome | None:
            async with semaphore:
                try:
                    return await worker(customer_id)
                except Exception as exc:  # noqa: BLE001
                    logger.exception(
                        "Points expiry failed for customer",
                        sweep=sweep,
                        customer_id=str(customer_id),
                    )
                    errors.append(SweepError(customer_id=customer_id, message=str(exc)))
                    return None

        results = await asyncio.gather(*(guarded(customer_id) for customer_id in customer_ids))
        return [outcome for outcome in results if outcome is not None]

    async def _load_settings(self, tenant_id: UUID) -> LoyaltySettings:
        async with self._session_factory() as session:
            return await LoyaltySettingsResolver(session).load(tenant_id)


async def _customers_with_last_order(session: AsyncSession, tenant_id: UUID) -> list[tuple[UUID, datetime | None]]:
    """Active customers holding points, paired with their most recent order time."""

    last_order = (
        select(Order.customer_id, func.max(Order.placed_at).label("last_order_at"))
        .where(Order.tenant_id == tenant_id)
        .group_by(Order.customer_id)
        .subquery()
    )
    stmt = (
        select(Customer.id, last_order.c.last_order_at)
        .outerjoin(last_order, last_order.c.customer_id == Customer.id)
        .where(
            Customer.tenant_id == tenant_id,
            Customer.status == CustomerStatus.ACTIVE,
            Customer.points_balance > 0,
        )
    )
    result = await session.execute(stmt)
    return [
        (customer_id, ensure_aware(last_order_at) if last_order_at is not None else None)
        for customer_id, last_order_at in result.all()
    ]


__all__ = [
    "ExpiringPointsEntry",
    "ExpiringPointsReport",
    "ExpiryOutlook",
    "PointsExpiryService",
]
