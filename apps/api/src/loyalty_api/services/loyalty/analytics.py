"""Loyalty program reporting."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_api.core.clock import resolve_now
from loyalty_api.models import (
    TIER_ORDER,
    Customer,
    CustomerStatus,
    PointsTransaction,
    PointsTransactionType,
)


@dataclass(slots=True)
class LoyaltyProgramSummary:
    """Program-wide totals for a tenant."""

    tenant_id: UUID
    computed_at: datetime
    active_customers: int
    tier_distribution: Dict[str, int]
    points_issued: int
    points_redeemed: int
    points_outstanding: int
    recent_transactions: List[PointsTransaction]


class LoyaltyReportingService:
    """Aggregate ledger and customer counters for dashboards."""

    def __init__(self, db: AsyncSession, *, recent_limit: int = 10) -> None:
        self._db = db
        self._recent_limit = recent_limit

    async def summarize(self, tenant_id: UUID, *, now: datetime | None = None) -> LoyaltyProgramSummary:
        computed_at = resolve_now(now)

        active_stmt = select(func.count(Customer.id)).where(
            Customer.tenant_id == tenant_id,
            Customer.status == CustomerStatus.ACTIVE,
        )
        active = int((await self._db.execute(active_stmt)).scalar_one() or 0)

        tier_stmt = (
            select(Customer.tier, func.count(Customer.id))
            .where(Customer.tenant_id == tenant_id, Customer.status == CustomerStatus.ACTIVE)
            .group_by(Customer.tier)
        )
        distribution = {tier.value: 0 for tier in TIER_ORDER}
        for tier, count in (await self._db.execute(tier_stmt)).all():
            distribution[getattr(tier, "value", tier)] = int(count or 0)

        totals_stmt = select(
            func.coalesce(func.sum(Customer.points_earned_lifetime), 0),
            func.coalesce(func.sum(Customer.points_redeemed_lifetime), 0),
            func.coalesce(func.sum(Customer.points_balance), 0),
        ).where(Customer.tenant_id == tenant_id)
        issued, redeemed, outstanding = (await self._db.execute(totals_stmt)).one()

        recent_stmt = (
            select(PointsTransaction)
            .where(PointsTransaction.tenant_id == tenant_id)
            .order_by(PointsTransaction.created_at.desc(), PointsTransaction.id.desc())
            .limit(self._recent_limit)
        )
        recent = list((await self._db.execute(recent_stmt)).scalars().all())

        return LoyaltyProgramSummary(
            tenant_id=tenant_id,
            computed_at=computed_at,
            active_customers=active,
            tier_distribution=distribution,
            points_issued=int(issued or 0),
            points_redeemed=int(redeemed or 0),
            points_outstanding=int(outstanding or 0),
            recent_transactions=recent,
        )

    async def count_by_type(self, tenant_id: UUID) -> Dict[PointsTransactionType, int]:
        stmt = (
            select(PointsTransaction.type, func.count(PointsTransaction.id))
            .where(PointsTransaction.tenant_id == tenant_id)
            .group_by(PointsTransaction.type)
        )
        return {PointsTransactionType(kind): int(count) for kind, count in (await self._db.execute(stmt)).all()}


__all__ = ["LoyaltyProgramSummary", "LoyaltyReportingService"]
