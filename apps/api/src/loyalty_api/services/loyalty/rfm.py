"""Recency / frequency / monetary segmentation."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, List
from uuid import UUID

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_api.core.clock import ensure_aware, resolve_now
from loyalty_api.core.settings import settings as app_settings
from loyalty_api.models import Customer, CustomerStatus, Order


class RFMSegment(str, Enum):
    CHAMPIONS = "CHAMPIONS"
    LOYAL_CUSTOMERS = "LOYAL_CUSTOMERS"
    POTENTIAL_LOYALISTS = "POTENTIAL_LOYALISTS"
    NEW_CUSTOMERS = "NEW_CUSTOMERS"
    PROMISING = "PROMISING"
    NEED_ATTENTION = "NEED_ATTENTION"
    ABOUT_TO_SLEEP = "ABOUT_TO_SLEEP"
    AT_RISK = "AT_RISK"
    CANT_LOSE = "CANT_LOSE"
    HIBERNATING = "HIBERNATING"
    LOST = "LOST"


@dataclass(frozen=True, slots=True)
class SegmentInfo:
    label: str
    description: str
    action: str


_SEGMENT_INFO: Dict[RFMSegment, SegmentInfo] = {
    RFMSegment.CHAMPIONS: SegmentInfo(
        "Champions",
        "Best customers who buy often and spend the most",
        "Reward them! Offer exclusive perks and early access",
    ),
    RFMSegment.LOYAL_CUSTOMERS: SegmentInfo(
        "Loyal Customers",
        "Regular customers with high spend",
        "Upsell higher-value items, ask for reviews",
    ),
    RFMSegment.POTENTIAL_LOYALISTS: SegmentInfo(
        "Potential Loyalists",
        "Recent customers with good frequency",
        "Offer loyalty program benefits, personalized recommendations",
    ),
    RFMSegment.NEW_CUSTOMERS: SegmentInfo(
        "New Customers",
        "Recently acquired customers",
        "Welcome them, provide onboarding offers",
    ),
    RFMSegment.PROMISING: SegmentInfo(
        "Promising",
        "Recent shoppers but haven't spent much",
        "Create brand awareness, offer free trials",
    ),
    RFMSegment.NEED_ATTENTION: SegmentInfo(
        "Need Attention",
        "Average customers who may be slipping away",
        "Reactivate with limited-time offers",
    ),
    RFMSegment.ABOUT_TO_SLEEP: SegmentInfo(
        "About to Sleep",
        "Below average engagement, declining",
        "Win them back with personalized reactivation",
    ),
    RFMSegment.AT_RISK: SegmentInfo(
        "At Risk",
        "Used to be valuable but haven't visited recently",
        "Send personalized emails, special offers",
    ),
    RFMSegment.CANT_LOSE: SegmentInfo(
        "Can't Lose Them",
        "High-value customers who haven't visited recently",
        "Win them back urgently, call them personally",
    ),
    RFMSegment.HIBERNATING: SegmentInfo(
        "Hibernating",
        "Very inactive, low engagement",
        "Offer special come-back deals",
    ),
    RFMSegment.LOST: SegmentInfo(
        "Lost",
        "Haven't engaged in a very long time",
        "Try to re-engage with strong offers, otherwise focus elsewhere",
    ),
}


def segment_info(segment: RFMSegment) -> SegmentInfo:
    return _SEGMENT_INFO[RFMSegment(segment)]


@dataclass(slots=True)
class RFMScore:
    recency: int
    frequency: int
    monetary: int

    @property
    def score(self) -> int:
        return self.recency * 100 + self.frequency * 10 + self.monetary


@dataclass(slots=True)
class RFMCustomer:
    customer_id: UUID
    name: str
    recency_days: int
    total_visits: int
    total_spent: Decimal
    rfm: RFMScore
    segment: RFMSegment


@dataclass(slots=True)
class RFMAverages:
    recency_days: Decimal = Decimal("0")
    visits: Decimal = Decimal("0")
    spent: Decimal = Decimal("0")


@dataclass(slots=True)
class RFMAnalysis:
    tenant_id: UUID
    generated_at: datetime
    customers: List[RFMCustomer] = field(default_factory=list)
    segment_counts: Dict[RFMSegment, int] = field(default_factory=dict)
    averages: RFMAverages = field(default_factory=RFMAverages)

    def summary(self) -> Dict[str, object]:
        return {
            "tenant_id": str(self.tenant_id),
            "generated_at": self.generated_at.isoformat(),
            "customers": len(self.customers),
            "segments": {segment.value: count for segment, count in self.segment_counts.items()},
            "averages": {
                "recency_days": str(self.averages.recency_days),
                "visits": str(self.averages.visits),
                "spent": str(self.averages.spent),
            },
        }


def recency_score(days: int) -> int:
    if days <= 7:
        return 5
    if days <= 14:
        return 4
    if days <= 30:
        return 3
    if days <= 60:
        return 2
    return 1


def relative_score(value: Decimal, average: Decimal) -> int:
    """Score a value against the population average (used for both F and M)."""

    value = Decimal(value)
    average = Decimal(average)
    if value >= average * 2:
        return 5
    if value >= average * Decimal("1.5"):
        return 4
    if value >= average:
        return 3
    if value >= average * Decimal("0.5"):
        return 2
    return 1


def calculate_rfm_score(
    recency_days: int,
    visits: int,
    spent: Decimal,
    averages: RFMAverages,
) -> RFMScore:
    return RFMScore(
        recency=recency_score(recency_days),
        frequency=relative_score(Decimal(visits), averages.visits),
        monetary=relative_score(Decimal(spent), averages.spent),
    )


def determine_rfm_segment(score: RFMScore) -> RFMSegment:
    """First matching rule wins; the order of the checks is significant."""

    r, f, m = score.recency, score.frequency, score.monetary
    if r >= 4 and f >= 4 and m >= 4:
        return RFMSegment.CHAMPIONS
    if f >= 4 and m >= 4:
        return RFMSegment.LOYAL_CUSTOMERS
    if r <= 2 and f >= 4 and m >= 4:
        return RFMSegment.CANT_LOSE
    if r <= 2 and f >= 3 and m >= 3:
        return RFMSegment.AT_RISK
    if r >= 4 and f >= 3:
        return RFMSegment.POTENTIAL_LOYALISTS
    if r >= 4 and f <= 2:
        return RFMSegment.NEW_CUSTOMERS
    if r >= 4 and m <= 2:
        return RFMSegment.PROMISING
    if r == 3 and f == 3 and m == 3:
        return RFMSegment.NEED_ATTENTION
    if r == 2 and f <= 3:
        return RFMSegment.ABOUT_TO_SLEEP
    if r == 1 and f <= 2:
        return RFMSegment.HIBERNATING
    if r == 1:
        return RFMSegment.LOST
    return RFMSegment.NEED_ATTENTION


class RFMSegmentationService:
    """Read-only segmentation of a tenant's active customers."""

    def __init__(self, db_session: AsyncSession, *, no_order_recency_days: int | None = None) -> None:
        self._db = db_session
        self._no_order_days = no_order_recency_days or app_settings.rfm_no_order_recency_days

    async def run_rfm_analysis(self, tenant_id: UUID, *, now: datetime | None = None) -> RFMAnalysis:
        current_time = resolve_now(now)
        analysis = RFMAnalysis(tenant_id=tenant_id, generated_at=current_time)

        last_order = (
            select(Order.customer_id, func.max(Order.placed_at).label("last_order_at"))
            .where(Order.tenant_id == tenant_id)
            .group_by(Order.customer_id)
            .subquery()
        )
        stmt = (
            select(
                Customer.id,
                Customer.name,
                Customer.total_visits,
                Customer.total_spent,
                last_order.c.last_order_at,
            )
            .outerjoin(last_order, last_order.c.customer_id == Customer.id)
            .where(Customer.tenant_id == tenant_id, Customer.status == CustomerStatus.ACTIVE)
            .order_by(Customer.name.asc())
        )
        rows = (await self._db.execute(stmt)).all()
        if not rows:
            return analysis

        observations = []
        for customer_id, name, visits, spent, last_order_at in rows:
            if last_order_at is None:
                days = self._no_order_days
            else:
                days = max((current_time - ensure_aware(last_order_at)).days, 0)
            observations.append((customer_id, name, days, int(visits or 0), Decimal(spent or 0)))

        population = Decimal(len(observations))
        analysis.averages = RFMAverages(
            recency_days=sum((Decimal(obs[2]) for obs in observations), Decimal("0")) / population,
            visits=sum((Decimal(obs[3]) for obs in observations), Decimal("0")) / population,
            spent=sum((obs[4] for obs in observations), Decimal("0")) / population,
        )

        for customer_id, name, days, visits, spent in observations:
            score = calculate_rfm_score(days, visits, spent, analysis.averages)
            segment = determine_rfm_segment(score)
            analysis.customers.append(
                RFMCustomer(
                    customer_id=customer_id,
                    name=name,
                    recency_days=days,
                    total_visits=visits,
                    total_spent=spent,
                    rfm=score,
                    segment=segment,
                )
            )
            analysis.segment_counts[segment] = analysis.segment_counts.get(segment, 0) + 1

        logger.info(
            "Completed RFM analysis",
            tenant_id=str(tenant_id),
            customers=len(analysis.customers),
            segments={segment.value: count for segment, count in analysis.segment_counts.items()},
        )
        return analysis


__all__ = [
    "RFMAnalysis",
    "RFMAverages",
    "RFMCustomer",
    "RFMScore",
    "RFMSegment",
    "RFMSegmentationService",
    "SegmentInfo",
    "calculate_rfm_score",
    "determine_rfm_segment",
    "recency_score",
    "relative_score",
    "segment_info",
]
