from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from loyalty_api.models import CustomerStatus, CustomerTier, PointsTransactionType
from loyalty_api.services.loyalty import LoyaltyLedgerService, LoyaltyReportingService


NOW = datetime(2026, 8, 1, 10, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_program_summary_totals(session_factory, create_tenant, create_customer, create_bill) -> None:
    tenant_id = await create_tenant()
    other_tenant = await create_tenant()
    first = await create_customer(tenant_id, name="First")
    await create_customer(tenant_id, name="Gold", tier=CustomerTier.GOLD)
    await create_customer(tenant_id, name="Gone", status=CustomerStatus.BLOCKED)
    await create_customer(other_tenant, name="Elsewhere", points_balance=999)
    bill_id = await create_bill(tenant_id, first, total="1000.00")

    async with session_factory() as session:
        ledger = LoyaltyLedgerService(session)
        await ledger.earn(first, None, Decimal("20000"), tenant_id, now=NOW)
        await ledger.redeem(first, bill_id, 150, tenant_id, now=NOW + timedelta(minutes=5))

    async with session_factory() as session:
        reporting = LoyaltyReportingService(session, recent_limit=1)
        summary = await reporting.summarize(tenant_id, now=NOW)
        counts = await reporting.count_by_type(tenant_id)

    assert summary.active_customers == 2
    assert summary.tier_distribution == {"BRONZE": 1, "SILVER": 0, "GOLD": 1, "PLATINUM": 0}
    assert summary.points_issued == 200
    assert summary.points_redeemed == 150
    assert summary.points_outstanding == 50
    assert [entry.type for entry in summary.recent_transactions] == [PointsTransactionType.REDEEM]
    assert counts == {PointsTransactionType.EARN: 1, PointsTransactionType.REDEEM: 1}


@pytest.mark.asyncio
async def test_program_summary_for_empty_tenant(session_factory, create_tenant) -> None:
    tenant_id = await create_tenant()

    async with session_factory() as session:
        summary = await LoyaltyReportingService(session).summarize(tenant_id)

    assert summary.active_customers == 0
    assert summary.points_issued == 0
    assert summary.recent_transactions == []
