from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import select

from loyalty_api.models import Customer, PointsTransaction, PointsTransactionType, Tenant
from loyalty_api.observability.loyalty import get_loyalty_store
from loyalty_api.services.loyalty import LoyaltyLedgerService, PointsExpiryService


NOW = datetime(2026, 6, 1, 8, 0, tzinfo=timezone.utc)


async def _earn(session_factory, customer_id, tenant_id, amount: str, when: datetime) -> None:
    async with session_factory() as session:
        await LoyaltyLedgerService(session).earn(customer_id, None, Decimal(amount), tenant_id, now=when)


async def _customer(session_factory, customer_id) -> Customer:
    async with session_factory() as session:
        return await session.get(Customer, customer_id)


async def _rows(session_factory, customer_id, kind: PointsTransactionType) -> list[PointsTransaction]:
    async with session_factory() as session:
        result = await session.execute(
            select(PointsTransaction).where(
                PointsTransaction.customer_id == customer_id,
                PointsTransaction.type == kind,
            )
        )
        return list(result.scalars().all())


@pytest.mark.asyncio
async def test_sweep_expires_only_past_due_earns(session_factory, create_tenant, create_customer) -> None:
    tenant_id = await create_tenant()
    customer_id = await create_customer(tenant_id)
    await _earn(session_factory, customer_id, tenant_id, "1000", NOW - timedelta(days=400))
    await _earn(session_factory, customer_id, tenant_id, "2000", NOW - timedelta(days=10))

    service = PointsExpiryService(session_factory, concurrency=1)
    report = await service.sweep_expired_transactions(tenant_id, now=NOW)

    assert report.processed_count == 1
    assert report.total_expired == 10
    assert report.transactions_processed == 1
    assert report.errors == []

    customer = await _customer(session_factory, customer_id)
    assert customer.points_balance == 20
    assert customer.points_expired_lifetime == 10

    expired = await _rows(session_factory, customer_id, PointsTransactionType.EXPIRE)
    assert [(row.points, row.balance_after) for row in expired] == [(-10, 20)]
    assert expired[0].reason == "1 point transaction(s) expired"

    earns = await _rows(session_factory, customer_id, PointsTransactionType.EARN)
    assert sorted(row.expires_at is None for row in earns) == [False, True]

    rerun = await service.sweep_expired_transactions(tenant_id, now=NOW)
    assert rerun.processed_count == 0
    assert rerun.total_expired == 0

    sweeps = get_loyalty_store().snapshot().sweeps
    assert sweeps["transactions:runs"] == 2
    assert sweeps["transactions:points"] == 10


@pytest.mark.asyncio
async def test_sweep_clamps_to_remaining_balance(
    session_factory, create_tenant, create_customer, create_bill
) -> None:
    tenant_id = await create_tenant()
    customer_id = await create_customer(tenant_id)
    bill_id = await create_bill(tenant_id, customer_id, total="1000.00")
    await _earn(session_factory, customer_id, tenant_id, "30000", NOW - timedelta(days=400))
    async with session_factory() as session:
        redeemed = await LoyaltyLedgerService(session).redeem(
            customer_id, bill_id, 250, tenant_id, now=NOW - timedelta(days=399)
        )
    assert redeemed.success is True

    report = await PointsExpiryService(session_factory, concurrency=1).sweep_expired_transactions(tenant_id, now=NOW)

    assert report.total_expired == 50
    customer = await _customer(session_factory, customer_id)
    assert customer.points_balance == 0
    assert customer.points_expired_lifetime == 50

    async with session_factory() as session:
        audit = await LoyaltyLedgerService(session).audit_balance(customer_id, tenant_id)
    assert audit.consistent is True


@pytest.mark.asyncio
async def test_sweep_skips_expire_row_when_nothing_left(session_factory, create_tenant, create_customer) -> None:
    tenant_id = await create_tenant()
    customer_id = await create_customer(tenant_id)
    await _earn(session_factory, customer_id, tenant_id, "1000", NOW - timedelta(days=400))
    async with session_factory() as session:
        await LoyaltyLedgerService(session).adjust(
            customer_id, -10, "Spent in store", "staff-1", tenant_id, now=NOW - timedelta(days=300)
        )

    report = await PointsExpiryService(session_factory, concurrency=1).sweep_expired_transactions(tenant_id, now=NOW)

    assert report.transactions_processed == 1
    assert report.total_expired == 0
    assert await _rows(session_factory, customer_id, PointsTransactionType.EXPIRE) == []
    earns = await _rows(session_factory, customer_id, PointsTransactionType.EARN)
    assert earns[0].expires_at is None


@pytest.mark.asyncio
async def test_no_expiry_when_window_disabled(session_factory, create_tenant, create_customer) -> None:
    tenant_id = await create_tenant(pointsExpiry=0)
    customer_id = await create_customer(tenant_id)
    await _earn(session_factory, customer_id, tenant_id, "1000", NOW - timedelta(days=4000))

    report = await PointsExpiryService(session_factory, concurrency=1).sweep_expired_transactions(tenant_id, now=NOW)

    assert report.processed_count == 0
    customer = await _customer(session_factory, customer_id)
    assert customer.points_balance == 10


@pytest.mark.asyncio
async def test_inactivity_sweep_zeroes_dormant_balances(
    session_factory, create_tenant, create_customer, create_order
) -> None:
    tenant_id = await create_tenant(pointsExpiry=90)
    dormant = await create_customer(tenant_id, name="Dormant", points_balance=100, points_earned_lifetime=100)
    at_risk = await create_customer(tenant_id, name="Slipping", points_balance=100, points_earned_lifetime=100)
    active = await create_customer(tenant_id, name="Regular", points_balance=100, points_earned_lifetime=100)
    never_ordered = await create_customer(tenant_id, name="Walk-in", points_balance=40, points_earned_lifetime=40)
    await create_customer(tenant_id, name="Empty")

    await create_order(tenant_id, dormant, placed_at=NOW - timedelta(days=120))
    await create_order(tenant_id, at_risk, placed_at=NOW - timedelta(days=75))
    await create_order(tenant_id, active, placed_at=NOW - timedelta(days=10))

    report = await PointsExpiryService(session_factory, concurrency=1).sweep_inactive_customers(tenant_id, now=NOW)

    assert report.inactivity_days == 90
    assert report.processed_count == 2
    assert report.total_expired == 140
    assert report.customers_at_risk == 1

    assert (await _customer(session_factory, dormant)).points_balance == 0
    assert (await _customer(session_factory, never_ordered)).points_balance == 0
    assert (await _customer(session_factory, at_risk)).points_balance == 100
    assert (await _customer(session_factory, active)).points_balance == 100

    expired = await _rows(session_factory, dormant, PointsTransactionType.EXPIRE)
    assert expired[0].points == -100
    assert expired[0].reason == "Points expired due to 90 days of inactivity"


@pytest.mark.asyncio
async def test_inactivity_uses_dedicated_window(session_factory, create_tenant, create_customer, create_order) -> None:
    tenant_id = await create_tenant(pointsExpiry=365, inactivityExpiryDays=30)
    customer_id = await create_customer(tenant_id, points_balance=60, points_earned_lifetime=60)
    await create_order(tenant_id, customer_id, placed_at=NOW - timedelta(days=45))

    report = await PointsExpiryService(session_factory, concurrency=1).sweep_inactive_customers(tenant_id, now=NOW)

    assert report.inactivity_days == 30
    assert report.total_expired == 60


@pytest.mark.asyncio
async def test_sweep_collects_customer_failures(session_factory, create_tenant, create_customer) -> None:
    tenant_id = await create_tenant()
    healthy = await create_customer(tenant_id, name="Healthy")
    broken = await create_customer(tenant_id, name="Broken")
    await _earn(session_factory, healthy, tenant_id, "1000", NOW - timedelta(days=400))
    await _earn(session_factory, broken, tenant_id, "1000", NOW - timedelta(days=400))

    service = PointsExpiryService(session_factory, concurrency=1)
    original = service._expire_customer_transactions

    async def flaky(tenant, customer_id, now):
        if customer_id == broken:
            raise RuntimeError("lock timeout")
        return await original(tenant, customer_id, now)

    service._expire_customer_transactions = flaky

    report = await service.sweep_expired_transactions(tenant_id, now=NOW)

    assert report.processed_count == 1
    assert report.total_expired == 10
    assert len(report.errors) == 1
    assert report.errors[0].customer_id == broken
    assert report.errors[0].message == "lock timeout"
    assert (await _customer(session_factory, broken)).points_balance == 10
    assert get_loyalty_store().snapshot().sweeps["transactions:failures"] == 1


@pytest.mark.asyncio
async def test_expiring_points_window(session_factory, create_tenant, create_customer) -> None:
    tenant_id = await create_tenant()
    customer_id = await create_customer(tenant_id)
    await _earn(session_factory, customer_id, tenant_id, "1000", NOW - timedelta(days=350))
    await _earn(session_factory, customer_id, tenant_id, "5000", NOW - timedelta(days=100))

    service = PointsExpiryService(session_factory, concurrency=1)
    month = await service.get_expiring_points(customer_id, tenant_id, days=30, now=NOW)
    week = await service.get_expiring_points(customer_id, tenant_id, days=7, now=NOW)

    assert month.total_points == 10
    assert [entry.days_until_expiry for entry in month.entries] == [15]
    assert week.total_points == 0
    assert week.entries == []


@pytest.mark.asyncio
async def test_expiry_outlook(session_factory, create_tenant, create_customer, create_order) -> None:
    tenant_id = await create_tenant(pointsExpiry=90)
    soon = await create_customer(tenant_id, name="Soon")
    await _earn(session_factory, soon, tenant_id, "2000", NOW - timedelta(days=80))
    slipping = await create_customer(tenant_id, name="Slipping", points_balance=30, points_earned_lifetime=30)
    await create_order(tenant_id, slipping, placed_at=NOW - timedelta(days=70))

    outlook = await PointsExpiryService(session_factory, concurrency=1).expiry_outlook(tenant_id, now=NOW)

    assert outlook.customers_with_points == 2
    assert outlook.points_expiring_soon == 20
    assert outlook.transactions_expiring_soon == 1
    assert outlook.customers_at_risk == 1
    assert outlook.inactivity_days == 90


@pytest.mark.asyncio
async def test_parallel_sweep_on_file_database_expires_every_customer(file_session_factory) -> None:
    async with file_session_factory() as session:
        tenant = Tenant(name="Harbour Bistro", timezone="UTC", settings={"loyalty": {"enabled": True}})
        session.add(tenant)
        await session.flush()
        customers = [Customer(tenant_id=tenant.id, name=f"Guest {index}") for index in range(8)]
        session.add_all(customers)
        await session.commit()
        tenant_id = tenant.id
        customer_ids = [customer.id for customer in customers]

    for customer_id in customer_ids:
        await _earn(file_session_factory, customer_id, tenant_id, "1000", NOW - timedelta(days=400))

    report = await PointsExpiryService(file_session_factory, concurrency=4).sweep_expired_transactions(
        tenant_id, now=NOW
    )

    assert report.errors == []
    assert report.processed_count == 8
    assert report.total_expired == 80

    async with file_session_factory() as session:
        balances = (
            await session.execute(select(Customer.points_balance).where(Customer.tenant_id == tenant_id))
        ).scalars().all()
    assert list(balances) == [0] * 8
