from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select
from sqlalchemy.orm.exc import StaleDataError

from loyalty_api.models import Customer, PointsTransaction
from loyalty_api.services.loyalty import LedgerIntegrityError, LedgerUnitOfWork, LoyaltyLedgerService


@pytest.mark.asyncio
async def test_unit_runs_as_savepoint_inside_outer_transaction(session_factory, create_tenant, create_customer) -> None:
    tenant_id = await create_tenant()
    customer_id = await create_customer(tenant_id)

    async with session_factory() as session:
        await session.execute(select(Customer.id))
        assert session.in_transaction()

        ledger = LoyaltyLedgerService(session)
        await ledger.earn(customer_id, None, Decimal("1000"), tenant_id)
        with pytest.raises(LedgerIntegrityError):
            await ledger.earn(customer_id, uuid4(), Decimal("5000"), tenant_id)
        await session.commit()

    async with session_factory() as session:
        customer = await session.get(Customer, customer_id)
        rows = (await session.execute(select(PointsTransaction))).scalars().all()

    assert customer.points_balance == 10
    assert len(rows) == 1


@pytest.mark.asyncio
async def test_outer_rollback_discards_committed_savepoint(session_factory, create_tenant, create_customer) -> None:
    tenant_id = await create_tenant()
    customer_id = await create_customer(tenant_id)

    async with session_factory() as session:
        await session.execute(select(Customer.id))
        await LoyaltyLedgerService(session).earn(customer_id, None, Decimal("1000"), tenant_id)
        await session.rollback()

    async with session_factory() as session:
        customer = await session.get(Customer, customer_id)

    assert customer.points_balance == 0


@pytest.mark.asyncio
async def test_stale_customer_write_is_rejected(session_factory, create_tenant, create_customer) -> None:
    tenant_id = await create_tenant()
    customer_id = await create_customer(tenant_id)

    stale_session = session_factory()
    try:
        stale = await stale_session.get(Customer, customer_id)
        await stale_session.commit()

        async with session_factory() as session:
            await LoyaltyLedgerService(session).earn(customer_id, None, Decimal("1000"), tenant_id)

        stale.points_balance = 500
        with pytest.raises(StaleDataError):
            await stale_session.commit()
    finally:
        await stale_session.close()


@pytest.mark.asyncio
async def test_append_requires_locked_customer(session_factory, create_tenant) -> None:
    tenant_id = await create_tenant()

    async with session_factory() as session:
        unit = LedgerUnitOfWork(session, tenant_id=tenant_id, customer_id=uuid4())
        with pytest.raises(RuntimeError):
            async with unit:
                assert await unit.lock_customer() is None
                unit.append(points=1)
