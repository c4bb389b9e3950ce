from datetime import date, datetime
from decimal import Decimal
from uuid import UUID, uuid4

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from loyalty_api.api.dependencies.tenant import get_session_factory
from loyalty_api.app import create_app
from loyalty_api.db.base import Base
from loyalty_api.db.session import build_engine, enable_sqlite_savepoints, get_session
from loyalty_api.models import Bill, Customer, Order, Tenant
from loyalty_api.observability.loyalty import get_loyalty_store


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    enable_sqlite_savepoints(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def file_session_factory(tmp_path):
    """Session factory over a file-backed SQLite database with a real connection pool."""

    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'loyalty.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def app_with_db(session_factory):
    app = create_app()

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_session_factory] = lambda: session_factory

    try:
        yield app, session_factory
    finally:
        app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def reset_loyalty_store():
    get_loyalty_store().reset()
    yield


@pytest.fixture
def create_tenant(session_factory):
    """Persist a tenant; keyword arguments are camelCase loyalty settings."""

    async def _create(*, timezone: str = "UTC", **loyalty) -> UUID:
        loyalty.setdefault("enabled", True)
        async with session_factory() as session:
            tenant = Tenant(name=f"Tenant {uuid4().hex[:6]}", timezone=timezone, settings={"loyalty": loyalty})
            session.add(tenant)
            await session.commit()
            return tenant.id

    return _create


@pytest.fixture
def create_customer(session_factory):
    async def _create(tenant_id: UUID, *, name: str = "Jamie Customer", date_of_birth: date | None = None, **fields) -> UUID:
        async with session_factory() as session:
            customer = Customer(tenant_id=tenant_id, name=name, date_of_birth=date_of_birth, **fields)
            session.add(customer)
            await session.commit()
            return customer.id

    return _create


@pytest.fixture
def create_order(session_factory):
    async def _create(
        tenant_id: UUID,
        customer_id: UUID,
        *,
        total: str = "100.00",
        placed_at: datetime | None = None,
    ) -> UUID:
        async with session_factory() as session:
            order = Order(
                tenant_id=tenant_id,
                customer_id=customer_id,
                order_number=f"ORD-{uuid4().hex[:8]}",
                total_amount=Decimal(total),
            )
            if placed_at is not None:
                order.placed_at = placed_at
            session.add(order)
            await session.commit()
            return order.id

    return _create


@pytest.fixture
def create_bill(session_factory):
    async def _create(tenant_id: UUID, customer_id: UUID, *, total: str = "1000.00") -> UUID:
        async with session_factory() as session:
            bill = Bill(tenant_id=tenant_id, customer_id=customer_id, total_amount=Decimal(total))
            session.add(bill)
            await session.commit()
            return bill.id

    return _create
