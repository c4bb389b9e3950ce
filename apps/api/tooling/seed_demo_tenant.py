"""Seed a demo tenant with loyalty enabled and a handful of customers."""

from __future__ import annotations

import asyncio
from datetime import date
import os

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from loyalty_api.db.session import build_engine
from loyalty_api.models import Customer, Tenant


DEMO_TENANT_NAME = os.getenv("DEMO_TENANT_NAME", "Demo Bistro")

DEMO_CUSTOMERS: list[dict[str, object]] = [
    {"name": "Asha Patel", "phone": "+15550100", "date_of_birth": date(1990, 3, 14)},
    {"name": "Leo Martins", "phone": "+15550101", "date_of_birth": date(1985, 11, 2)},
    {"name": "Mei Tanaka", "phone": "+15550102", "date_of_birth": None},
]


async def seed_tenant(session: AsyncSession) -> Tenant:
    existing = await session.execute(select(Tenant).where(Tenant.name == DEMO_TENANT_NAME))
    tenant = existing.scalar_one_or_none()
    if tenant is None:
        tenant = Tenant(
            name=DEMO_TENANT_NAME,
            timezone=os.getenv("DEMO_TENANT_TIMEZONE", "UTC"),
            settings={"loyalty": {"enabled": True}},
        )
        session.add(tenant)
        await session.flush()

    for payload in DEMO_CUSTOMERS:
        found = await session.execute(
            select(Customer).where(Customer.tenant_id == tenant.id, Customer.name == payload["name"])
        )
        if found.scalar_one_or_none() is None:
            session.add(Customer(tenant_id=tenant.id, **payload))
    await session.commit()
    return tenant


async def main() -> None:
    engine = build_engine()
    session_factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        async with session_factory() as session:
            tenant = await seed_tenant(session)
        print(f"Demo tenant ready: {tenant.id}")
    finally:
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
