"""Tenant selection shared by the loyalty jobs."""

from __future__ import annotations

from typing import Callable, Iterable, List
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_api.models import Tenant

SessionFactory = Callable[[], AsyncSession]


async def list_tenant_ids(session_factory: SessionFactory, tenant_ids: Iterable[str | UUID] | None = None) -> List[UUID]:
    """Resolve the tenants a job should visit; an explicit list narrows the set."""

    stmt = select(Tenant.id).order_by(Tenant.created_at.asc(), Tenant.id.asc())
    if tenant_ids:
        wanted = [value if isinstance(value, UUID) else UUID(str(value)) for value in tenant_ids]
        stmt = stmt.where(Tenant.id.in_(wanted))

    async with session_factory() as session:
        result = await session.execute(stmt)
        return list(result.scalars().all())


__all__ = ["SessionFactory", "list_tenant_ids"]
