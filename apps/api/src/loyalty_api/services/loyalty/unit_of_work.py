"""Explicit transaction boundary for balance mutations."""

from __future__ import annotations

from typing import Any
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, AsyncSessionTransaction

from loyalty_api.models import Customer, PointsTransaction


class LedgerUnitOfWork:
    """Lock one customer row, collect writes, commit or roll back together.

    When the session is already inside a transaction the unit runs as a
    SAVEPOINT and the caller keeps ownership of the outer commit. Concurrent
    units for the same customer serialize on ``SELECT ... FOR UPDATE``; the
    customer's ``version`` column rejects any write based on a stale read.
    """

    def __init__(self, db_session: AsyncSession, *, tenant_id: UUID, customer_id: UUID) -> None:
        self._db = db_session
        self.tenant_id = tenant_id
        self.customer_id = customer_id
        self._transaction: AsyncSessionTransaction | None = None
        self.customer: Customer | None = None

    @property
    def session(self) -> AsyncSession:
        return self._db

    async def __aenter__(self) -> "LedgerUnitOfWork":
        if self._db.in_transaction():
            self._transaction = await self._db.begin_nested()
        else:
            self._transaction = await self._db.begin()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        transaction = self._transaction
        self._transaction = None
        if transaction is None:
            return False

        if exc_type is not None:
            await transaction.rollback()
            logger.warning(
                "Rolled back loyalty unit of work",
                tenant_id=str(self.tenant_id),
                customer_id=str(self.customer_id),
                error=str(exc),
            )
            return False

        try:
            await self._db.flush()
            await transaction.commit()
        except Exception:
            if transaction.is_active:
                await transaction.rollback()
            raise
        return False

    async def lock_customer(self) -> Customer | None:
        """Read the customer row for update, refreshing any stale identity-map copy."""

        stmt = (
            select(Customer)
            .where(Customer.id == self.customer_id, Customer.tenant_id == self.tenant_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self._db.execute(stmt)
        self.customer = result.scalar_one_or_none()
        return self.customer

    def append(self, **values: Any) -> PointsTransaction:
        """Stage a ledger row snapshotting the locked customer's balance."""

        if self.customer is None:
            raise RuntimeError("lock_customer() must run before appending ledger rows")
        entry = PointsTransaction(
            tenant_id=self.tenant_id,
            customer_id=self.customer.id,
            balance_after=self.customer.points_balance,
            **values,
        )
        self._db.add(entry)
        return entry


__all__ = ["LedgerUnitOfWork"]
