"""Loyalty domain exceptions.

Expected business outcomes (insufficient points, below minimum, ...) are
returned as result values; these exceptions cover integrity failures that
abort a unit of work.
"""

from __future__ import annotations

from uuid import UUID


class LoyaltyError(Exception):
    """Base class for loyalty engine failures."""


class TenantNotFoundError(LoyaltyError):
    def __init__(self, tenant_id: UUID) -> None:
        super().__init__(f"Tenant {tenant_id} not found")
        self.tenant_id = tenant_id


class LedgerIntegrityError(LoyaltyError):
    """A record required mid-transaction vanished or disagrees with the ledger."""

    def __init__(self, message: str, *, customer_id: UUID | None = None) -> None:
        super().__init__(message)
        self.customer_id = customer_id


__all__ = ["LedgerIntegrityError", "LoyaltyError", "TenantNotFoundError"]
