"""Scheduled points expiry across tenants."""

from __future__ import annotations

from typing import Any, Dict, List

from loguru import logger

from loyalty_api.services.loyalty import PointsExpiryService

from .tenants import SessionFactory, list_tenant_ids


async def run_points_expiry(
    *,
    session_factory: SessionFactory,
    tenant_ids: List[str] | None = None,
    concurrency: int | None = None,
    include_inactivity: bool = True,
) -> Dict[str, Any]:
    """Run the per-transaction sweep, then the inactivity sweep, for every tenant."""

    service = PointsExpiryService(session_factory, concurrency=concurrency)
    tenants = await list_tenant_ids(session_factory, tenant_ids)

    reports: List[Dict[str, Any]] = []
    total_expired = 0
    failures = 0
    for tenant_id in tenants:
        transactions = await service.sweep_expired_transactions(tenant_id)
        entry: Dict[str, Any] = {"transactions": transactions.as_dict()}
        total_expired += transactions.total_expired
        failures += len(transactions.errors)

        if include_inactivity:
            inactivity = await service.sweep_inactive_customers(tenant_id)
            entry["inactivity"] = inactivity.as_dict()
            total_expired += inactivity.total_expired
            failures += len(inactivity.errors)
        reports.append(entry)

    summary = {
        "tenants": len(tenants),
        "points_expired": total_expired,
        "failures": failures,
    }
    logger.bind(summary=summary).info("Loyalty points expiry completed")
    return {**summary, "reports": reports}


__all__ = ["run_points_expiry"]
