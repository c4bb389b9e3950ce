"""Periodic RFM snapshot logging."""

from __future__ import annotations

from typing import Any, Dict, List

from loguru import logger

from loyalty_api.services.loyalty import RFMSegmentationService

from .tenants import SessionFactory, list_tenant_ids


async def capture_rfm_snapshot(
    *,
    session_factory: SessionFactory,
    tenant_ids: List[str] | None = None,
) -> Dict[str, Any]:
    """Segment every tenant's active customers and log the distribution."""

    snapshots: List[Dict[str, Any]] = []
    for tenant_id in await list_tenant_ids(session_factory, tenant_ids):
        async with session_factory() as session:
            analysis = await RFMSegmentationService(session).run_rfm_analysis(tenant_id)
        snapshot = analysis.summary()
        logger.bind(summary=snapshot).info("RFM snapshot captured")
        snapshots.append(snapshot)

    return {"tenants": len(snapshots), "snapshots": snapshots}


__all__ = ["capture_rfm_snapshot"]
