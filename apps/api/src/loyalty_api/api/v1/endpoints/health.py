from __future__ import annotations

from typing import Dict, Literal

from fastapi import APIRouter, Depends, Request
from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_api.core.settings import settings
from loyalty_api.db.session import get_session
from loyalty_api.observability.scheduler import get_scheduler_store


router = APIRouter()


class ComponentStatus(BaseModel):
    status: Literal["ready", "starting", "disabled", "error", "degraded"]
    detail: str | None = Field(default=None, description="Human readable status detail")


class ReadinessPayload(BaseModel):
    status: Literal["ready", "degraded", "error"]
    components: Dict[str, ComponentStatus]


@router.get("/readyz", summary="Service readiness", response_model=ReadinessPayload)
async def service_readiness(
    request: Request,
    session: AsyncSession = Depends(get_session),
) -> ReadinessPayload:
    components: Dict[str, ComponentStatus] = {}
    status: Literal["ready", "degraded", "error"] = "ready"

    try:
        await session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("Database readiness probe failed", error=str(exc))
        components["database"] = ComponentStatus(status="error", detail=str(exc))
        status = "error"
    else:
        components["database"] = ComponentStatus(status="ready")

    scheduler = getattr(request.app.state, "loyalty_job_scheduler", None)
    if settings.loyalty_scheduler_enabled and scheduler is not None:
        running = bool(getattr(scheduler, "is_running", False))
        scheduler_status: Literal["ready", "starting", "disabled", "error"] = "ready" if running else "starting"
        detail = None if running else "Loyalty scheduler not running"
        failing_jobs = [
            job_id
            for job_id, job in get_scheduler_store().snapshot().jobs.items()
            if job.totals.get("consecutive_failures", 0) > 0
        ]
        if failing_jobs:
            scheduler_status = "error"
            detail = f"Jobs failing: {', '.join(failing_jobs)}"
            status = "error"
        elif not running and status == "ready":
            status = "degraded"
        components["loyalty_scheduler"] = ComponentStatus(status=scheduler_status, detail=detail)
    else:
        components["loyalty_scheduler"] = ComponentStatus(
            status="disabled",
            detail="Loyalty scheduler disabled via settings",
        )

    return ReadinessPayload(status=status, components=components)


@router.get("/scheduler", summary="Loyalty scheduler metrics")
async def scheduler_health(request: Request) -> dict[str, object]:
    scheduler = getattr(request.app.state, "loyalty_job_scheduler", None)
    if scheduler is None:
        return {"running": False, **get_scheduler_store().snapshot().as_dict()}
    return scheduler.health()
