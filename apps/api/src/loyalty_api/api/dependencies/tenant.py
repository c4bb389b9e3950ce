"""Request context resolved from headers set by the calling POS."""

from uuid import UUID

from fastapi import Header, HTTPException, status

from loyalty_api.db.session import async_session


async def get_tenant_id(x_tenant_id: str = Header(..., alias="X-Tenant-ID")) -> UUID:
    try:
        return UUID(x_tenant_id)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid X-Tenant-ID header") from exc


async def get_staff_user(x_staff_user: str | None = Header(None, alias="X-Staff-User")) -> str | None:
    return x_staff_user or None


def get_session_factory():
    """Factory for sweeps that open one session per customer."""

    return async_session
