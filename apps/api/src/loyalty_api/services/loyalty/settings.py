"""Per-tenant loyalty configuration.

Settings are stored on the tenant as a camelCase JSON document under the
``"loyalty"`` key, merged over program defaults and validated on every load.
Each ledger operation resolves its own immutable ``LoyaltySettings`` value and
threads it through; nothing is cached between operations.
"""

from __future__ import annotations

import json
from datetime import timedelta
from decimal import Decimal
from typing import Any
from uuid import UUID
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_api.core.settings import settings as app_settings
from loyalty_api.models import CustomerTier, Tenant

from .exceptions import TenantNotFoundError


DEFAULT_TIER_THRESHOLDS: dict[str, int] = {
    "BRONZE": 0,
    "SILVER": 500,
    "GOLD": 2000,
    "PLATINUM": 5000,
}

DEFAULT_TIER_MULTIPLIERS: dict[str, str] = {
    "BRONZE": "1",
    "SILVER": "1.25",
    "GOLD": "1.5",
    "PLATINUM": "2",
}

DEFAULT_VISIT_MILESTONES: dict[int, int] = {
    5: 50,
    10: 100,
    25: 250,
    50: 500,
    100: 1000,
}

DEFAULT_INACTIVITY_DAYS = 365


class LoyaltySettings(BaseModel):
    """Immutable loyalty configuration for one tenant."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )

    enabled: bool = False
    points_per_currency: int = Field(1, ge=0)
    currency_per_point: Decimal = Field(Decimal("100"), gt=0)
    point_value: Decimal = Field(Decimal("1"), gt=0)
    min_redeem_points: int = Field(100, ge=0)
    max_redeem_percentage: Decimal = Field(Decimal("50"), ge=0, le=100)
    birthday_bonus: int = Field(100, ge=0)
    welcome_bonus: int = Field(0, ge=0)
    tier_thresholds: dict[CustomerTier, int] = Field(
        default_factory=lambda: {CustomerTier(key): value for key, value in DEFAULT_TIER_THRESHOLDS.items()}
    )
    tier_multipliers: dict[CustomerTier, Decimal] = Field(
        default_factory=lambda: {
            CustomerTier(key): Decimal(value) for key, value in DEFAULT_TIER_MULTIPLIERS.items()
        }
    )
    points_expiry_days: int = Field(365, ge=0, alias="pointsExpiry")
    inactivity_expiry_days: int | None = Field(None, ge=1)
    visit_milestones: dict[int, int] = Field(default_factory=lambda: dict(DEFAULT_VISIT_MILESTONES))
    timezone: str = "UTC"

    @field_validator("tier_thresholds", mode="before")
    @classmethod
    def _merge_thresholds(cls, value: object) -> object:
        if value is None:
            return dict(DEFAULT_TIER_THRESHOLDS)
        if isinstance(value, dict):
            merged: dict[Any, Any] = dict(DEFAULT_TIER_THRESHOLDS)
            merged.update({str(getattr(key, "value", key)).upper(): amount for key, amount in value.items()})
            return merged
        return value

    @field_validator("tier_multipliers", mode="before")
    @classmethod
    def _merge_multipliers(cls, value: object) -> object:
        if value is None:
            return dict(DEFAULT_TIER_MULTIPLIERS)
        if isinstance(value, dict):
            merged: dict[Any, Any] = dict(DEFAULT_TIER_MULTIPLIERS)
            merged.update({str(getattr(key, "value", key)).upper(): factor for key, factor in value.items()})
            return merged
        return value

    @field_validator("visit_milestones", mode="before")
    @classmethod
    def _default_milestones(cls, value: object) -> object:
        if value is None:
            return dict(DEFAULT_VISIT_MILESTONES)
        return value

    @field_validator("visit_milestones")
    @classmethod
    def _positive_milestones(cls, value: dict[int, int]) -> dict[int, int]:
        return {visit: bonus for visit, bonus in value.items() if visit > 0 and bonus > 0}

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as error:
            raise ValueError(f"Unknown timezone: {value}") from error
        return value

    @property
    def zone(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    @property
    def expiry_window(self) -> timedelta | None:
        if self.points_expiry_days <= 0:
            return None
        return timedelta(days=self.points_expiry_days)

    @property
    def inactivity_days(self) -> int:
        return self.inactivity_expiry_days or self.points_expiry_days or DEFAULT_INACTIVITY_DAYS

    def multiplier_for(self, tier: CustomerTier) -> Decimal:
        return self.tier_multipliers.get(tier) or Decimal("1")

    def as_document(self) -> dict[str, Any]:
        """Serialize using the stored camelCase layout."""

        return self.model_dump(mode="json", by_alias=True)


def _raw_tenant_settings(tenant: Tenant) -> dict[str, Any]:
    stored = tenant.settings or {}
    if isinstance(stored, str):
        stored = json.loads(stored) if stored.strip() else {}
    loyalty = stored.get("loyalty") if isinstance(stored, dict) else None
    return dict(loyalty or {})


def build_loyalty_settings(tenant: Tenant) -> LoyaltySettings:
    """Merge a tenant's stored loyalty document over the program defaults."""

    raw = _raw_tenant_settings(tenant)
    raw.setdefault("timezone", tenant.timezone or app_settings.default_timezone)
    return LoyaltySettings.model_validate(raw)


class LoyaltySettingsResolver:
    """Load and update tenant loyalty settings."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def load(self, tenant_id: UUID) -> LoyaltySettings:
        tenant = await self._get_tenant(tenant_id)
        return build_loyalty_settings(tenant)

    async def update(self, tenant_id: UUID, changes: dict[str, Any]) -> LoyaltySettings:
        """Validate a partial camelCase update and persist the merged document."""

        tenant = await self._get_tenant(tenant_id)
        merged = {**_raw_tenant_settings(tenant), **changes}
        pinned_timezone = "timezone" in merged
        merged.setdefault("timezone", tenant.timezone or app_settings.default_timezone)
        resolved = LoyaltySettings.model_validate(merged)

        document = resolved.as_document()
        if not pinned_timezone:
            # Follow Tenant.timezone unless the loyalty program pins its own zone.
            document.pop("timezone", None)
        stored = dict(tenant.settings or {}) if isinstance(tenant.settings, dict) else {}
        stored["loyalty"] = document
        tenant.settings = stored
        await self._db.flush()
        logger.info(
            "Updated loyalty settings",
            tenant_id=str(tenant_id),
            enabled=resolved.enabled,
            changed_keys=sorted(changes),
        )
        return resolved

    async def _get_tenant(self, tenant_id: UUID) -> Tenant:
        tenant = await self._db.get(Tenant, tenant_id)
        if tenant is None:
            raise TenantNotFoundError(tenant_id)
        return tenant


__all__ = [
    "DEFAULT_TIER_MULTIPLIERS",
    "DEFAULT_TIER_THRESHOLDS",
    "DEFAULT_VISIT_MILESTONES",
    "LoyaltySettings",
    "LoyaltySettingsResolver",
    "build_loyalty_settings",
]
