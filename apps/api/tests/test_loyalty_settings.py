from decimal import Decimal
from uuid import uuid4

import pytest
from pydantic import ValidationError

from loyalty_api.models import CustomerTier, Tenant
from loyalty_api.services.loyalty import (
    LoyaltySettings,
    LoyaltySettingsResolver,
    TenantNotFoundError,
    build_loyalty_settings,
)


def test_defaults_fill_missing_keys() -> None:
    tenant = Tenant(name="Cafe", timezone="Europe/Berlin", settings={"loyalty": {"enabled": True}})

    resolved = build_loyalty_settings(tenant)

    assert resolved.enabled is True
    assert resolved.points_per_currency == 1
    assert resolved.currency_per_point == Decimal("100")
    assert resolved.min_redeem_points == 100
    assert resolved.max_redeem_percentage == Decimal("50")
    assert resolved.points_expiry_days == 365
    assert resolved.timezone == "Europe/Berlin"
    assert resolved.tier_thresholds[CustomerTier.GOLD] == 2000
    assert resolved.multiplier_for(CustomerTier.PLATINUM) == Decimal("2")
    assert resolved.visit_milestones[5] == 50


def test_partial_tier_overrides_merge_with_defaults() -> None:
    resolved = LoyaltySettings.model_validate(
        {"tierThresholds": {"silver": 300}, "tierMultipliers": {"GOLD": "3"}}
    )

    assert resolved.tier_thresholds[CustomerTier.SILVER] == 300
    assert resolved.tier_thresholds[CustomerTier.PLATINUM] == 5000
    assert resolved.multiplier_for(CustomerTier.GOLD) == Decimal("3")
    assert resolved.multiplier_for(CustomerTier.SILVER) == Decimal("1.25")


def test_missing_loyalty_document_means_disabled() -> None:
    resolved = build_loyalty_settings(Tenant(name="Bare", settings={}))

    assert resolved.enabled is False
    assert resolved.timezone == "UTC"


def test_inactivity_window_falls_back_to_points_expiry() -> None:
    assert LoyaltySettings(pointsExpiry=90).inactivity_days == 90
    assert LoyaltySettings(pointsExpiry=90, inactivityExpiryDays=30).inactivity_days == 30
    assert LoyaltySettings(pointsExpiry=0).inactivity_days == 365
    assert LoyaltySettings(pointsExpiry=0).expiry_window is None


def test_invalid_values_are_rejected() -> None:
    with pytest.raises(ValidationError):
        LoyaltySettings.model_validate({"maxRedeemPercentage": 150})
    with pytest.raises(ValidationError):
        LoyaltySettings.model_validate({"currencyPerPoint": 0})
    with pytest.raises(ValidationError):
        LoyaltySettings.model_validate({"timezone": "Mars/Olympus"})


def test_non_positive_milestones_are_dropped() -> None:
    resolved = LoyaltySettings.model_validate({"visitMilestones": {"3": 30, "0": 10, "7": 0}})

    assert resolved.visit_milestones == {3: 30}


def test_document_round_trips_through_camel_case() -> None:
    document = LoyaltySettings(enabled=True, birthday_bonus=250).as_document()

    assert document["birthdayBonus"] == 250
    assert document["pointsExpiry"] == 365
    assert LoyaltySettings.model_validate(document).birthday_bonus == 250


@pytest.mark.asyncio
async def test_resolver_update_persists_merged_document(session_factory, create_tenant) -> None:
    tenant_id = await create_tenant(minRedeemPoints=50)

    async with session_factory() as session:
        resolver = LoyaltySettingsResolver(session)
        updated = await resolver.update(tenant_id, {"birthdayBonus": 400})
        await session.commit()

    assert updated.birthday_bonus == 400
    assert updated.min_redeem_points == 50

    async with session_factory() as session:
        reloaded = await LoyaltySettingsResolver(session).load(tenant_id)
        tenant = await session.get(Tenant, tenant_id)

    assert reloaded.birthday_bonus == 400
    assert reloaded.min_redeem_points == 50
    assert tenant.settings["loyalty"]["birthdayBonus"] == 400


@pytest.mark.asyncio
async def test_resolver_rejects_invalid_update_without_writing(session_factory, create_tenant) -> None:
    tenant_id = await create_tenant(birthdayBonus=100)

    async with session_factory() as session:
        with pytest.raises(ValidationError):
            await LoyaltySettingsResolver(session).update(tenant_id, {"maxRedeemPercentage": -1})
        await session.rollback()

    async with session_factory() as session:
        reloaded = await LoyaltySettingsResolver(session).load(tenant_id)

    assert reloaded.max_redeem_percentage == Decimal("50")


@pytest.mark.asyncio
async def test_resolver_raises_for_unknown_tenant(session_factory) -> None:
    async with session_factory() as session:
        with pytest.raises(TenantNotFoundError):
            await LoyaltySettingsResolver(session).load(uuid4())


@pytest.mark.asyncio
async def test_update_keeps_following_tenant_timezone(session_factory, create_tenant) -> None:
    tenant_id = await create_tenant(timezone="Europe/Berlin")

    async with session_factory() as session:
        updated = await LoyaltySettingsResolver(session).update(tenant_id, {"birthdayBonus": 150})
        await session.commit()

    assert updated.timezone == "Europe/Berlin"

    async with session_factory() as session:
        tenant = await session.get(Tenant, tenant_id)
        assert "timezone" not in tenant.settings["loyalty"]
        tenant.timezone = "Pacific/Auckland"
        await session.commit()

    async with session_factory() as session:
        reloaded = await LoyaltySettingsResolver(session).load(tenant_id)

    assert reloaded.timezone == "Pacific/Auckland"
    assert reloaded.birthday_bonus == 150


@pytest.mark.asyncio
async def test_update_stores_explicit_timezone(session_factory, create_tenant) -> None:
    tenant_id = await create_tenant(timezone="Europe/Berlin")

    async with session_factory() as session:
        await LoyaltySettingsResolver(session).update(tenant_id, {"timezone": "America/Chicago"})
        await session.commit()

    async with session_factory() as session:
        tenant = await session.get(Tenant, tenant_id)
        tenant.timezone = "Pacific/Auckland"
        await session.commit()

    async with session_factory() as session:
        reloaded = await LoyaltySettingsResolver(session).load(tenant_id)

    assert reloaded.timezone == "America/Chicago"
