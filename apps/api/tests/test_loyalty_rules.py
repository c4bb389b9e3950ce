from datetime import date, datetime, timezone
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select

from loyalty_api.models import BonusType, Customer, CustomerTier, PointsTransaction
from loyalty_api.services.loyalty import (
    LedgerErrorCode,
    LoyaltyBonusRules,
    LoyaltyLedgerService,
    LoyaltySettings,
    next_milestone,
)
from loyalty_api.services.loyalty.rules import is_birthday, local_year_window


NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


async def _award_birthday(session_factory, customer_id, tenant_id, now):
    async with session_factory() as session:
        return await LoyaltyBonusRules(session).check_and_award_birthday_bonus(customer_id, tenant_id, now=now)


async def _award_milestone(session_factory, customer_id, visit, tenant_id):
    async with session_factory() as session:
        return await LoyaltyBonusRules(session).check_and_award_visit_milestone(customer_id, visit, tenant_id, now=NOW)


def test_is_birthday_matches_month_and_day() -> None:
    assert is_birthday(date(1990, 3, 10), date(2026, 3, 10)) is True
    assert is_birthday(date(1990, 3, 10), date(2026, 3, 11)) is False
    assert is_birthday(None, date(2026, 3, 10)) is False


def test_leap_day_birthday_moves_to_february_28_in_common_years() -> None:
    assert is_birthday(date(1992, 2, 29), date(2027, 2, 28)) is True
    assert is_birthday(date(1992, 2, 29), date(2028, 2, 28)) is False
    assert is_birthday(date(1992, 2, 29), date(2028, 2, 29)) is True


def test_local_year_window_follows_tenant_timezone() -> None:
    settings = LoyaltySettings(timezone="Pacific/Auckland")

    start, end = local_year_window(datetime(2026, 12, 31, 12, 0, tzinfo=timezone.utc), settings)

    assert start == datetime(2026, 12, 31, 11, 0, tzinfo=timezone.utc)
    assert end == datetime(2027, 12, 31, 11, 0, tzinfo=timezone.utc)


def test_next_milestone() -> None:
    settings = LoyaltySettings(enabled=True)

    upcoming = next_milestone(3, settings)
    assert (upcoming.visit_number, upcoming.bonus_points, upcoming.visits_remaining) == (5, 50, 2)
    assert next_milestone(5, settings).visit_number == 10
    assert next_milestone(100, settings) is None


@pytest.mark.asyncio
async def test_birthday_bonus_awarded_once_per_year(session_factory, create_tenant, create_customer) -> None:
    tenant_id = await create_tenant(birthdayBonus=250)
    customer_id = await create_customer(tenant_id, date_of_birth=date(1990, 3, 10))

    first = await _award_birthday(session_factory, customer_id, tenant_id, NOW)
    second = await _award_birthday(session_factory, customer_id, tenant_id, NOW)
    next_year = await _award_birthday(session_factory, customer_id, tenant_id, datetime(2027, 3, 10, 9, 0, tzinfo=timezone.utc))

    assert first.success is True
    assert first.points_awarded == 250
    assert first.message == "Happy Birthday! You received 250 bonus points!"
    assert second.error_code == LedgerErrorCode.ALREADY_CLAIMED
    assert second.error == "Birthday bonus already claimed this year"
    assert next_year.success is True
    assert next_year.new_balance == 500

    async with session_factory() as session:
        customer = await session.get(Customer, customer_id)
        rows = (
            await session.execute(select(PointsTransaction).where(PointsTransaction.customer_id == customer_id))
        ).scalars().all()

    assert customer.points_earned_lifetime == 500
    assert {row.bonus_type for row in rows} == {BonusType.BIRTHDAY}
    assert rows[0].reason == "Happy Birthday! Enjoy your birthday bonus points."


@pytest.mark.asyncio
async def test_birthday_uses_tenant_local_date(session_factory, create_tenant, create_customer) -> None:
    auckland = await create_tenant(timezone="Pacific/Auckland")
    utc_tenant = await create_tenant()
    kiwi = await create_customer(auckland, date_of_birth=date(1985, 3, 11))
    londoner = await create_customer(utc_tenant, date_of_birth=date(1985, 3, 11))

    local = await _award_birthday(session_factory, kiwi, auckland, NOW)
    remote = await _award_birthday(session_factory, londoner, utc_tenant, NOW)

    assert local.success is True
    assert remote.error_code == LedgerErrorCode.NOT_BIRTHDAY
    assert remote.error == "Today is not your birthday"


@pytest.mark.asyncio
async def test_leap_day_customer_celebrates_on_february_28(session_factory, create_tenant, create_customer) -> None:
    tenant_id = await create_tenant()
    customer_id = await create_customer(tenant_id, date_of_birth=date(1992, 2, 29))

    result = await _award_birthday(session_factory, customer_id, tenant_id, datetime(2027, 2, 28, 10, 0, tzinfo=timezone.utc))

    assert result.success is True


@pytest.mark.asyncio
async def test_birthday_requires_date_of_birth(session_factory, create_tenant, create_customer) -> None:
    tenant_id = await create_tenant()
    customer_id = await create_customer(tenant_id)

    result = await _award_birthday(session_factory, customer_id, tenant_id, NOW)

    assert result.error_code == LedgerErrorCode.NO_DATE_OF_BIRTH


@pytest.mark.asyncio
async def test_birthday_rejected_when_disabled(session_factory, create_tenant, create_customer) -> None:
    tenant_id = await create_tenant(enabled=False)
    customer_id = await create_customer(tenant_id, date_of_birth=date(1990, 3, 10))

    result = await _award_birthday(session_factory, customer_id, tenant_id, NOW)

    assert result.error_code == LedgerErrorCode.LOYALTY_DISABLED


@pytest.mark.asyncio
async def test_birthday_eligibility(session_factory, create_tenant, create_customer) -> None:
    tenant_id = await create_tenant()
    customer_id = await create_customer(tenant_id, date_of_birth=date(1990, 3, 10))

    async with session_factory() as session:
        before = await LoyaltyBonusRules(session).can_claim_birthday_bonus(customer_id, tenant_id, now=NOW)
        missing = await LoyaltyBonusRules(session).can_claim_birthday_bonus(uuid4(), tenant_id, now=NOW)

    await _award_birthday(session_factory, customer_id, tenant_id, NOW)

    async with session_factory() as session:
        after = await LoyaltyBonusRules(session).can_claim_birthday_bonus(customer_id, tenant_id, now=NOW)

    assert before.can_claim is True
    assert before.is_birthday is True
    assert before.bonus_amount == 100
    assert missing is None
    assert after.can_claim is False
    assert after.already_claimed is True


@pytest.mark.asyncio
async def test_birthday_candidates(session_factory, create_tenant, create_customer) -> None:
    tenant_id = await create_tenant()
    today = await create_customer(tenant_id, name="Today", date_of_birth=date(2000, 3, 10))
    await create_customer(tenant_id, name="Tomorrow", date_of_birth=date(2000, 3, 11))
    await create_customer(tenant_id, name="Unknown")

    async with session_factory() as session:
        candidates = await LoyaltyBonusRules(session).birthday_candidates(tenant_id, now=NOW)

    assert candidates == [today]


@pytest.mark.asyncio
async def test_visit_milestone_awarded_once(session_factory, create_tenant, create_customer) -> None:
    tenant_id = await create_tenant()
    customer_id = await create_customer(tenant_id)

    reached = await _award_milestone(session_factory, customer_id, 5, tenant_id)
    repeated = await _award_milestone(session_factory, customer_id, 5, tenant_id)
    ordinary = await _award_milestone(session_factory, customer_id, 7, tenant_id)
    big = await _award_milestone(session_factory, customer_id, 50, tenant_id)

    assert reached.success is True
    assert reached.is_milestone is True
    assert reached.points_awarded == 50
    assert reached.message == "Milestone reached! Visit #5 - 50 bonus points!"
    assert repeated.success is True
    assert repeated.points_awarded == 0
    assert repeated.is_milestone is True
    assert ordinary.success is True
    assert ordinary.is_milestone is False
    assert ordinary.points_awarded == 0
    assert big.points_awarded == 500
    assert big.new_balance == 550

    async with session_factory() as session:
        rows = (
            await session.execute(
                select(PointsTransaction)
                .where(PointsTransaction.customer_id == customer_id)
                .order_by(PointsTransaction.milestone_visit_number.asc())
            )
        ).scalars().all()

    assert [row.milestone_visit_number for row in rows] == [5, 50]
    assert rows[0].reason == "Congratulations on your visit #5! Milestone bonus awarded."


@pytest.mark.asyncio
async def test_custom_milestones_replace_defaults(session_factory, create_tenant, create_customer) -> None:
    tenant_id = await create_tenant(visitMilestones={"15": 150})
    customer_id = await create_customer(tenant_id)

    custom = await _award_milestone(session_factory, customer_id, 15, tenant_id)
    default = await _award_milestone(session_factory, customer_id, 5, tenant_id)

    assert custom.points_awarded == 150
    assert default.points_awarded == 0
    assert default.is_milestone is False


@pytest.mark.asyncio
async def test_milestone_rejected_when_disabled(session_factory, create_tenant, create_customer) -> None:
    tenant_id = await create_tenant(enabled=False)
    customer_id = await create_customer(tenant_id)

    result = await _award_milestone(session_factory, customer_id, 5, tenant_id)

    assert result.success is False
    assert result.error_code == LedgerErrorCode.LOYALTY_DISABLED


@pytest.mark.asyncio
async def test_bonus_does_not_move_tier_until_next_earn(session_factory, create_tenant, create_customer) -> None:
    tenant_id = await create_tenant()
    customer_id = await create_customer(tenant_id, points_balance=480, points_earned_lifetime=480)

    await _award_milestone(session_factory, customer_id, 5, tenant_id)

    async with session_factory() as session:
        customer = await session.get(Customer, customer_id)
    assert customer.points_earned_lifetime == 530
    assert customer.tier == CustomerTier.BRONZE

    async with session_factory() as session:
        result = await LoyaltyLedgerService(session).earn(customer_id, None, Decimal("1000"), tenant_id, now=NOW)

    assert result.tier_upgrade is True
    assert result.new_tier == CustomerTier.SILVER


async def _award_welcome(session_factory, customer_id, tenant_id):
    async with session_factory() as session:
        return await LoyaltyBonusRules(session).award_welcome_bonus(customer_id, tenant_id, now=NOW)


@pytest.mark.asyncio
async def test_welcome_bonus_awarded_once(session_factory, create_tenant, create_customer) -> None:
    tenant_id = await create_tenant(welcomeBonus=50)
    customer_id = await create_customer(tenant_id)

    first = await _award_welcome(session_factory, customer_id, tenant_id)
    second = await _award_welcome(session_factory, customer_id, tenant_id)

    assert first.success is True
    assert first.points_awarded == 50
    assert first.new_balance == 50
    assert first.transaction_id is not None
    assert second.success is True
    assert second.points_awarded == 0
    assert second.new_balance == 50
    assert second.message == "Welcome bonus already awarded"

    async with session_factory() as session:
        customer = await session.get(Customer, customer_id)
        rows = (
            await session.execute(select(PointsTransaction).where(PointsTransaction.customer_id == customer_id))
        ).scalars().all()

    assert customer.points_balance == 50
    assert customer.points_earned_lifetime == 50
    assert [(row.bonus_type, row.points, row.balance_after) for row in rows] == [(BonusType.WELCOME, 50, 50)]
    assert rows[0].reason == "Welcome bonus for joining loyalty program"


@pytest.mark.asyncio
async def test_welcome_bonus_defaults_to_nothing(session_factory, create_tenant, create_customer) -> None:
    tenant_id = await create_tenant()
    customer_id = await create_customer(tenant_id)

    result = await _award_welcome(session_factory, customer_id, tenant_id)

    assert result.success is True
    assert result.points_awarded == 0
    assert result.transaction_id is None
    async with session_factory() as session:
        rows = (await session.execute(select(PointsTransaction.id))).scalars().all()
    assert rows == []


@pytest.mark.asyncio
async def test_welcome_bonus_rejections(session_factory, create_tenant, create_customer) -> None:
    disabled_tenant = await create_tenant(enabled=False, welcomeBonus=50)
    customer_id = await create_customer(disabled_tenant)
    enabled_tenant = await create_tenant(welcomeBonus=50)

    disabled = await _award_welcome(session_factory, customer_id, disabled_tenant)
    missing = await _award_welcome(session_factory, uuid4(), enabled_tenant)

    assert disabled.error_code == LedgerErrorCode.LOYALTY_DISABLED
    assert missing.error_code == LedgerErrorCode.CUSTOMER_NOT_FOUND
    async with session_factory() as session:
        assert (await session.get(Customer, customer_id)).points_balance == 0
