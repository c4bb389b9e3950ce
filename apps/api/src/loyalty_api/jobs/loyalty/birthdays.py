"""Daily birthday bonus sweep."""

# meta: job: loyalty-birthdays

from __future__ import annotations

from typing import Any, Dict, List

from loguru import logger

from loyalty_api.services.loyalty import LoyaltyBonusRules, LoyaltyLedgerService

from .tenants import SessionFactory, list_tenant_ids


async def award_birthday_bonuses(
    *,
    session_factory: SessionFactory,
    tenant_ids: List[str] | None = None,
) -> Dict[str, Any]:
    """Award today's birthday bonuses; repeated runs on the same day award nothing new."""

    awarded = 0
    skipped = 0
    failures: List[Dict[str, str]] = []
    tenants = await list_tenant_ids(session_factory, tenant_ids)

    for tenant_id in tenants:
        async with session_factory() as session:
            ledger = LoyaltyLedgerService(session)
            rules = LoyaltyBonusRules(session, ledger=ledger)
            settings = await ledger.load_settings(tenant_id)
            if not settings.enabled:
                await session.rollback()
                continue
            candidates = await rules.birthday_candidates(tenant_id)
            await session.rollback()

            for customer_id in candidates:
                try:
                    result = await rules.check_and_award_birthday_bonus(customer_id, tenant_id)
                except Exception as exc:  # noqa: BLE001
                    logger.exception("Birthday bonus failed", tenant_id=str(tenant_id), customer_id=str(customer_id))
                    failures.append({"customer_id": str(customer_id), "error": str(exc)})
                    continue
                if result.success:
                    awarded += 1
                else:
                    skipped += 1

    summary = {
        "tenants": len(tenants),
        "awarded": awarded,
        "skipped": skipped,
        "failures": len(failures),
    }
    logger.bind(summary=summary, failures=failures).info("Birthday bonus sweep completed")
    return summary


__all__ = ["award_birthday_bonuses"]
