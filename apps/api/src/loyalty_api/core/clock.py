"""UTC helpers shared by the ledger, sweeps and analytics."""

from __future__ import annotations

from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; everything we store is UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def resolve_now(now: datetime | None) -> datetime:
    return ensure_aware(now) if now is not None else utcnow()


__all__ = ["ensure_aware", "resolve_now", "utcnow"]
