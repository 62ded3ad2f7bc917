from __future__ import annotations

from datetime import datetime, timezone


def utcnow() -> datetime:
    # all persisted timestamps are naive UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def resolve_now(now: datetime | None) -> datetime:
    return utcnow() if now is None else as_naive_utc(now)
