from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def minutes_since(value: datetime | None, now: datetime | None = None) -> float:
    if value is None:
        return 0.0
    now = now or utcnow()
    return (now - as_utc(value)).total_seconds() / 60.0
