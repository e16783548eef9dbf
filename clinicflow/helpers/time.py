from datetime import date, datetime, timezone


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def age_in_years(dob: date | None, today: date | None = None) -> int | None:
    """Whole years between ``dob`` and ``today``; None when dob is unknown."""
    if dob is None:
        return None
    today = today or utcnow().date()
    age = today.year - dob.year
    if (today.month, today.day) < (dob.month, dob.day):
        age -= 1
    return max(0, age)
