from datetime import date, datetime, time, timedelta, timezone


def utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def add_minutes(value: time, minutes: int) -> time | None:
    """Return `value + minutes` on the same day, or None if it would cross midnight."""
    anchor = datetime.combine(date.min, value)
    shifted = anchor + timedelta(minutes=minutes)
    if shifted.date() != anchor.date():
        return None
    return shifted.time()


def date_range(start: date, end: date) -> list[date]:
    if end < start:
        raise ValueError("end date must not be earlier than start date")
    return [start + timedelta(days=offset) for offset in range((end - start).days + 1)]
