"""Time helpers."""
from datetime import datetime

import pytz


def utcnow() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(pytz.UTC)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (as returned by some drivers) or convert aware ones."""
    if value.tzinfo is None:
        return pytz.UTC.localize(value)
    return value.astimezone(pytz.UTC)
