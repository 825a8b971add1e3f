"""Fixed UTC+05:30 (IST) day windows.

Every "day" in the service is an IST calendar day, whatever the host
timezone is. Persisted timestamps are naive UTC, so windows are returned
as naive UTC bounds ready to compare against ``created_at`` columns.
"""
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Tuple, Union

IST = timezone(timedelta(hours=5, minutes=30), name="IST")


def utcnow() -> datetime:
    """Current instant as naive UTC, the storage representation."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_ist(moment: datetime) -> datetime:
    """Convert a stored (naive UTC) or aware datetime to IST."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(IST)


def ist_date(moment: datetime) -> date:
    return to_ist(moment).date()


def ist_today(now: Optional[datetime] = None) -> date:
    return ist_date(now or utcnow())


def parse_day(value: Union[str, date]) -> date:
    """Accept a ``YYYY-MM-DD`` string or a date."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(value.strip())
    except (AttributeError, ValueError) as e:
        raise ValueError(f"Invalid date '{value}', expected YYYY-MM-DD") from e


def ist_day_bounds(day: Union[str, date]) -> Tuple[datetime, datetime]:
    """Half-open ``[start, end)`` naive-UTC bounds of an IST calendar day."""
    day = parse_day(day)
    start = datetime.combine(day, time.min, tzinfo=IST)
    end = start + timedelta(days=1)
    return (
        start.astimezone(timezone.utc).replace(tzinfo=None),
        end.astimezone(timezone.utc).replace(tzinfo=None),
    )


def ist_today_bounds(now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    return ist_day_bounds(ist_today(now))
