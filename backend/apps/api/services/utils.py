# apps/api/services/utils.py
"""
Small date helpers shared by the services
"""
from datetime import date, datetime, timezone

from dateutil import parser as date_parser
from dateutil.relativedelta import relativedelta

from .errors import ValidationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_datetime(value, field_name: str = "date") -> datetime:
    """
    Accept a datetime, a date or an ISO string. Naive values are taken as UTC.

    Example:
        parse_datetime('2025-03-01') -> datetime(2025, 3, 1, 0, 0, tzinfo=utc)
    """
    if value is None or value == "":
        raise ValidationError(f"{field_name} is required")
    if isinstance(value, datetime):
        result = value
    elif isinstance(value, date):
        result = datetime(value.year, value.month, value.day)
    else:
        try:
            result = date_parser.isoparse(str(value))
        except (ValueError, OverflowError):
            raise ValidationError(f"Invalid {field_name}: {value!r}") from None
    if result.tzinfo is None:
        result = result.replace(tzinfo=timezone.utc)
    return result


def to_iso(value: datetime) -> str:
    return value.isoformat()


def add_days(value: datetime, days: int) -> datetime:
    return value + relativedelta(days=int(days))


def add_hours(value: datetime, hours: int) -> datetime:
    return value + relativedelta(hours=int(hours))
