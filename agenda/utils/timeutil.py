"""Timezone conversions between storage (naive UTC) and tenant wall-clock time."""

from datetime import date, datetime, timezone
from typing import Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from agenda.config import settings
from agenda.core.errors import ValidationError


def tenant_zone(name: str | None) -> ZoneInfo:
    """Resolve a tenant timezone, falling back to the configured default."""
    try:
        return ZoneInfo(name or settings.default_timezone)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo(settings.default_timezone)


def to_storage(moment: datetime) -> datetime:
    """Aware datetime -> naive UTC for persistence."""
    if moment.tzinfo is None:
        raise ValidationError("Timestamp must include a UTC offset", {"value": moment.isoformat()})
    return moment.astimezone(timezone.utc).replace(tzinfo=None)


def from_storage(moment: datetime, zone: ZoneInfo | None = None) -> datetime:
    """Naive UTC from the database -> aware datetime (UTC or the given zone)."""
    aware = moment.replace(tzinfo=timezone.utc)
    return aware.astimezone(zone) if zone else aware


def parse_timestamp(value: Union[str, datetime], zone: ZoneInfo | None = None) -> datetime:
    """
    Parse an ISO-8601 timestamp.

    Values without an offset are read as wall-clock time in ``zone``; without
    a zone they are rejected.
    """
    if isinstance(value, datetime):
        moment = value
    else:
        try:
            moment = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError(
                f"Invalid timestamp: {value!r}. Use ISO-8601, e.g. 2025-03-10T14:00:00-03:00",
                {"value": str(value)},
            ) from None

    if moment.tzinfo is None:
        if zone is None:
            raise ValidationError("Timestamp must include a UTC offset", {"value": str(value)})
        moment = moment.replace(tzinfo=zone)
    return moment


def parse_date(value: Union[str, date, datetime]) -> date:
    """Only the calendar date matters; a full timestamp is truncated as written."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    try:
        if len(text) == 10:
            return date.fromisoformat(text)
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        raise ValidationError(
            f"Invalid date: {value!r}. Use YYYY-MM-DD", {"value": text}
        ) from None
