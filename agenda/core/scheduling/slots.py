"""
Slot Engine.

Turns working hours and existing bookings into the start times that can be
offered for one day. The grid is fixed: the cursor always advances by the
service duration, even past a rejected candidate.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Iterable, Optional, Sequence, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agenda.core.errors import NotFoundError, ValidationError
from agenda.models.database import (
    Appointment, AppointmentStatus, Professional, Tenant, utcnow,
)
from agenda.utils.ids import parse_uuid
from agenda.utils.timeutil import from_storage, parse_date, tenant_zone, to_storage

logger = logging.getLogger(__name__)

WEEKDAY_KEYS = (
    "monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday",
)


@dataclass(frozen=True)
class BusyInterval:
    """Occupied half-open window [start, end)."""

    start: datetime
    end: datetime

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return start < self.end and end > self.start


def resolve_window(work_hours: Optional[dict], day: date) -> Optional[tuple[time, time]]:
    """
    Look up the opening window for the day's weekday.

    Returns None when the day is closed or the entry is malformed.
    """
    if not work_hours:
        return None

    entry = work_hours.get(WEEKDAY_KEYS[day.weekday()])
    if not isinstance(entry, dict):
        return None

    try:
        start = time.fromisoformat(str(entry["start"]))
        end = time.fromisoformat(str(entry["end"]))
    except (KeyError, ValueError):
        logger.warning(f"Malformed work hours entry for {day:%A}: {entry!r}")
        return None

    if end <= start:
        return None
    return start, end


def generate_slots(
    day_start: datetime,
    day_end: datetime,
    duration_minutes: int,
    busy: Iterable[BusyInterval],
    not_before: Optional[datetime] = None,
) -> list[datetime]:
    """
    Fixed-grid slot generation.

    Pure: same inputs always give the same ordered output.

    Args:
        day_start: Opening time, aware.
        day_end: Closing time, aware. A slot must end at or before it.
        duration_minutes: Service length and grid step. Must be positive.
        busy: Occupied intervals.
        not_before: Drop candidates that start earlier than this.
    """
    if duration_minutes <= 0:
        raise ValidationError(
            "Service duration must be a positive number of minutes",
            {"duration_minutes": duration_minutes},
        )

    step = timedelta(minutes=duration_minutes)
    intervals = sorted(busy, key=lambda b: b.start)
    slots: list[datetime] = []

    cursor = day_start
    while cursor + step <= day_end:
        candidate_end = cursor + step
        free = not any(b.overlaps(cursor, candidate_end) for b in intervals)
        if free and (not_before is None or cursor >= not_before):
            slots.append(cursor)
        cursor += step

    return slots


class SlotEngine:
    """
    Read-only availability lookups for a tenant.

    Never writes; safe to call from concurrent tool invocations since every
    call opens its own session.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def compute_slots(
        self,
        day: Union[str, date, datetime],
        tenant_id: Union[str, uuid.UUID],
        service_duration_minutes: int,
        staff_id: Optional[Union[str, uuid.UUID]] = None,
        now: Optional[datetime] = None,
    ) -> list[str]:
        """
        Offerable start times for one day as ISO-8601 strings in the tenant's
        timezone.

        Args:
            day: Calendar date; only the date component of a timestamp is used.
            tenant_id: Tenant whose hours and bookings apply.
            service_duration_minutes: Positive slot length and grid step.
            staff_id: Restrict to one professional (and their own hours, if set).
            now: Reference time for dropping past slots. Defaults to the clock.

        Raises:
            ValidationError: Bad date or non-positive duration.
            NotFoundError: Unknown tenant or professional.
        """
        if service_duration_minutes <= 0:
            raise ValidationError(
                "Service duration must be a positive number of minutes",
                {"duration_minutes": service_duration_minutes},
            )

        target = parse_date(day)
        tenant_uuid = parse_uuid(tenant_id, "tenant_id")
        staff_uuid = parse_uuid(staff_id, "professional_id") if staff_id else None

        async with self._session_factory() as session:
            tenant = await session.get(Tenant, tenant_uuid)
            if tenant is None:
                raise NotFoundError("Tenant not found", {"tenant_id": str(tenant_uuid)})

            work_hours = tenant.work_hours
            if staff_uuid is not None:
                professional = await session.get(Professional, staff_uuid)
                if professional is None or professional.tenant_id != tenant_uuid:
                    raise NotFoundError(
                        "Professional not found", {"professional_id": str(staff_uuid)}
                    )
                if professional.work_hours:
                    work_hours = professional.work_hours

            window = resolve_window(work_hours, target)
            if window is None:
                return []

            zone = tenant_zone(tenant.timezone)
            day_start = datetime.combine(target, window[0], tzinfo=zone)
            day_end = datetime.combine(target, window[1], tzinfo=zone)

            busy = await self._busy_intervals(
                session, tenant_uuid, staff_uuid, day_start, day_end
            )

        reference = now or from_storage(utcnow())
        not_before = None
        if reference.astimezone(zone).date() == target:
            not_before = reference.astimezone(zone)

        slots = generate_slots(
            day_start,
            day_end,
            service_duration_minutes,
            [BusyInterval(b.start.astimezone(zone), b.end.astimezone(zone)) for b in busy],
            not_before=not_before,
        )
        return [slot.isoformat() for slot in slots]

    async def _busy_intervals(
        self,
        session: AsyncSession,
        tenant_id: uuid.UUID,
        staff_id: Optional[uuid.UUID],
        day_start: datetime,
        day_end: datetime,
    ) -> Sequence[BusyInterval]:
        """Non-cancelled appointments intersecting [day_start, day_end), by start."""
        stmt = (
            select(Appointment.starts_at, Appointment.ends_at)
            .where(
                Appointment.tenant_id == tenant_id,
                Appointment.status != AppointmentStatus.CANCELLED,
                Appointment.starts_at < to_storage(day_end),
                Appointment.ends_at > to_storage(day_start),
            )
            .order_by(Appointment.starts_at)
        )
        if staff_id is not None:
            stmt = stmt.where(Appointment.professional_id == staff_id)

        rows = (await session.execute(stmt)).all()
        return [BusyInterval(from_storage(s), from_storage(e)) for s, e in rows]
