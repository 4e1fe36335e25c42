"""Tests for slot generation and availability lookups."""

from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from agenda.core.errors import NotFoundError, ValidationError
from agenda.core.scheduling.slots import (
    BusyInterval, SlotEngine, generate_slots, resolve_window,
)
from agenda.models.database import Appointment, AppointmentStatus, Customer
from agenda.utils.timeutil import to_storage
from tests.conftest import upcoming

SAO_PAULO = ZoneInfo("America/Sao_Paulo")


def at(day: date, hour: int, minute: int = 0) -> datetime:
    return datetime(day.year, day.month, day.day, hour, minute, tzinfo=SAO_PAULO)


class TestGenerateSlots:
    """Test the pure fixed-grid algorithm."""

    DAY = date(2030, 1, 7)

    def test_excludes_overlapping_candidate(self):
        """09-12 with a 10-11 booking leaves 09:00 and 11:00."""
        slots = generate_slots(
            at(self.DAY, 9), at(self.DAY, 12), 60,
            [BusyInterval(at(self.DAY, 10), at(self.DAY, 11))],
        )
        assert slots == [at(self.DAY, 9), at(self.DAY, 11)]

    def test_fixed_grid_does_not_compact(self):
        """A rejected candidate still advances the cursor by a full step."""
        slots = generate_slots(
            at(self.DAY, 9), at(self.DAY, 12), 60,
            [BusyInterval(at(self.DAY, 9), at(self.DAY, 9, 30))],
        )
        # 09:30 would fit, but the grid only offers 10:00 and 11:00
        assert slots == [at(self.DAY, 10), at(self.DAY, 11)]

    def test_touching_intervals_do_not_overlap(self):
        slots = generate_slots(
            at(self.DAY, 9), at(self.DAY, 11), 60,
            [BusyInterval(at(self.DAY, 8), at(self.DAY, 9))],
        )
        assert slots == [at(self.DAY, 9), at(self.DAY, 10)]

    def test_busy_interval_crossing_day_start(self):
        slots = generate_slots(
            at(self.DAY, 9), at(self.DAY, 12), 60,
            [BusyInterval(at(self.DAY, 7), at(self.DAY, 9, 15))],
        )
        assert slots == [at(self.DAY, 10), at(self.DAY, 11)]

    def test_window_shorter_than_duration(self):
        assert generate_slots(at(self.DAY, 9), at(self.DAY, 9, 45), 60, []) == []

    def test_last_slot_must_end_by_close(self):
        slots = generate_slots(at(self.DAY, 9), at(self.DAY, 10, 30), 45, [])
        assert slots == [at(self.DAY, 9), at(self.DAY, 9, 45)]

    @pytest.mark.parametrize("duration", [0, -30])
    def test_non_positive_duration_rejected(self, duration):
        with pytest.raises(ValidationError):
            generate_slots(at(self.DAY, 9), at(self.DAY, 12), duration, [])

    def test_not_before_drops_past_candidates(self):
        slots = generate_slots(
            at(self.DAY, 9), at(self.DAY, 12), 60, [], not_before=at(self.DAY, 10, 5)
        )
        assert slots == [at(self.DAY, 11)]

    def test_deterministic(self):
        busy = [
            BusyInterval(at(self.DAY, 11), at(self.DAY, 11, 30)),
            BusyInterval(at(self.DAY, 9, 30), at(self.DAY, 10)),
        ]
        first = generate_slots(at(self.DAY, 9), at(self.DAY, 12), 30, busy)
        second = generate_slots(at(self.DAY, 9), at(self.DAY, 12), 30, list(reversed(busy)))
        assert first == second


class TestResolveWindow:
    """Test work-hours lookup."""

    def test_missing_day_is_closed(self):
        assert resolve_window({"monday": {"start": "09:00", "end": "12:00"}}, date(2030, 1, 8)) is None

    def test_end_before_start_is_closed(self):
        hours = {"monday": {"start": "12:00", "end": "09:00"}}
        assert resolve_window(hours, date(2030, 1, 7)) is None

    def test_malformed_entry_is_closed(self):
        hours = {"monday": {"start": "nine", "end": "12:00"}}
        assert resolve_window(hours, date(2030, 1, 7)) is None


class TestSlotEngine:
    """Test availability against stored appointments."""

    @pytest.fixture
    def slot_engine(self, session_factory):
        return SlotEngine(session_factory)

    async def _book(self, session_factory, seeded, professional, start, end, status=AppointmentStatus.CONFIRMED):
        async with session_factory() as session:
            customer = Customer(
                tenant_id=seeded.tenant.id, name="Carla", phone="5511911112222", preferences={}
            )
            session.add(customer)
            await session.flush()
            session.add(
                Appointment(
                    tenant_id=seeded.tenant.id,
                    professional_id=professional.id,
                    customer_id=customer.id,
                    service_id=seeded.haircut.id,
                    starts_at=to_storage(start),
                    ends_at=to_storage(end),
                    status=status,
                )
            )
            await session.commit()

    @pytest.mark.asyncio
    async def test_monday_example(self, slot_engine, session_factory, seeded):
        """Monday 09-12, 60 minutes, booking at 10-11 -> 09:00 and 11:00."""
        monday = upcoming(0)
        await self._book(session_factory, seeded, seeded.ana, at(monday, 10), at(monday, 11))

        slots = await slot_engine.compute_slots(monday, seeded.tenant.id, 60, staff_id=seeded.ana.id)

        assert slots == [
            f"{monday.isoformat()}T09:00:00-03:00",
            f"{monday.isoformat()}T11:00:00-03:00",
        ]

    @pytest.mark.asyncio
    async def test_cancelled_appointments_free_the_slot(self, slot_engine, session_factory, seeded):
        monday = upcoming(0)
        await self._book(
            session_factory, seeded, seeded.ana, at(monday, 10), at(monday, 11),
            status=AppointmentStatus.CANCELLED,
        )

        slots = await slot_engine.compute_slots(monday, seeded.tenant.id, 60, staff_id=seeded.ana.id)

        assert len(slots) == 3

    @pytest.mark.asyncio
    async def test_other_professionals_bookings_ignored_when_filtered(
        self, slot_engine, session_factory, seeded
    ):
        tuesday = upcoming(1)
        await self._book(session_factory, seeded, seeded.bruno, at(tuesday, 9), at(tuesday, 10))

        slots = await slot_engine.compute_slots(tuesday, seeded.tenant.id, 60, staff_id=seeded.ana.id)

        assert slots[0] == f"{tuesday.isoformat()}T09:00:00-03:00"

    @pytest.mark.asyncio
    async def test_staff_hours_override_tenant_hours(self, slot_engine, seeded):
        monday = upcoming(0)

        slots = await slot_engine.compute_slots(monday, seeded.tenant.id, 30, staff_id=seeded.bruno.id)

        assert slots[0] == f"{monday.isoformat()}T14:00:00-03:00"
        assert slots[-1] == f"{monday.isoformat()}T15:30:00-03:00"

    @pytest.mark.asyncio
    async def test_closed_day_returns_empty(self, slot_engine, seeded):
        assert await slot_engine.compute_slots(upcoming(6), seeded.tenant.id, 60) == []

    @pytest.mark.asyncio
    async def test_timestamp_input_uses_date_only(self, slot_engine, seeded):
        monday = upcoming(0)
        slots = await slot_engine.compute_slots(
            f"{monday.isoformat()}T23:10:00-03:00", seeded.tenant.id, 60, staff_id=seeded.ana.id
        )
        assert len(slots) == 3

    @pytest.mark.asyncio
    async def test_today_drops_past_slots(self, slot_engine, seeded):
        monday = upcoming(0)
        now = at(monday, 10, 30).astimezone(timezone.utc)

        slots = await slot_engine.compute_slots(monday, seeded.tenant.id, 60, staff_id=seeded.ana.id, now=now)

        assert slots == [f"{monday.isoformat()}T11:00:00-03:00"]

    @pytest.mark.asyncio
    async def test_repeated_calls_identical(self, slot_engine, session_factory, seeded):
        monday = upcoming(0)
        await self._book(session_factory, seeded, seeded.ana, at(monday, 9), at(monday, 10))

        first = await slot_engine.compute_slots(monday, seeded.tenant.id, 30, staff_id=seeded.ana.id)
        second = await slot_engine.compute_slots(monday, seeded.tenant.id, 30, staff_id=seeded.ana.id)

        assert first == second

    @pytest.mark.asyncio
    async def test_zero_duration_rejected(self, slot_engine, seeded):
        with pytest.raises(ValidationError):
            await slot_engine.compute_slots(upcoming(0), seeded.tenant.id, 0)

    @pytest.mark.asyncio
    async def test_unknown_professional(self, slot_engine, seeded):
        with pytest.raises(NotFoundError):
            await slot_engine.compute_slots(
                upcoming(0), seeded.tenant.id, 60,
                staff_id="00000000-0000-0000-0000-000000000001",
            )

    @pytest.mark.asyncio
    async def test_slots_fall_inside_work_hours(self, slot_engine, seeded):
        tuesday = upcoming(1)
        slots = await slot_engine.compute_slots(tuesday, seeded.tenant.id, 45, staff_id=seeded.ana.id)

        for slot in slots:
            start = datetime.fromisoformat(slot)
            assert start >= at(tuesday, 9)
            assert start + timedelta(minutes=45) <= at(tuesday, 18)
