"""
Scheduling Module

Availability computation, appointment writes and tenant catalog lookups.

Usage:
    from agenda.core.scheduling import SlotEngine, BookingStore

    slots = await SlotEngine(session_factory).compute_slots(
        "2025-03-10", tenant_id, service_duration_minutes=60
    )
"""

from agenda.core.scheduling.slots import BusyInterval, SlotEngine, generate_slots
from agenda.core.scheduling.booking import AppointmentSummary, BookingStore
from agenda.core.scheduling.directory import TenantDirectory

__all__ = [
    "BusyInterval",
    "SlotEngine",
    "generate_slots",
    "AppointmentSummary",
    "BookingStore",
    "TenantDirectory",
]
