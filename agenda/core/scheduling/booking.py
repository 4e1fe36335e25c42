"""
Booking Store.

Transactional operations over appointments. The conflict re-check and the
write always happen inside one transaction that holds the professional's row
lock, so two concurrent requests for overlapping windows cannot both commit.
"""

import asyncio
import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional, Union
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agenda.core.errors import ConflictError, NotFoundError, ValidationError
from agenda.models.database import (
    Appointment, AppointmentStatus, Customer, Professional, Service, Tenant, utcnow,
)
from agenda.utils.ids import parse_uuid
from agenda.utils.phone import mask_address, normalize_address
from agenda.utils.timeutil import from_storage, parse_timestamp, tenant_zone, to_storage

logger = logging.getLogger(__name__)

IdLike = Union[str, uuid.UUID]


@dataclass
class AppointmentSummary:
    """Appointment as shown to the customer, in the tenant's timezone."""

    id: str
    starts_at: datetime
    ends_at: datetime
    status: AppointmentStatus
    service_name: str
    professional_name: str
    notes: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "appointmentId": self.id,
            "startsAt": self.starts_at.isoformat(),
            "endsAt": self.ends_at.isoformat(),
            "status": self.status.value,
            "service": self.service_name,
            "professional": self.professional_name,
            "notes": self.notes,
        }


class BookingStore:
    """
    Appointment writes with conflict-safe create and reschedule.

    Two layers serialize writers for the same professional: a per-process
    ``asyncio.Lock`` and a ``SELECT ... FOR UPDATE`` on the professional row,
    which covers writers in other processes on Postgres.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory
        self._locks: defaultdict[uuid.UUID, asyncio.Lock] = defaultdict(asyncio.Lock)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create_appointment(
        self,
        tenant_id: IdLike,
        staff_id: IdLike,
        customer_address: str,
        service_id: IdLike,
        start: Union[str, datetime],
        notes: Optional[str] = None,
    ) -> Appointment:
        """
        Book a new appointment.

        Raises:
            ValidationError: Bad input, inactive service, past start time.
            NotFoundError: Unknown tenant, professional or service.
            ConflictError: Window overlaps an existing appointment.
        """
        tenant_uuid = parse_uuid(tenant_id, "tenant_id")
        staff_uuid = parse_uuid(staff_id, "professional_id")
        service_uuid = parse_uuid(service_id, "service_id")
        phone = normalize_address(customer_address)
        if not phone:
            raise ValidationError("Customer address is required")

        async with self._locks[staff_uuid]:
            async with self._session_factory() as session:
                async with session.begin():
                    tenant = await self._get_tenant(session, tenant_uuid)
                    zone = tenant_zone(tenant.timezone)
                    starts_at = to_storage(parse_timestamp(start, zone))

                    professional = await self._lock_professional(session, tenant_uuid, staff_uuid)
                    service = await self._get_bookable_service(session, tenant_uuid, service_uuid)
                    if not professional.performs(service.id):
                        raise ValidationError(
                            f"{professional.name} does not perform {service.name}",
                            {"professional_id": str(staff_uuid), "service_id": str(service_uuid)},
                        )
                    self._reject_past(starts_at)

                    ends_at = starts_at + timedelta(minutes=service.duration_minutes)
                    await self._ensure_free(session, staff_uuid, starts_at, ends_at, zone)

                    customer = await self._get_or_create_customer(session, tenant_uuid, phone)
                    appointment = Appointment(
                        tenant_id=tenant_uuid,
                        professional_id=staff_uuid,
                        customer_id=customer.id,
                        service_id=service.id,
                        starts_at=starts_at,
                        ends_at=ends_at,
                        status=AppointmentStatus.PENDING,
                        notes=notes,
                    )
                    session.add(appointment)
                    await session.flush()

        logger.info(
            f"Appointment {appointment.id} booked for {mask_address(phone)} "
            f"with professional {staff_uuid} at {starts_at.isoformat()}Z"
        )
        return appointment

    async def cancel_appointment(
        self,
        appointment_id: IdLike,
        reason: Optional[str] = None,
        tenant_id: Optional[IdLike] = None,
        customer_address: Optional[str] = None,
    ) -> Appointment:
        """
        Mark an appointment cancelled. The row is kept.

        Cancelling an already cancelled appointment succeeds without change.

        Raises:
            NotFoundError: Unknown id, or not visible to the given tenant/customer.
        """
        appointment_uuid = parse_uuid(appointment_id, "appointment_id")

        async with self._session_factory() as session:
            async with session.begin():
                appointment = await self._get_owned_appointment(
                    session, appointment_uuid, tenant_id, customer_address
                )
                if appointment.status != AppointmentStatus.CANCELLED:
                    appointment.status = AppointmentStatus.CANCELLED
                    appointment.cancelled_at = utcnow()
                    appointment.cancellation_reason = reason

        logger.info(f"Appointment {appointment_uuid} cancelled")
        return appointment

    async def reschedule_appointment(
        self,
        appointment_id: IdLike,
        new_start: Union[str, datetime],
        tenant_id: Optional[IdLike] = None,
        customer_address: Optional[str] = None,
    ) -> Appointment:
        """
        Move an appointment: cancel the old row and create a new one, atomically.

        The new window is checked against every other appointment of the same
        professional; the appointment being moved does not conflict with itself.

        Raises:
            NotFoundError: Unknown id.
            ValidationError: Appointment already cancelled, or new time in the past.
            ConflictError: New window overlaps another appointment.
        """
        appointment_uuid = parse_uuid(appointment_id, "appointment_id")

        async with self._session_factory() as session:
            current = await self._get_owned_appointment(
                session, appointment_uuid, tenant_id, customer_address
            )
            staff_uuid = current.professional_id

        async with self._locks[staff_uuid]:
            async with self._session_factory() as session:
                async with session.begin():
                    await self._lock_professional(session, current.tenant_id, staff_uuid)
                    original = await self._get_owned_appointment(
                        session, appointment_uuid, tenant_id, customer_address
                    )
                    if original.status == AppointmentStatus.CANCELLED:
                        raise ValidationError(
                            "Cancelled appointments cannot be rescheduled",
                            {"appointment_id": str(appointment_uuid)},
                        )

                    tenant = await self._get_tenant(session, original.tenant_id)
                    zone = tenant_zone(tenant.timezone)
                    starts_at = to_storage(parse_timestamp(new_start, zone))
                    self._reject_past(starts_at)
                    ends_at = starts_at + (original.ends_at - original.starts_at)

                    await self._ensure_free(
                        session, staff_uuid, starts_at, ends_at, zone, exclude_id=original.id
                    )

                    original.status = AppointmentStatus.CANCELLED
                    original.cancelled_at = utcnow()
                    original.cancellation_reason = "rescheduled"

                    moved = Appointment(
                        tenant_id=original.tenant_id,
                        professional_id=staff_uuid,
                        customer_id=original.customer_id,
                        service_id=original.service_id,
                        starts_at=starts_at,
                        ends_at=ends_at,
                        status=AppointmentStatus.PENDING,
                        notes=original.notes,
                        rescheduled_from_id=original.id,
                    )
                    session.add(moved)
                    await session.flush()

        logger.info(f"Appointment {appointment_uuid} rescheduled as {moved.id}")
        return moved

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_upcoming_appointments(
        self,
        tenant_id: IdLike,
        customer_address: str,
        now: Optional[datetime] = None,
        limit: int = 10,
    ) -> list[AppointmentSummary]:
        """Future non-cancelled appointments of one customer, soonest first."""
        tenant_uuid = parse_uuid(tenant_id, "tenant_id")
        phone = normalize_address(customer_address)
        cutoff = to_storage(now) if now else utcnow()

        async with self._session_factory() as session:
            tenant = await self._get_tenant(session, tenant_uuid)
            zone = tenant_zone(tenant.timezone)
            stmt = (
                select(Appointment, Service.name, Professional.name)
                .join(Customer, Customer.id == Appointment.customer_id)
                .join(Service, Service.id == Appointment.service_id)
                .join(Professional, Professional.id == Appointment.professional_id)
                .where(
                    Appointment.tenant_id == tenant_uuid,
                    Customer.phone == phone,
                    Appointment.status != AppointmentStatus.CANCELLED,
                    Appointment.starts_at >= cutoff,
                )
                .order_by(Appointment.starts_at)
                .limit(limit)
            )
            rows = (await session.execute(stmt)).all()

        return [
            self._summarize(appointment, service_name, professional_name, zone)
            for appointment, service_name, professional_name in rows
        ]

    @staticmethod
    def _summarize(
        appointment: Appointment, service_name: str, professional_name: str, zone: ZoneInfo
    ) -> AppointmentSummary:
        return AppointmentSummary(
            id=str(appointment.id),
            starts_at=from_storage(appointment.starts_at, zone),
            ends_at=from_storage(appointment.ends_at, zone),
            status=appointment.status,
            service_name=service_name,
            professional_name=professional_name,
            notes=appointment.notes,
        )

    # ------------------------------------------------------------------
    # Helpers (all run inside the caller's session)
    # ------------------------------------------------------------------

    @staticmethod
    async def _get_tenant(session: AsyncSession, tenant_id: uuid.UUID) -> Tenant:
        tenant = await session.get(Tenant, tenant_id)
        if tenant is None:
            raise NotFoundError("Tenant not found", {"tenant_id": str(tenant_id)})
        return tenant

    @staticmethod
    async def _lock_professional(
        session: AsyncSession, tenant_id: uuid.UUID, staff_id: uuid.UUID
    ) -> Professional:
        stmt = (
            select(Professional)
            .where(Professional.id == staff_id, Professional.tenant_id == tenant_id)
            .with_for_update()
        )
        professional = (await session.execute(stmt)).scalar_one_or_none()
        if professional is None or not professional.is_active:
            raise NotFoundError("Professional not found", {"professional_id": str(staff_id)})
        return professional

    @staticmethod
    async def _get_bookable_service(
        session: AsyncSession, tenant_id: uuid.UUID, service_id: uuid.UUID
    ) -> Service:
        service = await session.get(Service, service_id)
        if service is None or service.tenant_id != tenant_id:
            raise NotFoundError("Service not found", {"service_id": str(service_id)})
        if not service.is_active:
            raise ValidationError(
                f"{service.name} is not currently bookable", {"service_id": str(service_id)}
            )
        return service

    @staticmethod
    def _reject_past(starts_at: datetime) -> None:
        if starts_at < utcnow():
            raise ValidationError(
                "Appointments cannot be booked in the past",
                {"starts_at": f"{starts_at.isoformat()}Z"},
            )

    @staticmethod
    async def _ensure_free(
        session: AsyncSession,
        staff_id: uuid.UUID,
        starts_at: datetime,
        ends_at: datetime,
        zone: ZoneInfo,
        exclude_id: Optional[uuid.UUID] = None,
    ) -> None:
        stmt = select(Appointment.id, Appointment.starts_at, Appointment.ends_at).where(
            Appointment.professional_id == staff_id,
            Appointment.status != AppointmentStatus.CANCELLED,
            Appointment.starts_at < ends_at,
            Appointment.ends_at > starts_at,
        )
        if exclude_id is not None:
            stmt = stmt.where(Appointment.id != exclude_id)

        clash = (await session.execute(stmt.limit(1))).first()
        if clash is not None:
            raise ConflictError(
                "The requested time overlaps an existing appointment",
                {
                    "requested_start": from_storage(starts_at, zone).isoformat(),
                    "conflicting_start": from_storage(clash.starts_at, zone).isoformat(),
                    "conflicting_end": from_storage(clash.ends_at, zone).isoformat(),
                },
            )

    @staticmethod
    async def _find_customer(
        session: AsyncSession, tenant_id: uuid.UUID, phone: str
    ) -> Optional[Customer]:
        stmt = select(Customer).where(Customer.tenant_id == tenant_id, Customer.phone == phone)
        return (await session.execute(stmt)).scalar_one_or_none()

    @classmethod
    async def _get_or_create_customer(
        cls, session: AsyncSession, tenant_id: uuid.UUID, phone: str
    ) -> Customer:
        customer = await cls._find_customer(session, tenant_id, phone)
        if customer is not None:
            return customer

        try:
            async with session.begin_nested():
                customer = Customer(tenant_id=tenant_id, name=phone, phone=phone, preferences={})
                session.add(customer)
        except IntegrityError:
            # Registered meanwhile by a booking with another professional
            customer = await cls._find_customer(session, tenant_id, phone)
            if customer is None:
                raise
        return customer

    @staticmethod
    async def _get_owned_appointment(
        session: AsyncSession,
        appointment_id: uuid.UUID,
        tenant_id: Optional[IdLike],
        customer_address: Optional[str],
    ) -> Appointment:
        appointment = await session.get(Appointment, appointment_id)
        missing = NotFoundError("Appointment not found", {"appointment_id": str(appointment_id)})
        if appointment is None:
            raise missing
        if tenant_id is not None and appointment.tenant_id != parse_uuid(tenant_id, "tenant_id"):
            raise missing
        if customer_address is not None:
            customer = await session.get(Customer, appointment.customer_id)
            if customer is None or customer.phone != normalize_address(customer_address):
                raise missing
        return appointment
