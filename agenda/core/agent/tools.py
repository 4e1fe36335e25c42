"""
Tool Catalog.

The domain operations the booking assistant may invoke. Each tool kind has
its own argument model, published to Claude as the tool's input schema and
used to validate what the model sends back.

Tenant and caller identity are bound when the catalog is created for a
conversation; no tool accepts them as arguments.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Union, assert_never

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError

from agenda.config import settings
from agenda.core.errors import BookingError
from agenda.core.scheduling.booking import BookingStore
from agenda.core.scheduling.directory import TenantDirectory
from agenda.core.scheduling.slots import SlotEngine
from agenda.models.database import Appointment
from agenda.utils.timeutil import from_storage, parse_timestamp, tenant_zone

logger = logging.getLogger(__name__)


class ToolKind(str, Enum):
    """Every operation exposed to the model. Values are the wire names."""
    CHECK_AVAILABILITY = "checkAvailability"
    CREATE_APPOINTMENT = "createAppointment"
    CANCEL_APPOINTMENT = "cancelAppointment"
    RESCHEDULE_APPOINTMENT = "rescheduleAppointment"
    IDENTIFY_CUSTOMER = "identifyCustomer"
    GET_SERVICES = "getServices"
    GET_PROFESSIONALS = "getProfessionals"
    SAVE_CUSTOMER_PREFERENCE = "saveCustomerPreference"
    GET_UPCOMING_APPOINTMENTS = "getUpcomingAppointments"


class ToolArguments(BaseModel):
    """Base for tool argument models."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class CheckAvailabilityArgs(ToolArguments):
    date: str = Field(
        ...,
        description="Day to check, YYYY-MM-DD (a full ISO timestamp is accepted; only the date is used).",
    )
    professional_id: Optional[str] = Field(
        None,
        alias="professionalId",
        description="Restrict to one professional (id from getProfessionals). Omit to check everyone who performs the service.",
    )
    service_id: Optional[str] = Field(
        None,
        alias="serviceId",
        description="Service to book (id from getServices). Its duration sets the slot length.",
    )
    service_duration: Optional[int] = Field(
        None,
        alias="serviceDuration",
        gt=0,
        description="Slot length in minutes, only when no serviceId is known.",
    )


class CreateAppointmentArgs(ToolArguments):
    professional_id: str = Field(..., alias="professionalId", description="Professional id from getProfessionals.")
    service_id: str = Field(..., alias="serviceId", description="Service id from getServices.")
    date: str = Field(
        ...,
        description="Start time as ISO-8601, exactly as returned by checkAvailability (e.g. 2025-03-10T14:00:00-03:00).",
    )
    notes: Optional[str] = Field(None, description="Anything the customer asked to pass on.")


class CancelAppointmentArgs(ToolArguments):
    appointment_id: str = Field(
        ..., alias="appointmentId", description="Id returned by getUpcomingAppointments."
    )
    reason: Optional[str] = Field(None, description="Why the customer is cancelling, if given.")


class RescheduleAppointmentArgs(ToolArguments):
    appointment_id: str = Field(
        ..., alias="appointmentId", description="Id returned by getUpcomingAppointments."
    )
    new_date: str = Field(
        ...,
        alias="newDate",
        description="New start time as ISO-8601, taken from checkAvailability.",
    )


class IdentifyCustomerArgs(ToolArguments):
    name: Optional[str] = Field(
        None,
        min_length=1,
        description="Customer's name. Provide it to register a new customer or correct the stored name.",
    )


class GetServicesArgs(ToolArguments):
    include_inactive: bool = Field(
        False, alias="includeInactive", description="Also list services that cannot be booked right now."
    )


class GetProfessionalsArgs(ToolArguments):
    service_id: Optional[str] = Field(
        None, alias="serviceId", description="Only professionals who perform this service."
    )


class SaveCustomerPreferenceArgs(ToolArguments):
    key: str = Field(
        ..., min_length=1, description="Preference name, e.g. 'favorite_professional' or 'preferred_time'."
    )
    value: Union[str, int, float, bool] = Field(..., description="Preference value.")


class GetUpcomingAppointmentsArgs(ToolArguments):
    pass


ToolArgs = Union[
    CheckAvailabilityArgs,
    CreateAppointmentArgs,
    CancelAppointmentArgs,
    RescheduleAppointmentArgs,
    IdentifyCustomerArgs,
    GetServicesArgs,
    GetProfessionalsArgs,
    SaveCustomerPreferenceArgs,
    GetUpcomingAppointmentsArgs,
]

TOOL_ARGUMENTS: dict[ToolKind, type[ToolArguments]] = {
    ToolKind.CHECK_AVAILABILITY: CheckAvailabilityArgs,
    ToolKind.CREATE_APPOINTMENT: CreateAppointmentArgs,
    ToolKind.CANCEL_APPOINTMENT: CancelAppointmentArgs,
    ToolKind.RESCHEDULE_APPOINTMENT: RescheduleAppointmentArgs,
    ToolKind.IDENTIFY_CUSTOMER: IdentifyCustomerArgs,
    ToolKind.GET_SERVICES: GetServicesArgs,
    ToolKind.GET_PROFESSIONALS: GetProfessionalsArgs,
    ToolKind.SAVE_CUSTOMER_PREFERENCE: SaveCustomerPreferenceArgs,
    ToolKind.GET_UPCOMING_APPOINTMENTS: GetUpcomingAppointmentsArgs,
}

TOOL_DESCRIPTIONS: dict[ToolKind, str] = {
    ToolKind.CHECK_AVAILABILITY: (
        "List free start times for one day. ALWAYS call this before offering or "
        "booking a time - never assume availability. Returns ISO timestamps per "
        "professional; pass one of them unchanged to createAppointment."
    ),
    ToolKind.CREATE_APPOINTMENT: (
        "Book an appointment for the customer in this conversation. Only call it "
        "after the customer confirmed service, professional and time. If the time "
        "was taken meanwhile you get a 'conflict' error: check availability again "
        "and offer alternatives."
    ),
    ToolKind.CANCEL_APPOINTMENT: (
        "Cancel one of the customer's appointments. IMPORTANT: call "
        "getUpcomingAppointments first in this conversation to obtain a valid "
        "appointmentId, and confirm with the customer which one to cancel."
    ),
    ToolKind.RESCHEDULE_APPOINTMENT: (
        "Move one of the customer's appointments to a new time. IMPORTANT: call "
        "getUpcomingAppointments first in this conversation to obtain a valid "
        "appointmentId, then checkAvailability for the new day."
    ),
    ToolKind.IDENTIFY_CUSTOMER: (
        "Look up the customer writing in this conversation. Call it at the start "
        "of a conversation. If the customer is unknown, ask for their name and call "
        "it again with 'name' to register them."
    ),
    ToolKind.GET_SERVICES: (
        "List the services offered, with ids, durations and prices."
    ),
    ToolKind.GET_PROFESSIONALS: (
        "List the professionals, with ids. Filter by serviceId to see who performs a service."
    ),
    ToolKind.SAVE_CUSTOMER_PREFERENCE: (
        "Remember a preference the customer mentioned (favorite professional, "
        "preferred times, allergies) for future conversations."
    ),
    ToolKind.GET_UPCOMING_APPOINTMENTS: (
        "List the customer's future appointments with their ids. Required before "
        "cancelAppointment or rescheduleAppointment."
    ),
}


@dataclass(frozen=True)
class ToolContext:
    """Identity bound at orchestration setup, never taken from the model."""

    tenant_id: str
    customer_address: str
    timezone: Optional[str] = None


class ToolCatalog:
    """
    Tool definitions and execution for one conversation turn.

    ``execute`` never raises: validation problems, domain errors and
    unexpected failures all come back as ``{"error": ...}`` payloads so the
    model can correct itself.
    """

    def __init__(
        self,
        context: ToolContext,
        slot_engine: SlotEngine,
        booking_store: BookingStore,
        directory: TenantDirectory,
        strict_appointment_ids: Optional[bool] = None,
    ):
        self.context = context
        self._slots = slot_engine
        self._bookings = booking_store
        self._directory = directory
        self._strict_ids = (
            settings.strict_appointment_ids if strict_appointment_ids is None
            else strict_appointment_ids
        )
        self._zone = tenant_zone(context.timezone)
        self._known_appointment_ids: set[str] = set()

    @staticmethod
    def definitions() -> list[dict[str, Any]]:
        """Tool definitions in Anthropic tool_use format."""
        tools = []
        for kind in ToolKind:
            schema = TOOL_ARGUMENTS[kind].model_json_schema(by_alias=True)
            schema.pop("title", None)
            schema.pop("description", None)
            schema.setdefault("properties", {})
            tools.append(
                {
                    "name": kind.value,
                    "description": TOOL_DESCRIPTIONS[kind],
                    "input_schema": schema,
                }
            )
        return tools

    async def execute(self, tool_name: str, tool_input: Optional[dict[str, Any]]) -> dict[str, Any]:
        """
        Validate and run one tool call.

        Args:
            tool_name: Wire name of the tool
            tool_input: Arguments as sent by the model

        Returns:
            JSON-serializable result or ``{"error": ...}`` payload
        """
        try:
            kind = ToolKind(tool_name)
        except ValueError:
            return {"error": "unknown_tool", "message": f"Unknown tool: {tool_name}"}

        try:
            args = TOOL_ARGUMENTS[kind].model_validate(tool_input or {})
        except PydanticValidationError as e:
            return {
                "error": "validation_error",
                "message": f"Invalid arguments for {tool_name}",
                "details": e.errors(include_url=False, include_context=False, include_input=False),
            }

        try:
            return await self._dispatch(args)
        except BookingError as e:
            logger.info(f"Tool {tool_name} returned {e.code}: {e.message}")
            return e.to_dict()
        except Exception as e:
            logger.exception(f"Tool execution failed: {tool_name}")
            return {"error": "execution_failed", "message": str(e)}

    async def _dispatch(self, args: ToolArgs) -> dict[str, Any]:
        match args:
            case CheckAvailabilityArgs():
                return await self._check_availability(args)
            case CreateAppointmentArgs():
                return await self._create_appointment(args)
            case CancelAppointmentArgs():
                return await self._cancel_appointment(args)
            case RescheduleAppointmentArgs():
                return await self._reschedule_appointment(args)
            case IdentifyCustomerArgs():
                return await self._identify_customer(args)
            case GetServicesArgs():
                return await self._get_services(args)
            case GetProfessionalsArgs():
                return await self._get_professionals(args)
            case SaveCustomerPreferenceArgs():
                return await self._save_preference(args)
            case GetUpcomingAppointmentsArgs():
                return await self._get_upcoming(args)
            case _:
                assert_never(args)

    async def _check_availability(self, args: CheckAvailabilityArgs) -> dict[str, Any]:
        tenant_id = self.context.tenant_id

        if args.service_id:
            service = await self._directory.get_service(tenant_id, args.service_id)
            duration = service.duration_minutes
        elif args.service_duration:
            duration = args.service_duration
        else:
            return {
                "error": "validation_error",
                "message": "Provide serviceId (preferred) or serviceDuration",
            }

        if args.professional_id:
            professional_ids = [(args.professional_id, None)]
        else:
            professionals = await self._directory.list_professionals(tenant_id, args.service_id)
            professional_ids = [(str(p.id), p.name) for p in professionals]

        availability = []
        for professional_id, name in professional_ids:
            slots = await self._slots.compute_slots(
                args.date, tenant_id, duration, staff_id=professional_id
            )
            entry: dict[str, Any] = {"professionalId": professional_id, "slots": slots}
            if name:
                entry["professional"] = name
            availability.append(entry)

        result: dict[str, Any] = {
            "date": args.date[:10],
            "durationMinutes": duration,
            "availability": availability,
        }
        if not any(entry["slots"] for entry in availability):
            result["message"] = "No free times on this day. Suggest another day."
        return result

    async def _create_appointment(self, args: CreateAppointmentArgs) -> dict[str, Any]:
        appointment = await self._bookings.create_appointment(
            tenant_id=self.context.tenant_id,
            staff_id=args.professional_id,
            customer_address=self.context.customer_address,
            service_id=args.service_id,
            start=parse_timestamp(args.date, self._zone),
            notes=args.notes,
        )
        self._known_appointment_ids.add(str(appointment.id))
        return {"success": True, "appointment": self._describe(appointment)}

    async def _cancel_appointment(self, args: CancelAppointmentArgs) -> dict[str, Any]:
        if (unseen := self._reject_unseen(args.appointment_id)) is not None:
            return unseen
        appointment = await self._bookings.cancel_appointment(
            args.appointment_id,
            reason=args.reason,
            tenant_id=self.context.tenant_id,
            customer_address=self.context.customer_address,
        )
        return {"success": True, "appointment": self._describe(appointment)}

    async def _reschedule_appointment(self, args: RescheduleAppointmentArgs) -> dict[str, Any]:
        if (unseen := self._reject_unseen(args.appointment_id)) is not None:
            return unseen
        moved = await self._bookings.reschedule_appointment(
            args.appointment_id,
            parse_timestamp(args.new_date, self._zone),
            tenant_id=self.context.tenant_id,
            customer_address=self.context.customer_address,
        )
        self._known_appointment_ids.add(str(moved.id))
        return {"success": True, "appointment": self._describe(moved)}

    async def _identify_customer(self, args: IdentifyCustomerArgs) -> dict[str, Any]:
        tenant_id = self.context.tenant_id
        address = self.context.customer_address

        if args.name is None:
            customer = await self._directory.find_customer(tenant_id, address)
            if customer is None:
                return {
                    "found": False,
                    "created": False,
                    "message": "Unknown customer. Ask for their name and call identifyCustomer with it.",
                }
            created = False
        else:
            customer, created = await self._directory.upsert_customer(tenant_id, address, args.name)

        return {
            "found": not created,
            "created": created,
            "customer": {
                "id": str(customer.id),
                "name": customer.name,
                "preferences": customer.preferences or {},
            },
        }

    async def _get_services(self, args: GetServicesArgs) -> dict[str, Any]:
        services = await self._directory.list_services(
            self.context.tenant_id, include_inactive=args.include_inactive
        )
        return {
            "services": [
                {
                    "id": str(s.id),
                    "name": s.name,
                    "description": s.description,
                    "durationMinutes": s.duration_minutes,
                    "price": float(s.price) if s.price is not None else None,
                    "isActive": s.is_active,
                }
                for s in services
            ],
            "count": len(services),
        }

    async def _get_professionals(self, args: GetProfessionalsArgs) -> dict[str, Any]:
        professionals = await self._directory.list_professionals(
            self.context.tenant_id, args.service_id
        )
        return {
            "professionals": [
                {"id": str(p.id), "name": p.name, "specialty": p.specialty}
                for p in professionals
            ],
            "count": len(professionals),
        }

    async def _save_preference(self, args: SaveCustomerPreferenceArgs) -> dict[str, Any]:
        preferences = await self._directory.save_preference(
            self.context.tenant_id, self.context.customer_address, args.key, args.value
        )
        return {"success": True, "preferences": preferences}

    async def _get_upcoming(self, args: GetUpcomingAppointmentsArgs) -> dict[str, Any]:
        appointments = await self._bookings.get_upcoming_appointments(
            self.context.tenant_id, self.context.customer_address
        )
        self._known_appointment_ids.update(a.id for a in appointments)
        return {
            "appointments": [a.to_dict() for a in appointments],
            "count": len(appointments),
        }

    def _reject_unseen(self, appointment_id: str) -> Optional[dict[str, Any]]:
        if not self._strict_ids or appointment_id in self._known_appointment_ids:
            return None
        return {
            "error": "unknown_appointment_id",
            "message": (
                "Call getUpcomingAppointments first and use one of the ids it returns."
            ),
        }

    def _describe(self, appointment: Appointment) -> dict[str, Any]:
        return {
            "appointmentId": str(appointment.id),
            "startsAt": from_storage(appointment.starts_at, self._zone).isoformat(),
            "endsAt": from_storage(appointment.ends_at, self._zone).isoformat(),
            "status": appointment.status.value,
        }
