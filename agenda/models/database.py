"""
Database Models

SQLAlchemy ORM models for the multi-tenant conversational booking engine.

All timestamps are stored as naive UTC.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from sqlalchemy import (
    JSON, Boolean, DateTime, ForeignKey, Index, Integer, Numeric, String,
    Text, UniqueConstraint, Uuid, Enum as SQLEnum, text
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime:
    """Current time as naive UTC, the storage convention for every column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamp columns."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utcnow,
        onupdate=utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
        nullable=False
    )


class AppointmentStatus(str, Enum):
    """Appointment status enumeration."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class MessageRole(str, Enum):
    """Message author enumeration."""
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class Tenant(Base, TimestampMixin):
    """
    Tenant model (the business taking bookings).

    Resolved from the WhatsApp number customers write to. ``work_hours``
    maps weekday keys (``monday`` .. ``sunday``) to ``{"start": "HH:MM",
    "end": "HH:MM"}``; a missing day means closed.
    """

    __tablename__ = "tenants"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    whatsapp_number: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    timezone: Mapped[str] = mapped_column(String(50), default="America/Sao_Paulo")
    work_hours: Mapped[dict] = mapped_column(JSON, default=dict)
    settings: Mapped[dict] = mapped_column(JSON, default=dict)

    professionals: Mapped[List["Professional"]] = relationship(
        "Professional",
        back_populates="tenant"
    )
    services: Mapped[List["Service"]] = relationship(
        "Service",
        back_populates="tenant"
    )

    def __repr__(self) -> str:
        return f"<Tenant(id={self.id}, name='{self.name}')>"


class AgentConfig(Base, TimestampMixin):
    """Per-tenant assistant configuration (persona and knowledge scope)."""

    __tablename__ = "agent_configs"
    __table_args__ = (
        Index("idx_agent_config_tenant", "tenant_id", "is_active"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    tone: Mapped[str] = mapped_column(String(100), default="friendly and concise")
    custom_instructions: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    model: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<AgentConfig(id={self.id}, name='{self.name}', active={self.is_active})>"


class Professional(Base, TimestampMixin):
    """
    Professional model (staff member who performs services).

    ``work_hours`` overrides the tenant's hours when set. An empty
    ``service_ids`` list means the professional performs every service.
    """

    __tablename__ = "professionals"
    __table_args__ = (
        Index("idx_professional_tenant", "tenant_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    specialty: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    work_hours: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    service_ids: Mapped[list] = mapped_column(JSON, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    tenant: Mapped["Tenant"] = relationship("Tenant", back_populates="professionals")

    def performs(self, service_id: uuid.UUID) -> bool:
        """Whether this professional can be booked for the given service."""
        if not self.service_ids:
            return True
        return str(service_id) in {str(s) for s in self.service_ids}

    def __repr__(self) -> str:
        return f"<Professional(id={self.id}, name='{self.name}')>"


class Service(Base, TimestampMixin):
    """Bookable service with a fixed duration."""

    __tablename__ = "services"
    __table_args__ = (
        Index("idx_service_tenant", "tenant_id", "is_active"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    price: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    tenant: Mapped["Tenant"] = relationship("Tenant", back_populates="services")

    def __repr__(self) -> str:
        return f"<Service(id={self.id}, name='{self.name}', duration={self.duration_minutes})>"


class Customer(Base, TimestampMixin):
    """End customer, identified by normalized phone digits within a tenant."""

    __tablename__ = "customers"
    __table_args__ = (
        UniqueConstraint("tenant_id", "phone", name="uq_customer_tenant_phone"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[str] = mapped_column(String(32), nullable=False)
    preferences: Mapped[dict] = mapped_column(JSON, default=dict)

    def __repr__(self) -> str:
        return f"<Customer(id={self.id}, name='{self.name}')>"


class Appointment(Base, TimestampMixin):
    """
    Appointment model.

    For one professional, no two non-cancelled appointments overlap.
    Cancelled rows are kept for audit and ignored by availability.
    """

    __tablename__ = "appointments"
    __table_args__ = (
        Index("idx_appointment_tenant", "tenant_id"),
        Index("idx_appointment_professional_start", "professional_id", "starts_at"),
        Index("idx_appointment_customer", "customer_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False
    )
    professional_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("professionals.id"), nullable=False
    )
    customer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("customers.id"), nullable=False
    )
    service_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("services.id"), nullable=False
    )
    starts_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    ends_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    status: Mapped[AppointmentStatus] = mapped_column(
        SQLEnum(AppointmentStatus),
        default=AppointmentStatus.PENDING,
        nullable=False
    )
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    rescheduled_from_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("appointments.id"), nullable=True
    )

    def __repr__(self) -> str:
        return (
            f"<Appointment(id={self.id}, starts_at={self.starts_at}, "
            f"status={self.status})>"
        )


class Conversation(Base, TimestampMixin):
    """
    One customer address talking to one tenant.

    ``is_manual`` marks a human takeover: inbound messages are stored but the
    assistant does not reply.
    """

    __tablename__ = "conversations"
    __table_args__ = (
        UniqueConstraint("tenant_id", "customer_address", name="uq_conversation_tenant_address"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False
    )
    customer_address: Mapped[str] = mapped_column(String(32), nullable=False)
    is_manual: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    last_inbound_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_outbound_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    messages: Mapped[List["Message"]] = relationship(
        "Message",
        back_populates="conversation",
        order_by="Message.id"
    )

    def __repr__(self) -> str:
        return f"<Conversation(id={self.id}, tenant_id={self.tenant_id})>"


class Message(Base):
    """
    Conversation message.

    Totally ordered within a conversation by (created_at, id); the integer
    primary key breaks ties between rows written in the same instant.
    """

    __tablename__ = "messages"
    __table_args__ = (
        Index("idx_message_conversation_created", "conversation_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False
    )
    role: Mapped[MessageRole] = mapped_column(SQLEnum(MessageRole), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    input_tokens: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    output_tokens: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    total_tokens: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    model: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    conversation: Mapped["Conversation"] = relationship(
        "Conversation",
        back_populates="messages"
    )

    def __repr__(self) -> str:
        return f"<Message(id={self.id}, role={self.role})>"


class ProcessedMessage(Base):
    """Idempotency marker: one row per handled provider message id."""

    __tablename__ = "processed_messages"
    __table_args__ = (
        UniqueConstraint(
            "conversation_id", "provider_message_id", name="uq_processed_provider_message"
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False
    )
    provider_message_id: Mapped[str] = mapped_column(String(128), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<ProcessedMessage(provider_message_id='{self.provider_message_id}')>"
