"""
Tenant directory.

Read-mostly lookups of the catalog a tenant exposes to its customers:
services, professionals, customer records and the active assistant
configuration.
"""

import logging
import uuid
from typing import Any, Optional, Union

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agenda.core.errors import NotFoundError
from agenda.models.database import AgentConfig, Customer, Professional, Service, Tenant
from agenda.utils.ids import parse_uuid
from agenda.utils.phone import mask_address, normalize_address

logger = logging.getLogger(__name__)

IdLike = Union[str, uuid.UUID]


class TenantDirectory:
    """Lookups scoped to one tenant per call."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get_tenant(self, tenant_id: IdLike) -> Tenant:
        async with self._session_factory() as session:
            tenant = await session.get(Tenant, parse_uuid(tenant_id, "tenant_id"))
        if tenant is None:
            raise NotFoundError("Tenant not found", {"tenant_id": str(tenant_id)})
        return tenant

    async def find_tenant_by_address(self, address: str) -> Optional[Tenant]:
        """Resolve the tenant owning the WhatsApp number a message was sent to."""
        number = normalize_address(address)
        if not number:
            return None
        async with self._session_factory() as session:
            stmt = select(Tenant).where(Tenant.whatsapp_number == number)
            return (await session.execute(stmt)).scalar_one_or_none()

    async def get_active_agent(self, tenant_id: IdLike) -> Optional[AgentConfig]:
        async with self._session_factory() as session:
            stmt = (
                select(AgentConfig)
                .where(
                    AgentConfig.tenant_id == parse_uuid(tenant_id, "tenant_id"),
                    AgentConfig.is_active.is_(True),
                )
                .order_by(AgentConfig.created_at.desc())
                .limit(1)
            )
            return (await session.execute(stmt)).scalar_one_or_none()

    async def list_services(
        self, tenant_id: IdLike, include_inactive: bool = False
    ) -> list[Service]:
        async with self._session_factory() as session:
            stmt = select(Service).where(Service.tenant_id == parse_uuid(tenant_id, "tenant_id"))
            if not include_inactive:
                stmt = stmt.where(Service.is_active.is_(True))
            return list((await session.execute(stmt.order_by(Service.name))).scalars())

    async def get_service(self, tenant_id: IdLike, service_id: IdLike) -> Service:
        async with self._session_factory() as session:
            service = await session.get(Service, parse_uuid(service_id, "service_id"))
        if service is None or service.tenant_id != parse_uuid(tenant_id, "tenant_id"):
            raise NotFoundError("Service not found", {"service_id": str(service_id)})
        return service

    async def list_professionals(
        self, tenant_id: IdLike, service_id: Optional[IdLike] = None
    ) -> list[Professional]:
        async with self._session_factory() as session:
            stmt = (
                select(Professional)
                .where(
                    Professional.tenant_id == parse_uuid(tenant_id, "tenant_id"),
                    Professional.is_active.is_(True),
                )
                .order_by(Professional.name)
            )
            professionals = list((await session.execute(stmt)).scalars())

        if service_id is not None:
            wanted = parse_uuid(service_id, "service_id")
            professionals = [p for p in professionals if p.performs(wanted)]
        return professionals

    async def find_customer(self, tenant_id: IdLike, address: str) -> Optional[Customer]:
        async with self._session_factory() as session:
            stmt = select(Customer).where(
                Customer.tenant_id == parse_uuid(tenant_id, "tenant_id"),
                Customer.phone == normalize_address(address),
            )
            return (await session.execute(stmt)).scalar_one_or_none()

    async def upsert_customer(
        self, tenant_id: IdLike, address: str, name: Optional[str] = None
    ) -> tuple[Customer, bool]:
        """
        Find the customer for an address, creating it when missing.

        A given name replaces the stored one. Returns (customer, created).
        """
        tenant_uuid = parse_uuid(tenant_id, "tenant_id")
        phone = normalize_address(address)

        async with self._session_factory() as session:
            stmt = select(Customer).where(Customer.tenant_id == tenant_uuid, Customer.phone == phone)
            customer = (await session.execute(stmt)).scalar_one_or_none()
            created = customer is None

            if created:
                customer = Customer(
                    tenant_id=tenant_uuid, phone=phone, name=name or phone, preferences={}
                )
                session.add(customer)
            elif name and customer.name != name:
                customer.name = name

            try:
                await session.commit()
            except IntegrityError:
                # Lost a race with a concurrent creator for the same phone
                await session.rollback()
                customer = (await session.execute(stmt)).scalar_one()
                created = False

        if created:
            logger.info(f"Customer created for {mask_address(phone)}")
        return customer, created

    async def save_preference(
        self, tenant_id: IdLike, address: str, key: str, value: Any
    ) -> dict[str, Any]:
        """Store one preference on the customer record; returns all preferences."""
        customer, _ = await self.upsert_customer(tenant_id, address)

        async with self._session_factory() as session:
            async with session.begin():
                fresh = await session.get(Customer, customer.id)
                preferences = dict(fresh.preferences or {})
                preferences[key] = value
                # Reassign so the JSON column is flagged dirty
                fresh.preferences = preferences

        return preferences
