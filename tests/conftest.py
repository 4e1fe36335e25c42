"""Shared fixtures: a throwaway SQLite database seeded with one tenant."""

from datetime import date, timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from agenda.infra.database import build_session_factory
from agenda.models.database import (
    AgentConfig, Base, Professional, Service, Tenant,
)

TENANT_NUMBER = "5511900000000"
CUSTOMER_ADDRESS = "5511987654321"

WORK_HOURS = {
    "monday": {"start": "09:00", "end": "12:00"},
    "tuesday": {"start": "09:00", "end": "18:00"},
    "wednesday": {"start": "09:00", "end": "18:00"},
    "thursday": {"start": "09:00", "end": "18:00"},
    "friday": {"start": "09:00", "end": "18:00"},
}


def upcoming(weekday: int) -> date:
    """A date with the given weekday (0=Monday) at least a week from today."""
    start = date.today() + timedelta(days=7)
    return start + timedelta(days=(weekday - start.weekday()) % 7)


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'agenda.db'}",
        poolclass=NullPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def seeded(session_factory):
    """One tenant with two professionals, two services and an active agent."""
    tenant = Tenant(
        name="Studio Bella",
        slug="studio-bella",
        whatsapp_number=TENANT_NUMBER,
        timezone="America/Sao_Paulo",
        work_hours=WORK_HOURS,
        settings={"late_tolerance_minutes": 10},
    )
    async with session_factory() as session:
        session.add(tenant)
        await session.flush()

        haircut = Service(
            tenant_id=tenant.id, name="Haircut", duration_minutes=60, price=Decimal("80.00")
        )
        manicure = Service(
            tenant_id=tenant.id, name="Manicure", duration_minutes=30, price=Decimal("45.00")
        )
        session.add_all([haircut, manicure])
        await session.flush()

        ana = Professional(tenant_id=tenant.id, name="Ana", service_ids=[])
        bruno = Professional(
            tenant_id=tenant.id,
            name="Bruno",
            service_ids=[str(manicure.id)],
            work_hours={"monday": {"start": "14:00", "end": "16:00"}},
        )
        agent = AgentConfig(
            tenant_id=tenant.id,
            name="Bia",
            tone="warm and upbeat",
            custom_instructions="Always mention the 10% discount on Tuesdays.",
        )
        session.add_all([ana, bruno, agent])
        await session.commit()

    return SimpleNamespace(
        tenant=tenant,
        haircut=haircut,
        manicure=manicure,
        ana=ana,
        bruno=bruno,
        agent=agent,
        customer_address=CUSTOMER_ADDRESS,
    )
