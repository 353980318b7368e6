"""Shared fixtures: in-memory database with the demo catalog, recording collaborators, coordinators."""

from decimal import Decimal
from typing import List

import pytest
import pytest_asyncio
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from pallet_routing.core.settings import AppSettings
from pallet_routing.db.base import Base
from pallet_routing.db.models import MachineAssignment, PalletBufferCell, StationMode
from pallet_routing.db.seed import SeededCatalog, seed_catalog
from pallet_routing.schemas.realtime import DomainEvent
from pallet_routing.services.coordinator import RoutingCoordinator


class RecordingBus:
    """Notification bus that keeps every published event."""

    def __init__(self):
        self.events: List[DomainEvent] = []

    async def publish(self, event: DomainEvent) -> None:
        self.events.append(event)

    def names(self) -> List[str]:
        return [e.event for e in self.events]

    def clear(self) -> None:
        self.events.clear()


class RecordingPackaging:
    """Packaging queue that records the parts signalled as ready."""

    def __init__(self):
        self.signals: List[int] = []

    async def signal_part_ready(self, part_id: int) -> None:
        self.signals.append(part_id)


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session(engine):
    maker = async_sessionmaker(bind=engine, expire_on_commit=False, autoflush=False)
    async with maker() as session:
        yield session


@pytest_asyncio.fixture
async def catalog(session) -> SeededCatalog:
    seeded = await seed_catalog(session, part_quantity=Decimal("1000"))
    await session.commit()
    return seeded


@pytest.fixture
def bus():
    return RecordingBus()


@pytest.fixture
def packaging():
    return RecordingPackaging()


@pytest.fixture
def settings():
    return AppSettings(QUANTITY_DECIMALS=2, PALLET_NAME_PREFIX="PAL")


@pytest.fixture
def make_coordinator(session, bus, packaging, settings):
    def _make(mode: StationMode = StationMode.SHIFT_ASSIGNED) -> RoutingCoordinator:
        return RoutingCoordinator(session, mode, bus=bus, packaging=packaging, settings=settings)

    return _make


@pytest.fixture
def shift(make_coordinator, catalog) -> RoutingCoordinator:
    return make_coordinator(StationMode.SHIFT_ASSIGNED)


@pytest.fixture
def self_service(make_coordinator, catalog) -> RoutingCoordinator:
    return make_coordinator(StationMode.SELF_SERVICE)


@pytest.fixture
def new_pallet(shift, catalog):
    """Create a pallet of the seeded part and return its id."""

    async def _create(quantity: str = "10", name: str = None) -> int:
        pallet = await shift.create_pallet(catalog.part_id, Decimal(quantity), name)
        return pallet.id

    return _create


async def open_assignment_counts(session: AsyncSession) -> List[int]:
    """Number of open assignments per pallet."""
    stmt = (
        select(func.count(MachineAssignment.id))
        .where(MachineAssignment.completed_at.is_(None))
        .group_by(MachineAssignment.pallet_id)
    )
    return list((await session.execute(stmt)).scalars())


async def open_placement_count(session: AsyncSession, cell_id: int) -> int:
    stmt = select(func.count(PalletBufferCell.id)).where(
        PalletBufferCell.cell_id == cell_id, PalletBufferCell.removed_at.is_(None)
    )
    return int((await session.execute(stmt)).scalar_one())
