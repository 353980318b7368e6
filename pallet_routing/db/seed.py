"""
Database seeding utilities for a demo routing catalog.

Seeds:
- Stages Cutting, Bending, Welding and the final Packaging stage (Cutting has a Laser sub-stage)
- One route through the four stages
- Machines with stage/sub-stage capabilities (shift stations and self-service stations)
- Buffer cells, one of them reserved
- A sample part on the route

Usage:
  python -m pallet_routing.db.run_migrations upgrade head
  python -m pallet_routing.db.seed
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pallet_routing.db.models import (
    BufferCell,
    CellStatus,
    Machine,
    MachineStage,
    MachineStatus,
    MachineSubstage,
    Part,
    Route,
    RouteStage,
    Stage,
    Substage,
)
from pallet_routing.db.session import get_session_maker

logger = logging.getLogger(__name__)

ROUTE_NAME = "Bracket route"

STAGES: List[Tuple[str, bool]] = [
    ("Cutting", False),
    ("Bending", False),
    ("Welding", False),
    ("Packaging", True),
]

# name, stage capabilities, substage capabilities, status, self_service
MACHINES: List[Tuple[str, List[str], List[str], MachineStatus, bool]] = [
    ("Saw-01", ["Cutting"], [], MachineStatus.ACTIVE, False),
    ("Laser-01", [], ["Laser"], MachineStatus.ACTIVE, True),
    ("Press-01", ["Bending"], [], MachineStatus.ACTIVE, True),
    ("Press-02", ["Bending"], [], MachineStatus.MAINTENANCE, False),
    ("Welder-01", ["Welding"], [], MachineStatus.ACTIVE, False),
    ("Welder-02", ["Welding"], [], MachineStatus.ACTIVE, True),
    ("Packer-01", ["Packaging"], [], MachineStatus.ACTIVE, False),
]

# code, buffer, capacity, status
CELLS: List[Tuple[str, str, int, CellStatus]] = [
    ("A-01", "Buffer A", 2, CellStatus.AVAILABLE),
    ("A-02", "Buffer A", 2, CellStatus.AVAILABLE),
    ("B-01", "Buffer B", 1, CellStatus.AVAILABLE),
    ("R-01", "Buffer R", 1, CellStatus.RESERVED),
]


@dataclass
class SeededCatalog:
    """Ids of the seeded rows, keyed by name/code."""
    route_id: int
    stages: Dict[str, int] = field(default_factory=dict)
    route_stages: Dict[str, int] = field(default_factory=dict)
    machines: Dict[str, int] = field(default_factory=dict)
    cells: Dict[str, int] = field(default_factory=dict)
    part_id: int = 0


# PUBLIC_INTERFACE
async def seed_catalog(session: AsyncSession, part_quantity: Decimal = Decimal("100")) -> SeededCatalog:
    """
    Insert the demo catalog in the given session (flushes, does not commit).

    Returns:
        SeededCatalog with the ids of everything created.
    """
    stages: Dict[str, Stage] = {}
    for name, is_final in STAGES:
        stages[name] = Stage(name=name, is_final=is_final)
    session.add_all(stages.values())
    await session.flush()

    laser = Substage(stage_id=stages["Cutting"].id, name="Laser")
    route = Route(name=ROUTE_NAME)
    session.add_all([laser, route])
    await session.flush()

    route_stages: Dict[str, RouteStage] = {}
    for seq, (name, _) in enumerate(STAGES, start=1):
        route_stages[name] = RouteStage(
            route_id=route.id,
            stage_id=stages[name].id,
            substage_id=laser.id if name == "Cutting" else None,
            sequence_number=seq,
        )
    session.add_all(route_stages.values())

    machines: Dict[str, Machine] = {}
    for name, _, _, status, self_service in MACHINES:
        machines[name] = Machine(name=name, status=status, self_service=self_service)
    session.add_all(machines.values())
    await session.flush()

    links = []
    for name, stage_names, substage_names, _, _ in MACHINES:
        links.extend(MachineStage(machine_id=machines[name].id, stage_id=stages[s].id) for s in stage_names)
        links.extend(MachineSubstage(machine_id=machines[name].id, substage_id=laser.id) for s in substage_names)
    session.add_all(links)

    cells: Dict[str, BufferCell] = {}
    for code, buffer_name, capacity, status in CELLS:
        cells[code] = BufferCell(code=code, buffer_name=buffer_name, capacity=capacity, status=status)
    session.add_all(cells.values())

    part = Part(name="Bracket BR-100", total_quantity=part_quantity, route_id=route.id)
    session.add(part)
    await session.flush()

    return SeededCatalog(
        route_id=route.id,
        stages={k: v.id for k, v in stages.items()},
        route_stages={k: v.id for k, v in route_stages.items()},
        machines={k: v.id for k, v in machines.items()},
        cells={k: v.id for k, v in cells.items()},
        part_id=part.id,
    )


# PUBLIC_INTERFACE
async def seed_all() -> None:
    """Seed the demo catalog unless the demo route already exists."""
    async with get_session_maker()() as session:
        existing = await session.execute(select(Route.id).where(Route.name == ROUTE_NAME))
        if existing.scalar_one_or_none() is not None:
            logger.info("Demo catalog already present; skipping seed")
            return
        catalog = await seed_catalog(session)
        await session.commit()
        logger.info("Seeded demo catalog: route=%s part=%s", catalog.route_id, catalog.part_id)


if __name__ == "__main__":
    asyncio.run(seed_all())
