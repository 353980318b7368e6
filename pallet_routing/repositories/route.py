from __future__ import annotations

from typing import Dict, List, Optional

from sqlalchemy import select

from pallet_routing.db.models.routing import (
    Machine,
    MachineStage,
    MachineSubstage,
    RouteStage,
    Stage,
)
from .base import BaseRepository


class RouteRepository(BaseRepository):
    """Read-only access to the route/stage catalog."""

    async def list_route_stages(self, route_id: int) -> List[RouteStage]:
        stmt = (
            select(RouteStage)
            .where(RouteStage.route_id == route_id)
            .order_by(RouteStage.sequence_number.asc())
        )
        return list(await self.scalars(stmt))

    async def stages_by_id(self, stage_ids: List[int]) -> Dict[int, Stage]:
        if not stage_ids:
            return {}
        stmt = select(Stage).where(Stage.id.in_(set(stage_ids)))
        return {s.id: s for s in await self.scalars(stmt)}


class MachineRepository(BaseRepository):
    """Machine capability registry."""

    async def get_machine(self, machine_id: int) -> Optional[Machine]:
        return await self.session.get(Machine, machine_id)

    async def stage_ids(self, machine_id: int) -> set[int]:
        stmt = select(MachineStage.stage_id).where(MachineStage.machine_id == machine_id)
        return set(await self.scalars(stmt))

    async def substage_ids(self, machine_id: int) -> set[int]:
        stmt = select(MachineSubstage.substage_id).where(MachineSubstage.machine_id == machine_id)
        return set(await self.scalars(stmt))

    async def can_execute(self, machine_id: int, route_stage: RouteStage) -> bool:
        """True when the machine is configured for the route stage's stage or sub-stage."""
        if route_stage.stage_id in await self.stage_ids(machine_id):
            return True
        if route_stage.substage_id is not None:
            return route_stage.substage_id in await self.substage_ids(machine_id)
        return False
