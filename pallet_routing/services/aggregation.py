from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from pallet_routing.db.models.enums import PartStatus, StageStatus
from pallet_routing.db.models.production import Part, PartRouteProgress
from pallet_routing.db.models.routing import RouteStage
from pallet_routing.repositories.production import PalletRepository
from pallet_routing.repositories.progress import PartRouteProgressRepository, StageProgressRepository
from pallet_routing.services.route_graph import RouteGraph

logger = logging.getLogger(__name__)


@dataclass
class PartRollup:
    """Result of re-aggregating one part."""
    part_id: int
    previous_status: PartStatus
    status: PartStatus
    stages: Dict[int, StageStatus] = field(default_factory=dict)

    @property
    def status_changed(self) -> bool:
        return self.previous_status != self.status


class AggregationEngine:
    """
    Rolls pallet-level progress up into PartRouteProgress and Part.status.

    Aggregates are always derived from the pallets the part owns right now. A stage aggregate
    is COMPLETED iff every pallet has COMPLETED that stage, so adding a pallet re-opens it.
    Part status only moves forward: PENDING -> IN_PROGRESS -> COMPLETED.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.pallets = PalletRepository(session)
        self.progress = StageProgressRepository(session)
        self.part_progress = PartRouteProgressRepository(session)

    async def _stage_rows(self, part_id: int, route_stage_id: int):
        rows = await self.progress.list_for_part_stage(part_id, route_stage_id)
        return {r.pallet_id: r for r in rows}

    # PUBLIC_INTERFACE
    async def stage_completed_by_all(self, part_id: int, route_stage: RouteStage) -> bool:
        """True when the part has pallets and every one of them COMPLETED the stage."""
        pallets = await self.pallets.list_pallets_for_part(part_id)
        if not pallets:
            return False
        rows = await self._stage_rows(part_id, route_stage.id)
        return all(p.id in rows and rows[p.id].status == StageStatus.COMPLETED for p in pallets)

    # PUBLIC_INTERFACE
    async def route_completed_by_all(self, part_id: int, graph: RouteGraph) -> bool:
        """True when every pallet of the part completed every stage of the route."""
        if not len(graph):
            return False
        for rs in graph.stages:
            if not await self.stage_completed_by_all(part_id, rs):
                return False
        return True

    # PUBLIC_INTERFACE
    async def recompute_stage(self, part_id: int, route_stage: RouteStage, at: datetime) -> Optional[PartRouteProgress]:
        """
        Recompute the (part, route stage) aggregate from the part's current pallets.

        A part without pallets keeps whatever aggregate it has. An aggregate row is only
        created once some pallet has touched the stage.
        """
        pallets = await self.pallets.list_pallets_for_part(part_id)
        agg = await self.part_progress.get(part_id, route_stage.id)
        if not pallets:
            return agg

        rows = await self._stage_rows(part_id, route_stage.id)
        pallet_rows = [rows.get(p.id) for p in pallets]

        if all(r is not None and r.status == StageStatus.COMPLETED for r in pallet_rows):
            status = StageStatus.COMPLETED
            if agg is not None and agg.status == StageStatus.COMPLETED and agg.completed_at is not None:
                completed_at = agg.completed_at
            else:
                completed_at = at
        elif any(r is not None and r.status != StageStatus.NOT_PROCESSED for r in pallet_rows):
            status, completed_at = StageStatus.IN_PROGRESS, None
        elif agg is not None:
            status, completed_at = StageStatus.PENDING, None
        else:
            return None

        if agg is None:
            agg = await self.part_progress.create(
                part_id=part_id, route_stage_id=route_stage.id, status=status, completed_at=completed_at
            )
        elif agg.status != status or agg.completed_at != completed_at:
            agg.status = status
            agg.completed_at = completed_at
            await self.part_progress.flush()
        return agg

    # PUBLIC_INTERFACE
    async def refresh_part(self, part: Part, graph: RouteGraph, at: datetime) -> PartRollup:
        """Recompute every stage aggregate of the part, then its status."""
        previous = part.status
        stages: Dict[int, StageStatus] = {}
        for rs in graph.stages:
            agg = await self.recompute_stage(part.id, rs, at)
            if agg is not None:
                stages[rs.id] = agg.status

        if previous != PartStatus.COMPLETED:
            if len(graph) and all(stages.get(rs.id) == StageStatus.COMPLETED for rs in graph.stages):
                part.status = PartStatus.COMPLETED
            elif previous == PartStatus.PENDING and await self._any_started(part.id):
                part.status = PartStatus.IN_PROGRESS
            await self.pallets.flush()

        if part.status != previous:
            logger.info("Part %s status %s -> %s", part.id, previous.value, part.status.value)
        return PartRollup(part_id=part.id, previous_status=previous, status=part.status, stages=stages)

    async def _any_started(self, part_id: int) -> bool:
        rows = await self.progress.list_for_part(part_id)
        return any(r.status != StageStatus.NOT_PROCESSED for r in rows)

    # PUBLIC_INTERFACE
    async def completion_percent(self, part_id: int, graph: RouteGraph) -> Decimal:
        """Share of route stages whose aggregate is COMPLETED, as a percentage with two decimals."""
        if not len(graph):
            return Decimal("0.00")
        done = {
            row.route_stage_id
            for row in await self.part_progress.list_for_part(part_id)
            if row.status == StageStatus.COMPLETED
        }
        completed = sum(1 for rs in graph.stages if rs.id in done)
        return (Decimal(completed) * Decimal(100) / Decimal(len(graph))).quantize(Decimal("0.01"))

    async def list_aggregates(self, part_id: int) -> List[PartRouteProgress]:
        return await self.part_progress.list_for_part(part_id)
