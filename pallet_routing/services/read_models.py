from __future__ import annotations

import logging
from decimal import Decimal
from typing import Dict, List

from sqlalchemy.ext.asyncio import AsyncSession

from pallet_routing.core.errors import NotFound
from pallet_routing.db.models.buffer import BufferCell
from pallet_routing.db.models.enums import StageStatus
from pallet_routing.db.models.routing import Machine
from pallet_routing.repositories.assignment import AssignmentRepository
from pallet_routing.repositories.buffer import BufferRepository
from pallet_routing.repositories.production import PalletRepository, PartRepository
from pallet_routing.repositories.progress import StageProgressRepository
from pallet_routing.repositories.qual import ReclamationRepository
from pallet_routing.repositories.route import MachineRepository
from pallet_routing.schemas.routing import (
    BufferCellOccupancy,
    MachineAssignments,
    OpenAssignmentRead,
    PalletCellRead,
    PalletMachineRead,
    PalletRead,
    PalletsByPart,
    PartProgressRead,
    PartStageRead,
    StageProgressRead,
)
from pallet_routing.services.aggregation import AggregationEngine
from pallet_routing.services.base import BaseService
from pallet_routing.services.progress import StageProgressTracker
from pallet_routing.services.route_graph import load_route_graph

logger = logging.getLogger(__name__)


class RoutingReadService(BaseService):
    """Read-only projections of the routing state for stations, supervisors and buffers."""

    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session)
        self.parts = PartRepository(session)
        self.pallets = PalletRepository(session)
        self.progress = StageProgressRepository(session)
        self.assignments = AssignmentRepository(session)
        self.buffer = BufferRepository(session)
        self.machines = MachineRepository(session)
        self.reclamations = ReclamationRepository(session)
        self.tracker = StageProgressTracker(session)
        self.aggregation = AggregationEngine(session)

    # PUBLIC_INTERFACE
    async def pallets_by_part(self, part_id: int) -> PalletsByPart:
        """
        Pallets of a part with their open buffer cell, open machine and current stage row.

        Returns:
          PalletsByPart including distributed/undistributed totals (outstanding defects excluded).
        """
        part = await self.parts.get_part(part_id)
        if part is None:
            raise NotFound("Part", part_id)
        graph = await load_route_graph(self.session, part.route_id)
        pallets = await self.pallets.list_pallets_for_part(part.id)
        ids = [p.id for p in pallets]

        placements = {pl.pallet_id: pl for pl in await self.buffer.list_open_placements_for_pallets(ids)}
        cells: Dict[int, BufferCell] = {}
        for pl in placements.values():
            if pl.cell_id not in cells:
                cells[pl.cell_id] = await self.buffer.get_cell(pl.cell_id)
        assignments = {a.pallet_id: a for a in await self.assignments.list_open_for_pallets(ids)}
        machines: Dict[int, Machine] = {}
        for a in assignments.values():
            if a.machine_id not in machines:
                machines[a.machine_id] = await self.machines.get_machine(a.machine_id)

        items: List[PalletRead] = []
        for p in pallets:
            item = PalletRead(id=p.id, part_id=p.part_id, name=p.name, quantity=p.quantity)
            pl = placements.get(p.id)
            if pl is not None:
                cell = cells[pl.cell_id]
                item.buffer_cell = PalletCellRead(
                    cell_id=cell.id, code=cell.code, buffer_name=cell.buffer_name, placed_at=pl.placed_at
                )
            a = assignments.get(p.id)
            if a is not None:
                item.machine = PalletMachineRead(
                    machine_id=a.machine_id,
                    name=machines[a.machine_id].name,
                    assignment_id=a.id,
                    assigned_at=a.assigned_at,
                )
            target = await self.tracker.current_target(p.id, graph)
            if target is not None:
                row = await self.progress.get(p.id, target.id)
                if row is not None:
                    item.current_stage = StageProgressRead.model_validate(row)
            items.append(item)

        distributed = sum((Decimal(p.quantity) for p in pallets), Decimal(0))
        outstanding = await self.reclamations.sum_defected(part.id) - await self.reclamations.sum_returned(part.id)
        return PalletsByPart(
            part_id=part.id,
            total_quantity=part.total_quantity,
            distributed_quantity=distributed,
            undistributed_quantity=Decimal(part.total_quantity) - distributed - outstanding,
            pallets=items,
            total=len(items),
        )

    # PUBLIC_INTERFACE
    async def open_assignments_by_machine(self, machine_id: int) -> MachineAssignments:
        """A station's open work list, oldest assignment first."""
        machine = await self.machines.get_machine(machine_id)
        if machine is None:
            raise NotFound("Machine", machine_id)
        items: List[OpenAssignmentRead] = []
        graphs = {}
        for a in await self.assignments.list_open_for_machine(machine.id):
            pallet = await self.pallets.get_pallet(a.pallet_id)
            if pallet is None:
                continue
            part = await self.parts.get_part(pallet.part_id)
            if part.route_id not in graphs:
                graphs[part.route_id] = await load_route_graph(self.session, part.route_id)
            target = await self.tracker.current_target(pallet.id, graphs[part.route_id])
            row = await self.progress.get(pallet.id, target.id) if target is not None else None
            items.append(
                OpenAssignmentRead(
                    assignment_id=a.id,
                    pallet_id=pallet.id,
                    pallet_name=pallet.name,
                    part_id=pallet.part_id,
                    quantity=pallet.quantity,
                    assigned_at=a.assigned_at,
                    route_stage_id=target.id if target is not None else None,
                    stage_status=row.status if row is not None else None,
                )
            )
        return MachineAssignments(machine_id=machine.id, assignments=items)

    # PUBLIC_INTERFACE
    async def buffer_occupancy(self) -> List[BufferCellOccupancy]:
        """Every buffer cell with its load recomputed from open placements."""
        result: List[BufferCellOccupancy] = []
        for cell in await self.buffer.list_cells():
            placements = await self.buffer.list_open_placements(cell.id)
            result.append(
                BufferCellOccupancy(
                    id=cell.id,
                    code=cell.code,
                    buffer_name=cell.buffer_name,
                    capacity=cell.capacity,
                    current_load=len(placements),
                    status=cell.status,
                    pallet_ids=[pl.pallet_id for pl in placements],
                )
            )
        return result

    # PUBLIC_INTERFACE
    async def part_progress(self, part_id: int) -> PartProgressRead:
        """Per-stage aggregate of a part along its route, plus completion percentage."""
        part = await self.parts.get_part(part_id)
        if part is None:
            raise NotFound("Part", part_id)
        graph = await load_route_graph(self.session, part.route_id)
        aggregates = {row.route_stage_id: row for row in await self.aggregation.list_aggregates(part.id)}
        stages: List[PartStageRead] = []
        for rs in graph.stages:
            agg = aggregates.get(rs.id)
            stages.append(
                PartStageRead(
                    route_stage_id=rs.id,
                    sequence_number=rs.sequence_number,
                    stage_id=rs.stage_id,
                    is_final=graph.is_final(rs),
                    status=agg.status if agg is not None else StageStatus.NOT_PROCESSED,
                    completed_at=agg.completed_at if agg is not None else None,
                )
            )
        percent = await self.aggregation.completion_percent(part.id, graph)
        return PartProgressRead(
            part_id=part.id, status=part.status, completion_percent=float(percent), stages=stages
        )
