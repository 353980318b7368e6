from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import AsyncIterator, Dict, Iterable, List, Optional, Set

from sqlalchemy.ext.asyncio import AsyncSession

from pallet_routing.core.errors import (
    InsufficientQuantity,
    InvalidQuantity,
    MachineInactive,
    NotFound,
    OverAllocation,
    PartMismatch,
    RouteCompleted,
    StationModeViolation,
    ValidationError,
)
from pallet_routing.core.logging import station_mode_var
from pallet_routing.core.settings import AppSettings, get_app_settings
from pallet_routing.db.models.buffer import PalletBufferCell
from pallet_routing.db.models.enums import MachineStatus, MovementReason, StageStatus, StationMode
from pallet_routing.db.models.production import MachineAssignment, Pallet, Part
from pallet_routing.db.models.routing import Machine, RouteStage
from pallet_routing.repositories.production import PalletRepository, PartRepository
from pallet_routing.repositories.qual import ReclamationRepository
from pallet_routing.repositories.route import MachineRepository
from pallet_routing.schemas.common import plain_number
from pallet_routing.schemas.realtime import DomainEvent
from pallet_routing.schemas.routing import (
    AssignmentRead,
    CompletionResult,
    DefectResult,
    Distribution,
    PalletSummary,
    RedistributeResult,
    ReturnResult,
    StageProgressRead,
)
from pallet_routing.services.aggregation import AggregationEngine, PartRollup
from pallet_routing.services.assignment import AssignmentChange, AssignmentLedger
from pallet_routing.services.base import BaseService
from pallet_routing.services.buffer import BufferLedger
from pallet_routing.services.packaging import BusPackagingQueue, PackagingQueue
from pallet_routing.services.progress import StageProgressTracker
from pallet_routing.services.realtime import NotificationBus, cell_topic, machine_topic, part_topic
from pallet_routing.services.route_graph import RouteGraph, load_route_graph

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class _Operation:
    """Per-call scratch state: events to publish and parts to hand to packaging after commit."""
    name: str
    events: List[DomainEvent]
    at: datetime
    ready_parts: Set[int] = field(default_factory=set)

    def emit(self, event: str, topics: Iterable[str], **payload) -> None:
        self.events.append(DomainEvent(event=event, topics=list(dict.fromkeys(topics)), payload=payload, at=self.at))


class RoutingCoordinator(BaseService):
    """
    Orchestrates routing operations across the stage, assignment, buffer and aggregation ledgers.

    One coordinator serves both station modes; ``mode`` decides whether work enters through a
    supervisor shift assignment (PENDING first) or is picked directly by a self-service station,
    and whether pallets split off during redistribution inherit the station's open work.

    Every public operation is one unit of work: the pallet row is locked first, all ledgers are
    updated, then the transaction commits. Domain events and the packaging signal go out only
    after the commit.
    """

    def __init__(
        self,
        session: AsyncSession,
        mode: StationMode = StationMode.SHIFT_ASSIGNED,
        *,
        bus: Optional[NotificationBus] = None,
        packaging: Optional[PackagingQueue] = None,
        settings: Optional[AppSettings] = None,
    ) -> None:
        super().__init__(session, bus)
        self.mode = mode
        self.packaging: PackagingQueue = packaging if packaging is not None else BusPackagingQueue(self.bus)
        self.settings = settings or get_app_settings()
        self.parts = PartRepository(session)
        self.pallets = PalletRepository(session)
        self.machines = MachineRepository(session)
        self.reclamations = ReclamationRepository(session)
        self.progress = StageProgressTracker(session)
        self.assignments = AssignmentLedger(session)
        self.buffer = BufferLedger(session)
        self.aggregation = AggregationEngine(session)

    # ---- plumbing -----------------------------------------------------------

    @asynccontextmanager
    async def _operation(self, name: str) -> AsyncIterator[_Operation]:
        token = station_mode_var.set(self.mode.value)
        try:
            async with self.unit_of_work() as events:
                op = _Operation(name=name, events=events, at=utcnow())
                yield op
            await self._signal_packaging(op.ready_parts)
        finally:
            station_mode_var.reset(token)

    async def _signal_packaging(self, part_ids: Iterable[int]) -> None:
        for part_id in part_ids:
            try:
                await self.packaging.signal_part_ready(part_id)
            except Exception:
                logger.exception("Packaging signal failed for part %s", part_id)

    def _quantize(self, value: Decimal) -> Decimal:
        step = Decimal(1).scaleb(-self.settings.QUANTITY_DECIMALS)
        return Decimal(value).quantize(step)

    def _positive(self, value: Decimal) -> Decimal:
        q = self._quantize(value)
        if q <= 0:
            raise InvalidQuantity(f"Quantity must be positive, got {value}", details={"quantity": str(value)})
        return q

    def _require_shift_mode(self, operation: str) -> None:
        if self.mode != StationMode.SHIFT_ASSIGNED:
            raise StationModeViolation(
                f"{operation} is a supervisor operation and is not available to self-service stations",
                details={"operation": operation, "mode": self.mode.value},
            )

    async def _lock_pallet(self, pallet_id: int) -> Pallet:
        pallet = await self.pallets.get_pallet_for_update(pallet_id)
        if pallet is None:
            raise NotFound("Pallet", pallet_id)
        return pallet

    async def _lock_part(self, part_id: int) -> Part:
        part = await self.parts.get_part_for_update(part_id)
        if part is None:
            raise NotFound("Part", part_id)
        return part

    async def _machine(self, machine_id: int, *, active: bool = True) -> Machine:
        machine = await self.machines.get_machine(machine_id)
        if machine is None:
            raise NotFound("Machine", machine_id)
        if active and machine.status != MachineStatus.ACTIVE:
            raise MachineInactive(
                f"Machine {machine.name} is {machine.status.value}",
                details={"machine_id": machine.id, "status": machine.status.value},
            )
        return machine

    async def _target_stage(self, pallet: Pallet, graph: RouteGraph) -> RouteStage:
        target = await self.progress.current_target(pallet.id, graph)
        if target is None:
            raise RouteCompleted(
                f"Pallet {pallet.name} has completed its route",
                details={"pallet_id": pallet.id, "route_id": graph.route_id},
            )
        return target

    async def _stage_status(self, pallet_id: int, route_stage: RouteStage) -> StageStatus:
        row = await self.progress.repo.get(pallet_id, route_stage.id)
        return row.status if row is not None else StageStatus.NOT_PROCESSED

    async def _refresh(self, op: _Operation, part: Part, graph: RouteGraph) -> PartRollup:
        rollup = await self.aggregation.refresh_part(part, graph, op.at)
        if rollup.status_changed:
            op.emit(
                "part.status_changed",
                [part_topic(part.id)],
                part_id=part.id,
                previous=rollup.previous_status.value,
                status=rollup.status.value,
            )
        return rollup

    def _emit_assignment(self, op: _Operation, pallet: Pallet, change: AssignmentChange, action: str) -> None:
        topics = [machine_topic(change.assignment.machine_id), part_topic(pallet.part_id)]
        if change.released_machine_id is not None:
            topics.append(machine_topic(change.released_machine_id))
        op.emit(
            "assignment.changed",
            topics,
            action=action,
            assignment_id=change.assignment.id,
            pallet_id=pallet.id,
            machine_id=change.assignment.machine_id,
            released_machine_id=change.released_machine_id,
        )

    def _emit_pallet(self, op: _Operation, event: str, pallet_id: int, part_id: int, **extra) -> None:
        op.emit(event, [part_topic(part_id)], pallet_id=pallet_id, part_id=part_id, **extra)

    async def _part_remainder(self, part: Part) -> Decimal:
        """Undistributed quantity: total minus pallets minus defects not yet returned."""
        distributed = await self.pallets.sum_quantity_for_part(part.id)
        outstanding = await self.reclamations.sum_defected(part.id) - await self.reclamations.sum_returned(part.id)
        return self._quantize(Decimal(part.total_quantity) - distributed - outstanding)

    def _new_pallet_name(self, part: Part) -> str:
        """Next generated name for the part; the caller holds the part lock."""
        part.pallet_seq = (part.pallet_seq or 0) + 1
        return f"{self.settings.PALLET_NAME_PREFIX}-{part.id}-{part.pallet_seq}"

    async def _drop_pallet(self, op: _Operation, pallet: Pallet) -> None:
        """Delete an emptied pallet, vacating its buffer cell first."""
        pallet_id, part_id = pallet.id, pallet.part_id
        vacated = await self.buffer.evict(pallet_id, op.at)
        open_assignment = await self.assignments.open_for(pallet_id)
        await self.pallets.delete_pallet(pallet)
        topics = [part_topic(part_id)]
        if vacated is not None:
            topics.append(cell_topic(vacated))
        if open_assignment is not None:
            topics.append(machine_topic(open_assignment.machine_id))
        op.emit("pallet.deleted", topics, pallet_id=pallet_id, part_id=part_id, vacated_cell_id=vacated)
        logger.info("Pallet %s deleted (quantity exhausted)", pallet_id)

    # ---- station work -------------------------------------------------------

    # PUBLIC_INTERFACE
    async def start_processing(self, pallet_id: int, machine_id: int) -> MachineAssignment:
        """
        Start work on the pallet's current target stage at a machine.

        Opens (or reuses) the assignment, moves the stage to IN_PROGRESS and takes the pallet out
        of its buffer cell.

        Returns:
          The open MachineAssignment.
        """
        async with self._operation("start_processing") as op:
            pallet = await self._lock_pallet(pallet_id)
            machine = await self._machine(machine_id)
            if self.mode == StationMode.SELF_SERVICE and not machine.self_service:
                raise StationModeViolation(
                    f"Machine {machine.name} does not accept self-service work",
                    details={"machine_id": machine.id},
                )
            part = await self._lock_part(pallet.part_id)
            graph = await load_route_graph(self.session, part.route_id)
            target = await self._target_stage(pallet, graph)
            status = await self._stage_status(pallet.id, target)

            change = await self.assignments.assign(
                pallet.id, machine, target, mode=self.mode, stage_status=status, at=op.at
            )
            if status != StageStatus.IN_PROGRESS:
                row = await self.progress.advance_to_in_progress(pallet.id, target, graph)
                op.emit(
                    "stage.started",
                    [machine_topic(machine.id), part_topic(part.id)],
                    pallet_id=pallet.id,
                    route_stage_id=target.id,
                    machine_id=machine.id,
                    status=row.status.value,
                )
            if change.created:
                self._emit_assignment(op, pallet, change, "opened")

            vacated = await self.buffer.evict(pallet.id, op.at)
            if vacated is not None:
                op.emit(
                    "pallet.moved",
                    [cell_topic(vacated), part_topic(part.id)],
                    pallet_id=pallet.id,
                    part_id=part.id,
                    from_cell_id=vacated,
                    to_machine_id=machine.id,
                )

            await self._refresh(op, part, graph)
            assignment = change.assignment
        logger.info("Pallet %s started route stage %s on machine %s", pallet_id, target.id, machine_id)
        return assignment

    # PUBLIC_INTERFACE
    async def complete_processing(self, pallet_id: int, machine_id: int) -> CompletionResult:
        """
        Complete the pallet's current stage on the machine holding it.

        Closes the assignment, seeds the packaging stage row when it comes next, re-aggregates the
        part and queues the packaging signal once the whole part is ready for it.
        """
        async with self._operation("complete_processing") as op:
            pallet = await self._lock_pallet(pallet_id)
            machine = await self._machine(machine_id, active=False)
            await self.assignments.require_open(pallet.id, machine.id)
            part = await self._lock_part(pallet.part_id)
            graph = await load_route_graph(self.session, part.route_id)
            target = await self._target_stage(pallet, graph)

            row = await self.progress.complete(pallet.id, target, graph, op.at)
            assignment = await self.assignments.complete(pallet.id, machine.id, op.at)
            seeded = await self.progress.seed_next_if_final(pallet.id, target, graph)

            op.emit(
                "stage.completed",
                [machine_topic(machine.id), part_topic(part.id)],
                pallet_id=pallet.id,
                route_stage_id=target.id,
                machine_id=machine.id,
            )
            op.emit(
                "assignment.changed",
                [machine_topic(machine.id), part_topic(part.id)],
                action="closed",
                assignment_id=assignment.id,
                pallet_id=pallet.id,
                machine_id=machine.id,
            )

            rollup = await self._refresh(op, part, graph)

            nxt = graph.next(target)
            if nxt is None:
                ready = await self.aggregation.route_completed_by_all(part.id, graph)
            elif graph.is_final(nxt):
                ready = await self.aggregation.stage_completed_by_all(part.id, target)
            else:
                ready = False
            if ready:
                op.ready_parts.add(part.id)

            result = CompletionResult(
                assignment=AssignmentRead.model_validate(assignment),
                progress=StageProgressRead.model_validate(row),
                seeded_route_stage_id=seeded.route_stage_id if seeded is not None else None,
                part_status=rollup.status,
                ready_for_packaging=ready,
            )
        logger.info("Pallet %s completed route stage %s on machine %s", pallet_id, target.id, machine_id)
        return result

    # ---- supervisor operations ------------------------------------------------

    # PUBLIC_INTERFACE
    async def assign_to_machine(self, pallet_id: int, machine_id: int) -> MachineAssignment:
        """Issue a shift task: bind the pallet to a machine and queue its current stage as PENDING."""
        self._require_shift_mode("assign_to_machine")
        async with self._operation("assign_to_machine") as op:
            pallet = await self._lock_pallet(pallet_id)
            machine = await self._machine(machine_id)
            part = await self._lock_part(pallet.part_id)
            graph = await load_route_graph(self.session, part.route_id)
            target = await self._target_stage(pallet, graph)
            status = await self._stage_status(pallet.id, target)

            change = await self.assignments.assign(
                pallet.id, machine, target, mode=self.mode, stage_status=status, at=op.at
            )
            if status != StageStatus.IN_PROGRESS:
                await self.progress.mark_pending(pallet.id, target, graph)
                op.emit(
                    "stage.pending",
                    [machine_topic(machine.id), part_topic(part.id)],
                    pallet_id=pallet.id,
                    route_stage_id=target.id,
                    machine_id=machine.id,
                )
            if change.created:
                self._emit_assignment(op, pallet, change, "opened")
            await self._refresh(op, part, graph)
            assignment = change.assignment
        logger.info("Pallet %s assigned to machine %s for route stage %s", pallet_id, machine_id, target.id)
        return assignment

    # PUBLIC_INTERFACE
    async def move_to_machine(self, pallet_id: int, target_machine_id: int) -> MachineAssignment:
        """
        Re-route the pallet's open assignment to another machine.

        The stage goes back to PENDING: work is considered not yet started on the new machine.
        """
        self._require_shift_mode("move_to_machine")
        async with self._operation("move_to_machine") as op:
            pallet = await self._lock_pallet(pallet_id)
            machine = await self._machine(target_machine_id)
            await self.assignments.require_movable(pallet.id)
            part = await self._lock_part(pallet.part_id)
            graph = await load_route_graph(self.session, part.route_id)
            target = await self._target_stage(pallet, graph)

            change = await self.assignments.move(pallet.id, machine, target, op.at)
            await self.progress.mark_pending(pallet.id, target, graph)
            if change.created:
                self._emit_assignment(op, pallet, change, "moved")
            op.emit(
                "stage.pending",
                [machine_topic(machine.id), part_topic(part.id)],
                pallet_id=pallet.id,
                route_stage_id=target.id,
                machine_id=machine.id,
            )
            await self._refresh(op, part, graph)
            assignment = change.assignment
        logger.info("Pallet %s re-routed to machine %s", pallet_id, target_machine_id)
        return assignment

    # ---- buffer -----------------------------------------------------------------

    # PUBLIC_INTERFACE
    async def move_to_buffer(self, pallet_id: int, cell_id: int) -> PalletBufferCell:
        """Park the pallet in a buffer cell. Stage progress is left untouched."""
        async with self._operation("move_to_buffer") as op:
            pallet = await self._lock_pallet(pallet_id)
            placed = await self.buffer.place(pallet.id, cell_id, op.at)
            if placed.created:
                topics = [cell_topic(cell_id), part_topic(pallet.part_id)]
                if placed.previous_cell_id is not None:
                    topics.append(cell_topic(placed.previous_cell_id))
                op.emit(
                    "pallet.moved",
                    topics,
                    pallet_id=pallet.id,
                    part_id=pallet.part_id,
                    from_cell_id=placed.previous_cell_id,
                    to_cell_id=cell_id,
                )
            placement = placed.placement
        return placement

    # ---- quantities -------------------------------------------------------------

    # PUBLIC_INTERFACE
    async def create_pallet(self, part_id: int, quantity: Decimal, name: Optional[str] = None) -> Pallet:
        """Split a new pallet off the part's undistributed remainder."""
        async with self._operation("create_pallet") as op:
            qty = self._positive(quantity)
            part = await self._lock_part(part_id)
            remainder = await self._part_remainder(part)
            if qty > remainder:
                raise OverAllocation(
                    f"Requested {qty} exceeds undistributed quantity {remainder} of part {part.id}",
                    details={"part_id": part.id, "requested": str(qty), "available": str(remainder)},
                )
            graph = await load_route_graph(self.session, part.route_id)
            pallet = await self.pallets.create_pallet(
                part_id=part.id, name=name or self._new_pallet_name(part), quantity=qty
            )
            if graph.first is not None:
                await self.progress.ensure_progress(pallet.id, graph.first)
            self._emit_pallet(op, "pallet.created", pallet.id, part.id, name=pallet.name, quantity=plain_number(qty))
            await self._refresh(op, part, graph)
        logger.info("Pallet %s (%s) created for part %s with quantity %s", pallet.id, pallet.name, part_id, qty)
        return pallet

    # PUBLIC_INTERFACE
    async def redistribute(self, source_pallet_id: int, distributions: List[Distribution]) -> RedistributeResult:
        """
        Move quantity from one pallet onto existing pallets of the same part or onto new ones.

        New pallets always inherit the source's completed stages. On a self-service station they
        also take over its open stage rows and machine assignment, so the station's work list keeps
        showing them. The source pallet is deleted once emptied.
        """
        if not distributions:
            raise ValidationError("At least one distribution is required")
        async with self._operation("redistribute") as op:
            shares = [(self._positive(d.quantity), d) for d in distributions]
            target_ids = {d.target_pallet_id for _, d in shares if d.target_pallet_id is not None}
            if source_pallet_id in target_ids:
                raise ValidationError(
                    "A pallet cannot be redistributed onto itself", details={"pallet_id": source_pallet_id}
                )
            locked = {pid: await self._lock_pallet(pid) for pid in sorted(target_ids | {source_pallet_id})}
            source = locked[source_pallet_id]
            total = self._quantize(sum((q for q, _ in shares), Decimal(0)))
            available = self._quantize(Decimal(source.quantity))
            if total > available:
                raise OverAllocation(
                    f"Distributions total {total} exceeds pallet {source.name} quantity {available}",
                    details={"pallet_id": source.id, "requested": str(total), "available": str(available)},
                )

            targets: Dict[int, Pallet] = {}
            for target_id in sorted(target_ids):
                target = locked[target_id]
                if target.part_id != source.part_id:
                    raise PartMismatch(
                        f"Pallet {target.id} belongs to part {target.part_id}, not {source.part_id}",
                        details={"pallet_id": target.id, "part_id": target.part_id, "expected_part_id": source.part_id},
                    )
                targets[target_id] = target

            part = await self._lock_part(source.part_id)
            graph = await load_route_graph(self.session, part.route_id)
            inherit_open = self.mode == StationMode.SELF_SERVICE

            source.quantity = available - total
            summaries: List[PalletSummary] = []
            for qty, d in shares:
                if d.target_pallet_id is not None:
                    target = targets[d.target_pallet_id]
                    target.quantity = self._quantize(Decimal(target.quantity) + qty)
                    await self.pallets.flush()
                    summaries.append(PalletSummary(id=target.id, name=target.name, quantity=target.quantity))
                    self._emit_pallet(op, "pallet.updated", target.id, part.id, quantity=plain_number(target.quantity))
                    continue

                new = await self.pallets.create_pallet(
                    part_id=part.id, name=d.pallet_name or self._new_pallet_name(part), quantity=qty
                )
                await self.progress.copy_snapshot(source.id, new.id, include_open=inherit_open)
                current = await self.progress.current_target(new.id, graph)
                if current is not None:
                    await self.progress.ensure_progress(new.id, current)
                if inherit_open:
                    copied = await self.assignments.open_copy(source.id, new.id, op.at)
                    if copied is not None:
                        self._emit_assignment(op, new, AssignmentChange(assignment=copied, created=True), "opened")
                summaries.append(PalletSummary(id=new.id, name=new.name, quantity=new.quantity, created=True))
                self._emit_pallet(op, "pallet.created", new.id, part.id, name=new.name, quantity=plain_number(qty))

            source_id, source_quantity = source.id, source.quantity
            deleted = source_quantity <= 0
            if deleted:
                await self._drop_pallet(op, source)
            else:
                await self.pallets.flush()
                self._emit_pallet(op, "pallet.updated", source.id, part.id, quantity=plain_number(source_quantity))

            await self._refresh(op, part, graph)
            result = RedistributeResult(
                source_pallet_id=source_id,
                source_quantity=source_quantity,
                source_deleted=deleted,
                targets=summaries,
            )
        logger.info("Pallet %s redistributed into %d targets (deleted=%s)", source_pallet_id, len(summaries), deleted)
        return result

    # PUBLIC_INTERFACE
    async def report_defect(
        self,
        pallet_id: int,
        quantity: Decimal,
        route_stage_id: Optional[int] = None,
        *,
        machine_id: Optional[int] = None,
        reported_by_id: Optional[int] = None,
        note: Optional[str] = None,
    ) -> DefectResult:
        """
        Write off defective quantity from a pallet.

        Creates the reclamation and its inventory movement, reduces the pallet and deletes it once
        empty. The stage defaults to the pallet's current target stage.
        """
        async with self._operation("report_defect") as op:
            qty = self._positive(quantity)
            pallet = await self._lock_pallet(pallet_id)
            available = self._quantize(Decimal(pallet.quantity))
            if qty > available:
                raise InsufficientQuantity(
                    f"Defect quantity {qty} exceeds pallet {pallet.name} quantity {available}",
                    details={"pallet_id": pallet.id, "requested": str(qty), "available": str(available)},
                )
            part = await self._lock_part(pallet.part_id)
            graph = await load_route_graph(self.session, part.route_id)
            if route_stage_id is not None:
                stage = graph.get(route_stage_id)
                if stage is None:
                    raise NotFound("RouteStage", route_stage_id)
            else:
                stage = await self.progress.current_target(pallet.id, graph) or graph.last
                if stage is None:
                    raise NotFound("RouteStage", None)
            if machine_id is not None:
                await self._machine(machine_id, active=False)

            reclamation = await self.reclamations.create_reclamation(
                part_id=part.id,
                pallet_id=pallet.id,
                route_stage_id=stage.id,
                quantity=qty,
                machine_id=machine_id,
                reported_by_id=reported_by_id,
                note=note,
            )
            await self.reclamations.create_movement(
                part_id=part.id,
                pallet_id=pallet.id,
                delta_quantity=-qty,
                reason=MovementReason.DEFECT,
                reclamation_id=reclamation.id,
                user_id=reported_by_id,
            )
            op.emit(
                "defect.reported",
                [part_topic(part.id)] + ([machine_topic(machine_id)] if machine_id is not None else []),
                reclamation_id=reclamation.id,
                pallet_id=pallet.id,
                part_id=part.id,
                route_stage_id=stage.id,
                quantity=plain_number(qty),
            )

            pallet_ref = pallet.id
            remaining = available - qty
            pallet.quantity = remaining
            if remaining <= 0:
                await self._drop_pallet(op, pallet)
            else:
                await self.pallets.flush()
                self._emit_pallet(op, "pallet.updated", pallet.id, part.id, quantity=plain_number(remaining))

            await self._refresh(op, part, graph)
            result = DefectResult(
                reclamation_id=reclamation.id,
                pallet_id=pallet_ref,
                quantity=qty,
                remaining_quantity=remaining,
                pallet_deleted=remaining <= 0,
            )
        logger.info("Defect of %s reported on pallet %s (reclamation %s)", qty, pallet_id, result.reclamation_id)
        return result

    # PUBLIC_INTERFACE
    async def return_to_production(
        self,
        part_id: int,
        pallet_id: int,
        quantity: Decimal,
        route_stage_id: int,
        *,
        user_id: Optional[int] = None,
    ) -> ReturnResult:
        """Put previously written-off quantity back onto a pallet of the same part."""
        async with self._operation("return_to_production") as op:
            qty = self._positive(quantity)
            pallet = await self._lock_pallet(pallet_id)
            part = await self._lock_part(part_id)
            if pallet.part_id != part.id:
                raise PartMismatch(
                    f"Pallet {pallet.id} belongs to part {pallet.part_id}, not {part.id}",
                    details={"pallet_id": pallet.id, "part_id": pallet.part_id, "expected_part_id": part.id},
                )
            graph = await load_route_graph(self.session, part.route_id)
            if graph.get(route_stage_id) is None:
                raise NotFound("RouteStage", route_stage_id)

            returnable = self._quantize(
                await self.reclamations.sum_defected(part.id) - await self.reclamations.sum_returned(part.id)
            )
            if qty > returnable:
                raise InsufficientQuantity(
                    f"Only {returnable} of part {part.id} is written off and returnable, requested {qty}",
                    details={"part_id": part.id, "requested": str(qty), "available": str(returnable)},
                )

            movement = await self.reclamations.create_movement(
                part_id=part.id,
                pallet_id=pallet.id,
                delta_quantity=qty,
                reason=MovementReason.RETURN_FROM_RECLAMATION,
                return_to_route_stage_id=route_stage_id,
                user_id=user_id,
            )
            pallet.quantity = self._quantize(Decimal(pallet.quantity) + qty)
            await self.pallets.flush()
            self._emit_pallet(
                op, "pallet.updated", pallet.id, part.id,
                quantity=plain_number(pallet.quantity), returned=plain_number(qty),
            )
            result = ReturnResult(
                movement_id=movement.id,
                pallet_id=pallet.id,
                quantity=qty,
                new_quantity=pallet.quantity,
                remaining_to_return=returnable - qty,
            )
        logger.info("Returned %s of part %s to pallet %s", qty, part_id, pallet_id)
        return result
