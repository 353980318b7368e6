from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from pallet_routing.core.errors import (
    CompletedTaskImmutable,
    MachineNotCapable,
    NoActiveAssignment,
    PalletBusyElsewhere,
)
from pallet_routing.db.models.enums import StageStatus, StationMode
from pallet_routing.db.models.production import MachineAssignment
from pallet_routing.db.models.routing import Machine, RouteStage
from pallet_routing.repositories.assignment import AssignmentRepository
from pallet_routing.repositories.route import MachineRepository

logger = logging.getLogger(__name__)


@dataclass
class AssignmentChange:
    """Outcome of an assign/move call."""
    assignment: MachineAssignment
    created: bool
    # Machine whose open assignment was closed to make room, if any.
    released_machine_id: Optional[int] = None


class AssignmentLedger:
    """Binds each pallet to at most one open machine assignment."""

    def __init__(self, session: AsyncSession) -> None:
        self.repo = AssignmentRepository(session)
        self.machines = MachineRepository(session)

    # PUBLIC_INTERFACE
    async def ensure_capable(self, machine: Machine, route_stage: RouteStage) -> None:
        """Raise MachineNotCapable unless the machine executes the route stage (stage or sub-stage)."""
        if not await self.machines.can_execute(machine.id, route_stage):
            raise MachineNotCapable(
                f"Machine {machine.name} cannot execute route stage {route_stage.id}",
                details={
                    "machine_id": machine.id,
                    "route_stage_id": route_stage.id,
                    "stage_id": route_stage.stage_id,
                    "substage_id": route_stage.substage_id,
                },
            )

    # PUBLIC_INTERFACE
    async def open_for(self, pallet_id: int) -> Optional[MachineAssignment]:
        """The pallet's open assignment, if any."""
        return await self.repo.get_open_for_pallet(pallet_id)

    # PUBLIC_INTERFACE
    async def assign(
        self,
        pallet_id: int,
        machine: Machine,
        route_stage: RouteStage,
        *,
        mode: StationMode,
        stage_status: StageStatus,
        at: datetime,
    ) -> AssignmentChange:
        """
        Open an assignment of the pallet on ``machine`` for ``route_stage``.

        Parameters:
          stage_status: current status of the pallet's row for ``route_stage``. A pallet already
            IN_PROGRESS on another machine is busy there; otherwise a shift re-route closes the
            stale assignment. Self-service stations never take a pallet held by another machine.

        Returns:
          AssignmentChange; ``created`` is False when the pallet was already open on this machine.
        """
        await self.ensure_capable(machine, route_stage)

        current = await self.repo.get_open_for_pallet(pallet_id)
        if current is not None and current.machine_id == machine.id:
            logger.debug("Pallet %s already assigned to machine %s", pallet_id, machine.id)
            return AssignmentChange(assignment=current, created=False)

        released: Optional[int] = None
        if current is not None:
            busy = mode == StationMode.SELF_SERVICE or stage_status == StageStatus.IN_PROGRESS
            if busy:
                raise PalletBusyElsewhere(
                    f"Pallet {pallet_id} is held by machine {current.machine_id}",
                    details={"pallet_id": pallet_id, "machine_id": current.machine_id, "assignment_id": current.id},
                )
            released = current.machine_id
            await self.repo.close(current, at)
            logger.info("Closed stale assignment %s of pallet %s on machine %s", current.id, pallet_id, released)

        assignment = await self.repo.create(pallet_id=pallet_id, machine_id=machine.id, assigned_at=at)
        logger.info("Pallet %s assigned to machine %s (assignment %s)", pallet_id, machine.id, assignment.id)
        return AssignmentChange(assignment=assignment, created=True, released_machine_id=released)

    # PUBLIC_INTERFACE
    async def complete(self, pallet_id: int, machine_id: int, at: datetime) -> MachineAssignment:
        """Close the pallet's open assignment on the machine."""
        assignment = await self.require_open(pallet_id, machine_id)
        await self.repo.close(assignment, at)
        logger.info("Assignment %s of pallet %s closed on machine %s", assignment.id, pallet_id, machine_id)
        return assignment

    async def require_open(self, pallet_id: int, machine_id: int) -> MachineAssignment:
        assignment = await self.repo.get_open_on_machine(pallet_id, machine_id)
        if assignment is None:
            raise NoActiveAssignment(
                f"Pallet {pallet_id} has no open assignment on machine {machine_id}",
                details={"pallet_id": pallet_id, "machine_id": machine_id},
            )
        return assignment

    async def require_movable(self, pallet_id: int) -> MachineAssignment:
        """The pallet's latest assignment, which must still be open."""
        latest = await self.repo.get_latest_for_pallet(pallet_id)
        if latest is None:
            raise NoActiveAssignment(
                f"Pallet {pallet_id} has never been assigned to a machine",
                details={"pallet_id": pallet_id},
            )
        if latest.completed_at is not None:
            raise CompletedTaskImmutable(
                f"Assignment {latest.id} of pallet {pallet_id} is already completed",
                details={"pallet_id": pallet_id, "assignment_id": latest.id, "machine_id": latest.machine_id},
            )
        return latest

    # PUBLIC_INTERFACE
    async def move(
        self, pallet_id: int, to_machine: Machine, route_stage: RouteStage, at: datetime
    ) -> AssignmentChange:
        """
        Re-route the pallet's current assignment to ``to_machine``.

        The pallet's latest assignment must still be open; a closed one belongs to finished work.
        """
        latest = await self.require_movable(pallet_id)
        await self.ensure_capable(to_machine, route_stage)

        if latest.machine_id == to_machine.id:
            return AssignmentChange(assignment=latest, created=False)

        released = latest.machine_id
        await self.repo.close(latest, at)
        assignment = await self.repo.create(pallet_id=pallet_id, machine_id=to_machine.id, assigned_at=at)
        logger.info("Pallet %s moved from machine %s to machine %s", pallet_id, released, to_machine.id)
        return AssignmentChange(assignment=assignment, created=True, released_machine_id=released)

    # PUBLIC_INTERFACE
    async def open_copy(self, source_pallet_id: int, target_pallet_id: int, at: datetime) -> Optional[MachineAssignment]:
        """Open an assignment for a split-off pallet on the machine holding the source pallet."""
        source = await self.repo.get_open_for_pallet(source_pallet_id)
        if source is None:
            return None
        return await self.repo.create(pallet_id=target_pallet_id, machine_id=source.machine_id, assigned_at=at)
