from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from sqlalchemy import select

from pallet_routing.db.models.production import MachineAssignment
from .base import BaseRepository


class AssignmentRepository(BaseRepository):
    """Repository for machine assignments."""

    async def get_open_for_pallet(self, pallet_id: int) -> Optional[MachineAssignment]:
        stmt = select(MachineAssignment).where(
            MachineAssignment.pallet_id == pallet_id,
            MachineAssignment.completed_at.is_(None),
        )
        return await self.scalar_one_or_none(stmt)

    async def get_open_on_machine(self, pallet_id: int, machine_id: int) -> Optional[MachineAssignment]:
        stmt = select(MachineAssignment).where(
            MachineAssignment.pallet_id == pallet_id,
            MachineAssignment.machine_id == machine_id,
            MachineAssignment.completed_at.is_(None),
        )
        return await self.scalar_one_or_none(stmt)

    async def get_latest_for_pallet(self, pallet_id: int) -> Optional[MachineAssignment]:
        stmt = (
            select(MachineAssignment)
            .where(MachineAssignment.pallet_id == pallet_id)
            .order_by(MachineAssignment.id.desc())
            .limit(1)
        )
        return await self.scalar_one_or_none(stmt)

    async def list_open_for_machine(self, machine_id: int) -> List[MachineAssignment]:
        stmt = (
            select(MachineAssignment)
            .where(MachineAssignment.machine_id == machine_id, MachineAssignment.completed_at.is_(None))
            .order_by(MachineAssignment.assigned_at.asc(), MachineAssignment.id.asc())
        )
        return list(await self.scalars(stmt))

    async def list_open_for_pallets(self, pallet_ids: List[int]) -> List[MachineAssignment]:
        if not pallet_ids:
            return []
        stmt = select(MachineAssignment).where(
            MachineAssignment.pallet_id.in_(pallet_ids),
            MachineAssignment.completed_at.is_(None),
        )
        return list(await self.scalars(stmt))

    async def create(self, *, pallet_id: int, machine_id: int, assigned_at: datetime) -> MachineAssignment:
        assignment = MachineAssignment(pallet_id=pallet_id, machine_id=machine_id, assigned_at=assigned_at)
        await self.add(assignment)
        return assignment

    async def close(self, assignment: MachineAssignment, at: datetime) -> None:
        assignment.completed_at = at
        await self.flush()
