from __future__ import annotations

from decimal import Decimal
from typing import List, Optional

from sqlalchemy import func, select

from pallet_routing.db.models.enums import MovementReason
from pallet_routing.db.models.quality import InventoryMovement, Reclamation
from .base import BaseRepository


class ReclamationRepository(BaseRepository):
    """Repository for defect records and inventory movements."""

    async def create_reclamation(
        self,
        *,
        part_id: int,
        pallet_id: Optional[int],
        route_stage_id: int,
        quantity: Decimal,
        machine_id: Optional[int] = None,
        reported_by_id: Optional[int] = None,
        note: Optional[str] = None,
    ) -> Reclamation:
        rec = Reclamation(
            part_id=part_id,
            pallet_id=pallet_id,
            route_stage_id=route_stage_id,
            quantity=quantity,
            machine_id=machine_id,
            reported_by_id=reported_by_id,
            note=note,
        )
        await self.add(rec)
        return rec

    async def create_movement(
        self,
        *,
        part_id: int,
        pallet_id: Optional[int],
        delta_quantity: Decimal,
        reason: MovementReason,
        reclamation_id: Optional[int] = None,
        return_to_route_stage_id: Optional[int] = None,
        user_id: Optional[int] = None,
    ) -> InventoryMovement:
        movement = InventoryMovement(
            part_id=part_id,
            pallet_id=pallet_id,
            delta_quantity=delta_quantity,
            reason=reason,
            reclamation_id=reclamation_id,
            return_to_route_stage_id=return_to_route_stage_id,
            user_id=user_id,
        )
        await self.add(movement)
        return movement

    async def list_for_part(self, part_id: int) -> List[Reclamation]:
        stmt = select(Reclamation).where(Reclamation.part_id == part_id).order_by(Reclamation.id.asc())
        return list(await self.scalars(stmt))

    async def sum_defected(self, part_id: int) -> Decimal:
        stmt = select(func.coalesce(func.sum(Reclamation.quantity), 0)).where(Reclamation.part_id == part_id)
        return Decimal(str(await self.scalar_one(stmt)))

    async def sum_returned(self, part_id: int) -> Decimal:
        stmt = select(func.coalesce(func.sum(InventoryMovement.delta_quantity), 0)).where(
            InventoryMovement.part_id == part_id,
            InventoryMovement.reason == MovementReason.RETURN_FROM_RECLAMATION,
            InventoryMovement.delta_quantity > 0,
        )
        return Decimal(str(await self.scalar_one(stmt)))
