from __future__ import annotations

from decimal import Decimal
from typing import List, Optional

from sqlalchemy import delete, func, select, update

from pallet_routing.db.models.production import (
    MachineAssignment,
    Pallet,
    PalletStageProgress,
    Part,
)
from pallet_routing.db.models.buffer import PalletBufferCell
from pallet_routing.db.models.quality import InventoryMovement, Reclamation
from .base import BaseRepository


class PartRepository(BaseRepository):
    """Repository for parts."""

    async def get_part(self, part_id: int) -> Optional[Part]:
        return await self.session.get(Part, part_id)

    async def get_part_for_update(self, part_id: int) -> Optional[Part]:
        stmt = (
            select(Part)
            .where(Part.id == part_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return await self.scalar_one_or_none(stmt)


class PalletRepository(BaseRepository):
    """Repository for pallets."""

    async def get_pallet(self, pallet_id: int) -> Optional[Pallet]:
        return await self.session.get(Pallet, pallet_id)

    async def get_pallet_for_update(self, pallet_id: int) -> Optional[Pallet]:
        """Load a pallet holding a row lock, serializing concurrent operations on it."""
        stmt = (
            select(Pallet)
            .where(Pallet.id == pallet_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return await self.scalar_one_or_none(stmt)

    async def list_pallets_for_part(self, part_id: int) -> List[Pallet]:
        stmt = select(Pallet).where(Pallet.part_id == part_id).order_by(Pallet.id.asc())
        return list(await self.scalars(stmt))

    async def sum_quantity_for_part(self, part_id: int) -> Decimal:
        stmt = select(func.coalesce(func.sum(Pallet.quantity), 0)).where(Pallet.part_id == part_id)
        return Decimal(str(await self.scalar_one(stmt)))

    async def create_pallet(self, *, part_id: int, name: str, quantity: Decimal) -> Pallet:
        pallet = Pallet(part_id=part_id, name=name, quantity=quantity)
        await self.add(pallet)
        return pallet

    async def delete_pallet(self, pallet: Pallet) -> None:
        """
        Delete a pallet and the rows it owns.

        Progress, assignment and placement history go with the pallet; defect records and
        inventory movements keep their part reference and lose the pallet link.
        Open buffer placements must be closed (and cell loads recomputed) by the caller first.
        """
        pallet_id = pallet.id
        await self.execute(delete(PalletStageProgress).where(PalletStageProgress.pallet_id == pallet_id))
        await self.execute(delete(MachineAssignment).where(MachineAssignment.pallet_id == pallet_id))
        await self.execute(delete(PalletBufferCell).where(PalletBufferCell.pallet_id == pallet_id))
        await self.execute(update(Reclamation).where(Reclamation.pallet_id == pallet_id).values(pallet_id=None))
        await self.execute(
            update(InventoryMovement).where(InventoryMovement.pallet_id == pallet_id).values(pallet_id=None)
        )
        await self.session.delete(pallet)
        await self.flush()
