from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from sqlalchemy import func, select

from pallet_routing.db.models.buffer import BufferCell, PalletBufferCell
from .base import BaseRepository


class BufferRepository(BaseRepository):
    """Repository for buffer cells and pallet placements."""

    async def get_cell(self, cell_id: int) -> Optional[BufferCell]:
        return await self.session.get(BufferCell, cell_id)

    async def get_cell_for_update(self, cell_id: int) -> Optional[BufferCell]:
        stmt = (
            select(BufferCell)
            .where(BufferCell.id == cell_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return await self.scalar_one_or_none(stmt)

    async def list_cells(self) -> List[BufferCell]:
        stmt = select(BufferCell).order_by(BufferCell.code.asc(), BufferCell.id.asc())
        return list(await self.scalars(stmt))

    async def get_open_placement(self, pallet_id: int) -> Optional[PalletBufferCell]:
        stmt = select(PalletBufferCell).where(
            PalletBufferCell.pallet_id == pallet_id,
            PalletBufferCell.removed_at.is_(None),
        )
        return await self.scalar_one_or_none(stmt)

    async def list_open_placements_for_pallets(self, pallet_ids: List[int]) -> List[PalletBufferCell]:
        if not pallet_ids:
            return []
        stmt = select(PalletBufferCell).where(
            PalletBufferCell.pallet_id.in_(pallet_ids),
            PalletBufferCell.removed_at.is_(None),
        )
        return list(await self.scalars(stmt))

    async def list_open_placements(self, cell_id: int) -> List[PalletBufferCell]:
        stmt = (
            select(PalletBufferCell)
            .where(PalletBufferCell.cell_id == cell_id, PalletBufferCell.removed_at.is_(None))
            .order_by(PalletBufferCell.placed_at.asc(), PalletBufferCell.id.asc())
        )
        return list(await self.scalars(stmt))

    async def count_open_placements(self, cell_id: int) -> int:
        stmt = select(func.count(PalletBufferCell.id)).where(
            PalletBufferCell.cell_id == cell_id,
            PalletBufferCell.removed_at.is_(None),
        )
        return int(await self.scalar_one(stmt))

    async def create_placement(self, *, pallet_id: int, cell_id: int, placed_at: datetime) -> PalletBufferCell:
        placement = PalletBufferCell(pallet_id=pallet_id, cell_id=cell_id, placed_at=placed_at)
        await self.add(placement)
        return placement

    async def close_placement(self, placement: PalletBufferCell, at: datetime) -> None:
        placement.removed_at = at
        await self.flush()
