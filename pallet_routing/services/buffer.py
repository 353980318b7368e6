from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from pallet_routing.core.errors import CellFull, CellUnavailable, NotFound
from pallet_routing.db.models.buffer import BufferCell, PalletBufferCell
from pallet_routing.db.models.enums import CellStatus
from pallet_routing.repositories.buffer import BufferRepository

logger = logging.getLogger(__name__)


def cell_status_for(cell: BufferCell, load: int) -> CellStatus:
    """OCCUPIED iff load reaches capacity; a RESERVED cell keeps its reservation."""
    if cell.status == CellStatus.RESERVED:
        return CellStatus.RESERVED
    return CellStatus.OCCUPIED if load >= cell.capacity else CellStatus.AVAILABLE


@dataclass
class Placement:
    """Outcome of a place() call."""
    placement: PalletBufferCell
    previous_cell_id: Optional[int]
    created: bool


class BufferLedger:
    """
    Tracks which pallet sits in which buffer cell.

    A pallet has at most one open placement, and the open placements of a cell never
    exceed its capacity. ``current_load`` is always recomputed from the open placements
    still present, never adjusted by arithmetic.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.repo = BufferRepository(session)

    async def _lock_cells(self, cell_ids: Iterable[int]) -> Dict[int, BufferCell]:
        # Fixed lock order keeps two opposite moves from deadlocking.
        cells: Dict[int, BufferCell] = {}
        for cell_id in sorted(set(cell_ids)):
            cell = await self.repo.get_cell_for_update(cell_id)
            if cell is None:
                raise NotFound("BufferCell", cell_id)
            cells[cell_id] = cell
        return cells

    # PUBLIC_INTERFACE
    async def load(self, cell_id: int) -> int:
        """Current load of a cell: the count of its open placements."""
        return await self.repo.count_open_placements(cell_id)

    # PUBLIC_INTERFACE
    async def refresh_cell(self, cell: BufferCell) -> BufferCell:
        """Recompute and persist a cell's load and status from its open placements."""
        load = await self.load(cell.id)
        cell.current_load = load
        cell.status = cell_status_for(cell, load)
        await self.repo.flush()
        return cell

    # PUBLIC_INTERFACE
    async def place(self, pallet_id: int, cell_id: int, at: datetime) -> Placement:
        """
        Put a pallet into a cell, closing its placement elsewhere.

        Idempotent when the pallet already sits in the cell.
        """
        current = await self.repo.get_open_placement(pallet_id)
        lock_ids = [cell_id] + ([current.cell_id] if current is not None else [])
        cells = await self._lock_cells(lock_ids)
        cell = cells[cell_id]

        if cell.status == CellStatus.RESERVED:
            raise CellUnavailable(
                f"Buffer cell {cell.code} is reserved",
                details={"cell_id": cell.id, "status": cell.status.value},
            )

        already_here = current is not None and current.cell_id == cell.id
        effective_load = await self.load(cell.id) + (0 if already_here else 1)
        if effective_load > cell.capacity:
            raise CellFull(
                f"Buffer cell {cell.code} is full ({cell.capacity})",
                details={"cell_id": cell.id, "capacity": cell.capacity, "requested_load": effective_load},
            )

        previous_cell_id: Optional[int] = None
        if current is not None and not already_here:
            previous_cell_id = current.cell_id
            await self.repo.close_placement(current, at)
            await self.refresh_cell(cells[previous_cell_id])

        if already_here:
            placement, created = current, False
        else:
            placement = await self.repo.create_placement(pallet_id=pallet_id, cell_id=cell.id, placed_at=at)
            created = True

        await self.refresh_cell(cell)
        logger.info(
            "Pallet %s placed in cell %s (load %d/%d, %s)",
            pallet_id, cell.code, cell.current_load, cell.capacity, cell.status.value,
        )
        return Placement(placement=placement, previous_cell_id=previous_cell_id, created=created)

    # PUBLIC_INTERFACE
    async def evict(self, pallet_id: int, at: datetime) -> Optional[int]:
        """Close the pallet's open placement, if any. Returns the vacated cell id."""
        current = await self.repo.get_open_placement(pallet_id)
        if current is None:
            return None
        cells = await self._lock_cells([current.cell_id])
        await self.repo.close_placement(current, at)
        cell = await self.refresh_cell(cells[current.cell_id])
        logger.info("Pallet %s removed from cell %s (load %d/%d)", pallet_id, cell.code, cell.current_load, cell.capacity)
        return cell.id
