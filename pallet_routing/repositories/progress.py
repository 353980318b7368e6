from __future__ import annotations

from typing import List, Optional

from sqlalchemy import select

from pallet_routing.db.models.enums import StageStatus
from pallet_routing.db.models.production import (
    Pallet,
    PalletStageProgress,
    PartRouteProgress,
)
from .base import BaseRepository


class StageProgressRepository(BaseRepository):
    """Repository for per-pallet stage progress rows."""

    async def get(self, pallet_id: int, route_stage_id: int) -> Optional[PalletStageProgress]:
        stmt = select(PalletStageProgress).where(
            PalletStageProgress.pallet_id == pallet_id,
            PalletStageProgress.route_stage_id == route_stage_id,
        )
        return await self.scalar_one_or_none(stmt)

    async def list_for_pallet(self, pallet_id: int) -> List[PalletStageProgress]:
        stmt = (
            select(PalletStageProgress)
            .where(PalletStageProgress.pallet_id == pallet_id)
            .order_by(PalletStageProgress.id.asc())
        )
        return list(await self.scalars(stmt))

    async def list_for_part_stage(self, part_id: int, route_stage_id: int) -> List[PalletStageProgress]:
        """Progress rows of every pallet currently belonging to the part, for one stage."""
        stmt = (
            select(PalletStageProgress)
            .join(Pallet, Pallet.id == PalletStageProgress.pallet_id)
            .where(Pallet.part_id == part_id, PalletStageProgress.route_stage_id == route_stage_id)
        )
        return list(await self.scalars(stmt))

    async def list_for_part(self, part_id: int) -> List[PalletStageProgress]:
        stmt = (
            select(PalletStageProgress)
            .join(Pallet, Pallet.id == PalletStageProgress.pallet_id)
            .where(Pallet.part_id == part_id)
        )
        return list(await self.scalars(stmt))

    async def create(
        self,
        *,
        pallet_id: int,
        route_stage_id: int,
        status: StageStatus = StageStatus.NOT_PROCESSED,
        completed_at=None,
    ) -> PalletStageProgress:
        row = PalletStageProgress(
            pallet_id=pallet_id,
            route_stage_id=route_stage_id,
            status=status,
            completed_at=completed_at,
        )
        await self.add(row)
        return row


class PartRouteProgressRepository(BaseRepository):
    """Repository for per-part aggregated stage progress."""

    async def get(self, part_id: int, route_stage_id: int) -> Optional[PartRouteProgress]:
        stmt = select(PartRouteProgress).where(
            PartRouteProgress.part_id == part_id,
            PartRouteProgress.route_stage_id == route_stage_id,
        )
        return await self.scalar_one_or_none(stmt)

    async def list_for_part(self, part_id: int) -> List[PartRouteProgress]:
        stmt = select(PartRouteProgress).where(PartRouteProgress.part_id == part_id)
        return list(await self.scalars(stmt))

    async def create(self, *, part_id: int, route_stage_id: int, status: StageStatus, completed_at=None) -> PartRouteProgress:
        row = PartRouteProgress(
            part_id=part_id, route_stage_id=route_stage_id, status=status, completed_at=completed_at
        )
        await self.add(row)
        return row
