from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from pallet_routing.core.errors import (
    AlreadyCompleted,
    CompletedTaskImmutable,
    InvalidTransition,
    SequenceViolation,
)
from pallet_routing.db.models.enums import StageStatus
from pallet_routing.db.models.production import PalletStageProgress
from pallet_routing.db.models.routing import RouteStage
from pallet_routing.repositories.progress import StageProgressRepository
from pallet_routing.services.route_graph import RouteGraph

logger = logging.getLogger(__name__)


class StageProgressTracker:
    """
    Per-pallet stage state machine.

    NOT_PROCESSED -> PENDING -> IN_PROGRESS -> COMPLETED (terminal). PENDING is only
    entered through a supervisor assignment; self-service stations go straight from
    NOT_PROCESSED to IN_PROGRESS. Rows are created lazily, on first touch of a stage.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.repo = StageProgressRepository(session)

    # PUBLIC_INTERFACE
    async def ensure_progress(self, pallet_id: int, route_stage: RouteStage) -> PalletStageProgress:
        """Return the pallet's row for the stage, creating it at NOT_PROCESSED if missing."""
        row = await self.repo.get(pallet_id, route_stage.id)
        if row is None:
            row = await self.repo.create(pallet_id=pallet_id, route_stage_id=route_stage.id)
            logger.debug("Seeded progress pallet=%s route_stage=%s", pallet_id, route_stage.id)
        return row

    # PUBLIC_INTERFACE
    async def current_target(self, pallet_id: int, graph: RouteGraph) -> Optional[RouteStage]:
        """First route stage the pallet has not COMPLETED, or None when the route is done."""
        completed = {
            row.route_stage_id
            for row in await self.repo.list_for_pallet(pallet_id)
            if row.status == StageStatus.COMPLETED
        }
        for rs in graph.stages:
            if rs.id not in completed:
                return rs
        return None

    async def check_sequence(self, pallet_id: int, route_stage: RouteStage, graph: RouteGraph) -> None:
        """Raise SequenceViolation unless the immediately preceding stage is COMPLETED."""
        previous = graph.previous(route_stage)
        if previous is None:
            return
        prev_row = await self.repo.get(pallet_id, previous.id)
        if prev_row is None or prev_row.status != StageStatus.COMPLETED:
            raise SequenceViolation(
                f"Previous stage (sequence {previous.sequence_number}) is not completed for pallet {pallet_id}",
                details={
                    "pallet_id": pallet_id,
                    "route_stage_id": route_stage.id,
                    "previous_route_stage_id": previous.id,
                },
            )

    # PUBLIC_INTERFACE
    async def advance_to_in_progress(
        self, pallet_id: int, route_stage: RouteStage, graph: RouteGraph
    ) -> PalletStageProgress:
        """NOT_PROCESSED | PENDING -> IN_PROGRESS."""
        await self.check_sequence(pallet_id, route_stage, graph)
        row = await self.ensure_progress(pallet_id, route_stage)
        if row.status == StageStatus.COMPLETED:
            raise AlreadyCompleted(
                f"Stage {route_stage.id} is already completed for pallet {pallet_id}",
                details={"pallet_id": pallet_id, "route_stage_id": route_stage.id},
            )
        if row.status not in (StageStatus.NOT_PROCESSED, StageStatus.PENDING):
            raise InvalidTransition(
                f"Cannot start stage {route_stage.id} for pallet {pallet_id} from {row.status.value}",
                details={"pallet_id": pallet_id, "route_stage_id": route_stage.id, "status": row.status.value},
            )
        row.status = StageStatus.IN_PROGRESS
        await self.repo.flush()
        return row

    # PUBLIC_INTERFACE
    async def mark_pending(self, pallet_id: int, route_stage: RouteStage, graph: RouteGraph) -> PalletStageProgress:
        """
        Queue the stage for a supervisor-assigned machine.

        Legal from NOT_PROCESSED, and from PENDING/IN_PROGRESS when work is re-routed
        (work is considered not yet started on the new machine).
        """
        await self.check_sequence(pallet_id, route_stage, graph)
        row = await self.ensure_progress(pallet_id, route_stage)
        if row.status == StageStatus.COMPLETED:
            raise CompletedTaskImmutable(
                f"Stage {route_stage.id} is already completed for pallet {pallet_id}",
                details={"pallet_id": pallet_id, "route_stage_id": route_stage.id},
            )
        row.status = StageStatus.PENDING
        await self.repo.flush()
        return row

    # PUBLIC_INTERFACE
    async def complete(
        self, pallet_id: int, route_stage: RouteStage, graph: RouteGraph, at: datetime
    ) -> PalletStageProgress:
        """IN_PROGRESS -> COMPLETED; completing twice is rejected, never ignored."""
        await self.check_sequence(pallet_id, route_stage, graph)
        row = await self.ensure_progress(pallet_id, route_stage)
        if row.status == StageStatus.COMPLETED:
            raise AlreadyCompleted(
                f"Stage {route_stage.id} is already completed for pallet {pallet_id}",
                details={"pallet_id": pallet_id, "route_stage_id": route_stage.id},
            )
        if row.status != StageStatus.IN_PROGRESS:
            raise InvalidTransition(
                f"Stage {route_stage.id} for pallet {pallet_id} is {row.status.value}, not IN_PROGRESS",
                details={"pallet_id": pallet_id, "route_stage_id": route_stage.id, "status": row.status.value},
            )
        row.status = StageStatus.COMPLETED
        row.completed_at = at
        await self.repo.flush()
        return row

    # PUBLIC_INTERFACE
    async def seed_next_if_final(
        self, pallet_id: int, route_stage: RouteStage, graph: RouteGraph
    ) -> Optional[PalletStageProgress]:
        """
        Pre-create the next stage's row only when that stage is the final (packaging) one.

        Intermediate stages stay unseeded until first touched so that stations do not
        see work as pending before it reaches them.
        """
        nxt = graph.next(route_stage)
        if nxt is None or not graph.is_final(nxt):
            return None
        return await self.ensure_progress(pallet_id, nxt)

    # PUBLIC_INTERFACE
    async def copy_snapshot(
        self, source_pallet_id: int, target_pallet_id: int, *, include_open: bool
    ) -> Dict[int, PalletStageProgress]:
        """
        Copy the source pallet's progress rows onto a freshly split pallet.

        COMPLETED history is always copied (the parts already passed those stages);
        open rows (NOT_PROCESSED/PENDING/IN_PROGRESS) only when ``include_open``.
        """
        existing = {r.route_stage_id: r for r in await self.repo.list_for_pallet(target_pallet_id)}
        copied: Dict[int, PalletStageProgress] = {}
        for row in await self.repo.list_for_pallet(source_pallet_id):
            if row.status != StageStatus.COMPLETED and not include_open:
                continue
            target = existing.get(row.route_stage_id)
            if target is None:
                target = await self.repo.create(
                    pallet_id=target_pallet_id,
                    route_stage_id=row.route_stage_id,
                    status=row.status,
                    completed_at=row.completed_at,
                )
            else:
                target.status = row.status
                target.completed_at = row.completed_at
            copied[row.route_stage_id] = target
        await self.repo.flush()
        return copied
