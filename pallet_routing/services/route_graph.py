from __future__ import annotations

from dataclasses import dataclass
from typing import FrozenSet, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from pallet_routing.db.models.routing import RouteStage
from pallet_routing.repositories.route import RouteRepository


@dataclass(frozen=True)
class RouteGraph:
    """Ordered, read-only view of a route's stages."""

    route_id: int
    stages: Tuple[RouteStage, ...]
    final_route_stage_ids: FrozenSet[int]

    def __len__(self) -> int:
        return len(self.stages)

    @property
    def first(self) -> Optional[RouteStage]:
        return self.stages[0] if self.stages else None

    @property
    def last(self) -> Optional[RouteStage]:
        return self.stages[-1] if self.stages else None

    def get(self, route_stage_id: int) -> Optional[RouteStage]:
        for rs in self.stages:
            if rs.id == route_stage_id:
                return rs
        return None

    def index_of(self, route_stage: RouteStage) -> int:
        for i, rs in enumerate(self.stages):
            if rs.id == route_stage.id:
                return i
        raise ValueError(f"route stage {route_stage.id} is not part of route {self.route_id}")

    def previous(self, route_stage: RouteStage) -> Optional[RouteStage]:
        i = self.index_of(route_stage)
        return self.stages[i - 1] if i > 0 else None

    def next(self, route_stage: RouteStage) -> Optional[RouteStage]:
        i = self.index_of(route_stage)
        return self.stages[i + 1] if i + 1 < len(self.stages) else None

    def is_final(self, route_stage: RouteStage) -> bool:
        return route_stage.id in self.final_route_stage_ids


async def load_route_graph(session: AsyncSession, route_id: int) -> RouteGraph:
    """Load a route's stages ordered by sequence number, with final-stage flags resolved."""
    repo = RouteRepository(session)
    stages = await repo.list_route_stages(route_id)
    catalog = await repo.stages_by_id([rs.stage_id for rs in stages])
    final_ids = frozenset(rs.id for rs in stages if rs.stage_id in catalog and catalog[rs.stage_id].is_final)
    return RouteGraph(route_id=route_id, stages=tuple(stages), final_route_stage_ids=final_ids)
