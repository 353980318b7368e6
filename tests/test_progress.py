"""Tests for the per-pallet stage state machine."""

from datetime import datetime, timezone

import pytest
import pytest_asyncio

from pallet_routing.core.errors import (
    AlreadyCompleted,
    CompletedTaskImmutable,
    InvalidTransition,
    SequenceViolation,
)
from pallet_routing.db.models import StageStatus
from pallet_routing.services.progress import StageProgressTracker
from pallet_routing.services.route_graph import load_route_graph

NOW = datetime(2024, 5, 6, 7, 30, tzinfo=timezone.utc)


class TestRouteGraph:
    async def test_stages_ordered_with_final_flag(self, session, catalog):
        graph = await load_route_graph(session, catalog.route_id)

        assert [rs.id for rs in graph.stages] == [
            catalog.route_stages["Cutting"],
            catalog.route_stages["Bending"],
            catalog.route_stages["Welding"],
            catalog.route_stages["Packaging"],
        ]
        assert graph.is_final(graph.last)
        assert not graph.is_final(graph.first)
        assert graph.previous(graph.first) is None
        assert graph.next(graph.last) is None
        assert len(graph) == 4


class TestStageProgressTracker:
    @pytest_asyncio.fixture
    async def graph(self, session, catalog):
        return await load_route_graph(session, catalog.route_id)

    @pytest.fixture
    def tracker(self, session):
        return StageProgressTracker(session)

    async def _complete(self, tracker, pallet_id, graph, upto, start=0):
        for rs in graph.stages[start:upto]:
            await tracker.advance_to_in_progress(pallet_id, rs, graph)
            await tracker.complete(pallet_id, rs, graph, NOW)

    async def test_ensure_progress_creates_once(self, tracker, graph, new_pallet):
        pallet_id = await new_pallet()
        stage = graph.stages[1]

        first = await tracker.ensure_progress(pallet_id, stage)
        again = await tracker.ensure_progress(pallet_id, stage)

        assert first.id == again.id
        assert first.status == StageStatus.NOT_PROCESSED

    async def test_new_pallet_targets_first_stage(self, tracker, graph, new_pallet):
        pallet_id = await new_pallet()

        target = await tracker.current_target(pallet_id, graph)

        assert target.id == graph.first.id

    async def test_advance_from_not_processed_and_pending(self, tracker, graph, new_pallet):
        a = await new_pallet()
        b = await new_pallet()
        await tracker.mark_pending(b, graph.first, graph)

        row_a = await tracker.advance_to_in_progress(a, graph.first, graph)
        row_b = await tracker.advance_to_in_progress(b, graph.first, graph)

        assert row_a.status == StageStatus.IN_PROGRESS
        assert row_b.status == StageStatus.IN_PROGRESS

    async def test_advance_skipping_stage_is_sequence_violation(self, tracker, graph, new_pallet):
        pallet_id = await new_pallet()

        with pytest.raises(SequenceViolation) as exc:
            await tracker.advance_to_in_progress(pallet_id, graph.stages[1], graph)

        assert exc.value.rule == "previous_stage_not_completed"
        assert exc.value.details["previous_route_stage_id"] == graph.first.id

    async def test_advance_twice_is_invalid(self, tracker, graph, new_pallet):
        pallet_id = await new_pallet()
        await tracker.advance_to_in_progress(pallet_id, graph.first, graph)

        with pytest.raises(InvalidTransition):
            await tracker.advance_to_in_progress(pallet_id, graph.first, graph)

    @pytest.mark.parametrize("index", [1, 2, 3])
    async def test_complete_requires_previous_stage(self, tracker, graph, new_pallet, index):
        pallet_id = await new_pallet()
        # Everything before the previous stage is done; the previous stage is only started.
        await self._complete(tracker, pallet_id, graph, index - 1)
        await tracker.advance_to_in_progress(pallet_id, graph.stages[index - 1], graph)

        with pytest.raises(SequenceViolation):
            await tracker.complete(pallet_id, graph.stages[index], graph, NOW)

    async def test_complete_requires_in_progress(self, tracker, graph, new_pallet):
        pallet_id = await new_pallet()

        with pytest.raises(InvalidTransition):
            await tracker.complete(pallet_id, graph.first, graph, NOW)

    async def test_complete_twice_is_rejected(self, tracker, graph, new_pallet):
        pallet_id = await new_pallet()
        await self._complete(tracker, pallet_id, graph, 1)

        with pytest.raises(AlreadyCompleted) as exc:
            await tracker.complete(pallet_id, graph.first, graph, NOW)
        assert exc.value.rule == "stage_already_completed"

    async def test_complete_sets_timestamp_and_moves_target(self, tracker, graph, new_pallet):
        pallet_id = await new_pallet()
        await tracker.advance_to_in_progress(pallet_id, graph.first, graph)

        row = await tracker.complete(pallet_id, graph.first, graph, NOW)

        assert row.status == StageStatus.COMPLETED
        assert row.completed_at == NOW
        assert (await tracker.current_target(pallet_id, graph)).id == graph.stages[1].id

    async def test_only_final_stage_is_seeded(self, tracker, graph, new_pallet, session):
        pallet_id = await new_pallet()
        await self._complete(tracker, pallet_id, graph, 1)

        assert await tracker.seed_next_if_final(pallet_id, graph.first, graph) is None
        assert await tracker.repo.get(pallet_id, graph.stages[1].id) is None

        await self._complete(tracker, pallet_id, graph, 3, start=1)
        seeded = await tracker.seed_next_if_final(pallet_id, graph.stages[2], graph)

        assert seeded is not None
        assert seeded.route_stage_id == graph.last.id
        assert seeded.status == StageStatus.NOT_PROCESSED

    async def test_mark_pending_on_completed_stage_is_immutable(self, tracker, graph, new_pallet):
        pallet_id = await new_pallet()
        await self._complete(tracker, pallet_id, graph, 1)

        with pytest.raises(CompletedTaskImmutable):
            await tracker.mark_pending(pallet_id, graph.first, graph)

    async def test_route_done_has_no_target(self, tracker, graph, new_pallet):
        pallet_id = await new_pallet()
        await self._complete(tracker, pallet_id, graph, len(graph))

        assert await tracker.current_target(pallet_id, graph) is None

    async def test_copy_snapshot(self, tracker, graph, new_pallet):
        source = await new_pallet()
        completed_only = await new_pallet()
        with_open = await new_pallet()
        await self._complete(tracker, source, graph, 1)
        await tracker.advance_to_in_progress(source, graph.stages[1], graph)

        await tracker.copy_snapshot(source, completed_only, include_open=False)
        await tracker.copy_snapshot(source, with_open, include_open=True)

        rows = {r.route_stage_id: r.status for r in await tracker.repo.list_for_pallet(completed_only)}
        assert rows == {graph.first.id: StageStatus.COMPLETED}
        rows = {r.route_stage_id: r.status for r in await tracker.repo.list_for_pallet(with_open)}
        assert rows == {graph.first.id: StageStatus.COMPLETED, graph.stages[1].id: StageStatus.IN_PROGRESS}
