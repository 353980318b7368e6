"""Tests for the read projections used by stations, supervisors and buffer screens."""

from decimal import Decimal

import pytest

from pallet_routing.core.errors import NotFound
from pallet_routing.db.models import CellStatus, PartStatus, StageStatus
from pallet_routing.services.read_models import RoutingReadService


@pytest.fixture
def reads(session):
    return RoutingReadService(session)


class TestReadModels:
    async def test_pallets_by_part(self, reads, shift, catalog, new_pallet):
        parked = await new_pallet("10", name="P-parked")
        queued = await new_pallet("10", name="P-queued")
        await shift.move_to_buffer(parked, catalog.cells["A-01"])
        await shift.assign_to_machine(queued, catalog.machines["Saw-01"])
        await shift.report_defect(queued, Decimal("2"))

        view = await reads.pallets_by_part(catalog.part_id)

        assert view.total == 2
        assert view.distributed_quantity == Decimal("18")
        assert view.undistributed_quantity == Decimal("980")
        by_name = {p.name: p for p in view.pallets}
        assert by_name["P-parked"].buffer_cell.code == "A-01"
        assert by_name["P-parked"].machine is None
        assert by_name["P-parked"].current_stage.status == StageStatus.NOT_PROCESSED
        assert by_name["P-queued"].machine.name == "Saw-01"
        assert by_name["P-queued"].buffer_cell is None
        assert by_name["P-queued"].current_stage.status == StageStatus.PENDING

    async def test_open_assignments_by_machine(self, reads, shift, catalog, new_pallet):
        first = await new_pallet()
        second = await new_pallet()
        await shift.assign_to_machine(first, catalog.machines["Saw-01"])
        await shift.start_processing(second, catalog.machines["Saw-01"])

        view = await reads.open_assignments_by_machine(catalog.machines["Saw-01"])

        assert [a.pallet_id for a in view.assignments] == [first, second]
        assert [a.stage_status for a in view.assignments] == [StageStatus.PENDING, StageStatus.IN_PROGRESS]
        assert {a.route_stage_id for a in view.assignments} == {catalog.route_stages["Cutting"]}

        await shift.complete_processing(second, catalog.machines["Saw-01"])
        view = await reads.open_assignments_by_machine(catalog.machines["Saw-01"])
        assert [a.pallet_id for a in view.assignments] == [first]

    async def test_unknown_machine_and_part(self, reads):
        with pytest.raises(NotFound):
            await reads.open_assignments_by_machine(9999)
        with pytest.raises(NotFound):
            await reads.pallets_by_part(9999)
        with pytest.raises(NotFound):
            await reads.part_progress(9999)

    async def test_buffer_occupancy(self, reads, shift, catalog, new_pallet):
        pallet_id = await new_pallet()
        await shift.move_to_buffer(pallet_id, catalog.cells["B-01"])

        cells = {c.code: c for c in await reads.buffer_occupancy()}

        assert cells["B-01"].current_load == 1
        assert cells["B-01"].status == CellStatus.OCCUPIED
        assert cells["B-01"].pallet_ids == [pallet_id]
        assert cells["A-01"].pallet_ids == []
        assert cells["R-01"].status == CellStatus.RESERVED

    async def test_part_progress(self, reads, shift, catalog, new_pallet):
        pallet_id = await new_pallet()
        await shift.start_processing(pallet_id, catalog.machines["Saw-01"])
        await shift.complete_processing(pallet_id, catalog.machines["Saw-01"])

        view = await reads.part_progress(catalog.part_id)

        assert view.status == PartStatus.IN_PROGRESS
        assert view.completion_percent == 25.0
        assert [s.status for s in view.stages] == [
            StageStatus.COMPLETED,
            StageStatus.NOT_PROCESSED,
            StageStatus.NOT_PROCESSED,
            StageStatus.NOT_PROCESSED,
        ]
        assert [s.is_final for s in view.stages] == [False, False, False, True]
