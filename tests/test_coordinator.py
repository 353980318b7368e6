"""End-to-end routing operations: full route, redistribution, defects and returns."""

from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from pallet_routing.core.errors import (
    InsufficientQuantity,
    InvalidQuantity,
    LockContention,
    NoActiveAssignment,
    NotFound,
    OverAllocation,
    PartMismatch,
    RouteCompleted,
    ValidationError,
)
from pallet_routing.core.logging import station_mode_var
from pallet_routing.db.models import (
    BufferCell,
    InventoryMovement,
    MovementReason,
    Pallet,
    Part,
    PartStatus,
    Reclamation,
    StageStatus,
    StationMode,
)
from pallet_routing.repositories.assignment import AssignmentRepository
from pallet_routing.repositories.production import PalletRepository
from pallet_routing.repositories.progress import StageProgressRepository
from pallet_routing.schemas.routing import Distribution
from pallet_routing.services.coordinator import RoutingCoordinator

from conftest import open_assignment_counts


async def _run_stage(coordinator, pallet_id, machine_id):
    await coordinator.start_processing(pallet_id, machine_id)
    return await coordinator.complete_processing(pallet_id, machine_id)


async def _statuses(session, pallet_id):
    rows = await StageProgressRepository(session).list_for_pallet(pallet_id)
    return {r.route_stage_id: r.status for r in rows}


@pytest_asyncio.fixture
async def other_part(session, catalog):
    part = Part(name="Hinge HG-20", total_quantity=Decimal("50"), status=PartStatus.PENDING, route_id=catalog.route_id)
    session.add(part)
    await session.commit()
    return part.id


class TestFullRoute:
    async def test_two_pallets_through_every_stage(self, session, shift, catalog, new_pallet, packaging, bus):
        a = await new_pallet()
        b = await new_pallet()
        m = catalog.machines

        for machine in ("Saw-01", "Press-01"):
            await _run_stage(shift, a, m[machine])
            await _run_stage(shift, b, m[machine])
        assert packaging.signals == []

        first = await _run_stage(shift, a, m["Welder-01"])
        assert first.seeded_route_stage_id == catalog.route_stages["Packaging"]
        assert first.ready_for_packaging is False
        second = await _run_stage(shift, b, m["Welder-01"])
        assert second.ready_for_packaging is True
        assert packaging.signals == [catalog.part_id]

        await _run_stage(shift, a, m["Packer-01"])
        assert packaging.signals == [catalog.part_id]
        last = await _run_stage(shift, b, m["Packer-01"])

        assert last.ready_for_packaging is True
        assert last.part_status == PartStatus.COMPLETED
        assert packaging.signals == [catalog.part_id, catalog.part_id]
        assert (await session.get(Part, catalog.part_id)).status == PartStatus.COMPLETED
        changed = [e.payload["status"] for e in bus.events if e.event == "part.status_changed"]
        assert changed == ["IN_PROGRESS", "COMPLETED"]

        with pytest.raises(RouteCompleted):
            await shift.start_processing(a, m["Saw-01"])

    async def test_intermediate_stage_is_not_seeded(self, session, shift, catalog, new_pallet):
        a = await new_pallet()

        result = await _run_stage(shift, a, catalog.machines["Saw-01"])

        assert result.seeded_route_stage_id is None
        assert catalog.route_stages["Bending"] not in await _statuses(session, a)

    async def test_start_takes_pallet_out_of_buffer(self, session, shift, catalog, new_pallet, bus):
        a = await new_pallet()
        await shift.move_to_buffer(a, catalog.cells["B-01"])
        bus.clear()

        await shift.start_processing(a, catalog.machines["Saw-01"])

        cell = await session.get(BufferCell, catalog.cells["B-01"])
        assert cell.current_load == 0
        moved = [e for e in bus.events if e.event == "pallet.moved"]
        assert moved[0].payload["from_cell_id"] == catalog.cells["B-01"]
        assert moved[0].payload["to_machine_id"] == catalog.machines["Saw-01"]

    async def test_self_service_route(self, session, self_service, catalog, new_pallet):
        a = await new_pallet()

        for machine in ("Laser-01", "Press-01", "Welder-02"):
            await _run_stage(self_service, a, catalog.machines[machine])

        statuses = await _statuses(session, a)
        assert statuses[catalog.route_stages["Welding"]] == StageStatus.COMPLETED
        assert statuses[catalog.route_stages["Packaging"]] == StageStatus.NOT_PROCESSED

    async def test_mode_context_is_reset(self, self_service, catalog, new_pallet):
        a = await new_pallet()

        await self_service.start_processing(a, catalog.machines["Laser-01"])

        assert station_mode_var.get() is None


class TestCreatePallet:
    async def test_generated_name_and_rounding(self, shift, catalog):
        pallet = await shift.create_pallet(catalog.part_id, Decimal("1.234"))

        assert pallet.name == f"PAL-{catalog.part_id}-1"
        assert pallet.quantity == Decimal("1.23")

    @pytest.mark.parametrize("quantity", ["0", "-1", "0.001"])
    async def test_non_positive_quantity(self, shift, catalog, quantity):
        with pytest.raises(InvalidQuantity):
            await shift.create_pallet(catalog.part_id, Decimal(quantity))

    async def test_over_allocation(self, session, shift, catalog, new_pallet, bus):
        await new_pallet("600")
        bus.clear()

        with pytest.raises(OverAllocation) as exc:
            await new_pallet("400.01")

        assert exc.value.details["available"] == "400.00"
        assert bus.events == []
        await new_pallet("400")

    async def test_unknown_part(self, shift):
        with pytest.raises(NotFound):
            await shift.create_pallet(9999, Decimal("1"))

    async def test_first_stage_row_is_created(self, session, catalog, new_pallet):
        a = await new_pallet()

        assert await _statuses(session, a) == {catalog.route_stages["Cutting"]: StageStatus.NOT_PROCESSED}

    async def test_generated_names_stay_unique_after_deletion(self, session, shift, catalog):
        first = await shift.create_pallet(catalog.part_id, Decimal("5"))
        await shift.create_pallet(catalog.part_id, Decimal("5"))
        await shift.report_defect(first.id, Decimal("5"))

        third = await shift.create_pallet(catalog.part_id, Decimal("5"))

        assert third.name == f"PAL-{catalog.part_id}-3"
        names = (await session.execute(select(Pallet.name).where(Pallet.part_id == catalog.part_id))).scalars().all()
        assert len(names) == len(set(names)) == 2

    async def test_explicit_name_does_not_consume_sequence(self, shift, catalog):
        await shift.create_pallet(catalog.part_id, Decimal("5"), name="Manual")

        generated = await shift.create_pallet(catalog.part_id, Decimal("5"))

        assert generated.name == f"PAL-{catalog.part_id}-1"


class TestRedistribute:
    async def test_split_and_merge_deletes_empty_source(self, session, shift, catalog, new_pallet, bus):
        source = await new_pallet("100")
        existing = await new_pallet("10")
        await _run_stage(shift, source, catalog.machines["Saw-01"])
        await shift.move_to_buffer(source, catalog.cells["A-01"])
        bus.clear()

        result = await shift.redistribute(
            source,
            [
                Distribution(quantity=Decimal("40"), pallet_name="X"),
                Distribution(quantity=Decimal("60"), target_pallet_id=existing),
            ],
        )

        assert result.source_deleted is True
        assert result.source_quantity == Decimal("0")
        created = next(t for t in result.targets if t.created)
        merged = next(t for t in result.targets if not t.created)
        assert (created.name, created.quantity) == ("X", Decimal("40"))
        assert (merged.id, merged.quantity) == (existing, Decimal("70"))

        assert await session.get(Pallet, source) is None
        assert (await session.get(BufferCell, catalog.cells["A-01"])).current_load == 0
        remaining = (await session.execute(select(Pallet).where(Pallet.part_id == catalog.part_id))).scalars().all()
        assert sum(Decimal(p.quantity) for p in remaining) == Decimal("110")
        assert "pallet.deleted" in bus.names()

        statuses = await _statuses(session, created.id)
        assert statuses == {
            catalog.route_stages["Cutting"]: StageStatus.COMPLETED,
            catalog.route_stages["Bending"]: StageStatus.NOT_PROCESSED,
        }

    async def test_shift_split_does_not_inherit_open_work(self, session, shift, catalog, new_pallet):
        source = await new_pallet("10")
        await shift.start_processing(source, catalog.machines["Saw-01"])

        result = await shift.redistribute(source, [Distribution(quantity=Decimal("4"))])

        new_id = result.targets[0].id
        assert result.source_deleted is False
        assert await _statuses(session, new_id) == {catalog.route_stages["Cutting"]: StageStatus.NOT_PROCESSED}
        assert await AssignmentRepository(session).get_open_for_pallet(new_id) is None
        assert (await session.get(Pallet, source)).quantity == Decimal("6")

    async def test_self_service_split_inherits_open_work(self, session, self_service, catalog, new_pallet):
        laser = catalog.machines["Laser-01"]
        source = await new_pallet("10")
        await self_service.start_processing(source, laser)

        result = await self_service.redistribute(source, [Distribution(quantity=Decimal("4"))])

        new_id = result.targets[0].id
        assert await _statuses(session, new_id) == {catalog.route_stages["Cutting"]: StageStatus.IN_PROGRESS}
        inherited = await AssignmentRepository(session).get_open_for_pallet(new_id)
        assert inherited.machine_id == laser
        assert all(count == 1 for count in await open_assignment_counts(session))

        done = await self_service.complete_processing(new_id, laser)
        assert done.progress.status == StageStatus.COMPLETED

    async def test_over_allocation(self, session, shift, new_pallet):
        source = await new_pallet("10")

        with pytest.raises(OverAllocation):
            await shift.redistribute(
                source, [Distribution(quantity=Decimal("6")), Distribution(quantity=Decimal("5"))]
            )

        assert (await session.get(Pallet, source)).quantity == Decimal("10")

    async def test_onto_itself(self, shift, new_pallet):
        source = await new_pallet("10")

        with pytest.raises(ValidationError):
            await shift.redistribute(source, [Distribution(quantity=Decimal("1"), target_pallet_id=source)])

    async def test_empty_distributions(self, shift, new_pallet):
        source = await new_pallet("10")

        with pytest.raises(ValidationError):
            await shift.redistribute(source, [])

    async def test_part_mismatch(self, shift, new_pallet, other_part):
        source = await new_pallet("10")
        foreign = await shift.create_pallet(other_part, Decimal("5"))

        with pytest.raises(PartMismatch):
            await shift.redistribute(
                source, [Distribution(quantity=Decimal("1"), target_pallet_id=foreign.id)]
            )

    async def test_pallets_are_locked_in_ascending_id_order(self, monkeypatch, shift, new_pallet):
        lower = await new_pallet("10")
        middle = await new_pallet("10")
        source = await new_pallet("10")
        locked = []
        original = PalletRepository.get_pallet_for_update

        async def recording(repo, pallet_id):
            locked.append(pallet_id)
            return await original(repo, pallet_id)

        monkeypatch.setattr(PalletRepository, "get_pallet_for_update", recording)

        await shift.redistribute(
            source,
            [
                Distribution(quantity=Decimal("2"), target_pallet_id=middle),
                Distribution(quantity=Decimal("3"), target_pallet_id=lower),
            ],
        )

        assert locked == [lower, middle, source]

    async def test_onto_itself_is_rejected_before_locking(self, monkeypatch, shift, new_pallet):
        source = await new_pallet("10")
        locked = []
        original = PalletRepository.get_pallet_for_update

        async def recording(repo, pallet_id):
            locked.append(pallet_id)
            return await original(repo, pallet_id)

        monkeypatch.setattr(PalletRepository, "get_pallet_for_update", recording)

        with pytest.raises(ValidationError):
            await shift.redistribute(source, [Distribution(quantity=Decimal("1"), target_pallet_id=source)])
        assert locked == []


class TestDefects:
    async def test_defect_of_whole_pallet_deletes_it(self, session, shift, catalog, new_pallet, bus):
        pallet_id = await new_pallet("5")
        await shift.move_to_buffer(pallet_id, catalog.cells["B-01"])
        bus.clear()

        result = await shift.report_defect(
            pallet_id, Decimal("5"), machine_id=catalog.machines["Saw-01"], reported_by_id=7, note="cracked"
        )

        assert result.pallet_deleted is True
        assert result.remaining_quantity == Decimal("0")
        assert await session.get(Pallet, pallet_id) is None
        reclamations = (await session.execute(select(Reclamation))).scalars().all()
        assert len(reclamations) == 1
        assert reclamations[0].route_stage_id == catalog.route_stages["Cutting"]
        assert reclamations[0].quantity == Decimal("5")
        movement = (await session.execute(select(InventoryMovement))).scalar_one()
        assert movement.reason == MovementReason.DEFECT
        assert movement.delta_quantity == Decimal("-5")
        assert movement.reclamation_id == reclamations[0].id
        assert (await session.get(BufferCell, catalog.cells["B-01"])).current_load == 0
        assert {"defect.reported", "pallet.deleted"} <= set(bus.names())

    async def test_partial_defect_keeps_pallet(self, session, shift, new_pallet):
        pallet_id = await new_pallet("10")

        result = await shift.report_defect(pallet_id, Decimal("3"))

        assert result.pallet_deleted is False
        assert (await session.get(Pallet, pallet_id)).quantity == Decimal("7")

    async def test_defect_reduces_remainder(self, shift, new_pallet):
        pallet_id = await new_pallet("5")
        await shift.report_defect(pallet_id, Decimal("5"))

        with pytest.raises(OverAllocation):
            await new_pallet("996")
        await new_pallet("995")

    async def test_defect_larger_than_pallet(self, session, shift, new_pallet):
        pallet_id = await new_pallet("5")

        with pytest.raises(InsufficientQuantity):
            await shift.report_defect(pallet_id, Decimal("6"))

        assert (await session.execute(select(Reclamation))).scalars().all() == []

    async def test_defect_on_unknown_stage(self, shift, new_pallet):
        pallet_id = await new_pallet("5")

        with pytest.raises(NotFound):
            await shift.report_defect(pallet_id, Decimal("1"), route_stage_id=9999)


class TestReturnToProduction:
    async def test_return_is_bounded_by_written_off_quantity(self, session, shift, catalog, new_pallet):
        pallet_id = await new_pallet("10")
        await shift.report_defect(pallet_id, Decimal("3"))
        cutting = catalog.route_stages["Cutting"]

        result = await shift.return_to_production(catalog.part_id, pallet_id, Decimal("2"), cutting, user_id=3)

        assert result.new_quantity == Decimal("9")
        assert result.remaining_to_return == Decimal("1")
        with pytest.raises(InsufficientQuantity):
            await shift.return_to_production(catalog.part_id, pallet_id, Decimal("2"), cutting)

        movements = (
            await session.execute(
                select(InventoryMovement).where(InventoryMovement.reason == MovementReason.RETURN_FROM_RECLAMATION)
            )
        ).scalars().all()
        assert len(movements) == 1
        assert movements[0].return_to_route_stage_id == cutting

    async def test_return_without_defects(self, shift, catalog, new_pallet):
        pallet_id = await new_pallet("10")

        with pytest.raises(InsufficientQuantity):
            await shift.return_to_production(
                catalog.part_id, pallet_id, Decimal("1"), catalog.route_stages["Cutting"]
            )

    async def test_return_to_unknown_stage(self, shift, catalog, new_pallet):
        pallet_id = await new_pallet("10")
        await shift.report_defect(pallet_id, Decimal("3"))

        with pytest.raises(NotFound):
            await shift.return_to_production(catalog.part_id, pallet_id, Decimal("1"), 9999)

    async def test_return_onto_other_part(self, shift, catalog, new_pallet, other_part):
        pallet_id = await new_pallet("10")
        await shift.report_defect(pallet_id, Decimal("3"))
        foreign = await shift.create_pallet(other_part, Decimal("5"))

        with pytest.raises(PartMismatch):
            await shift.return_to_production(
                catalog.part_id, foreign.id, Decimal("1"), catalog.route_stages["Cutting"]
            )


class ExplodingBus:
    async def publish(self, event):
        raise RuntimeError("bus down")


class ExplodingPackaging:
    def __init__(self):
        self.calls = 0

    async def signal_part_ready(self, part_id):
        self.calls += 1
        raise RuntimeError("queue down")


class TestNotifications:
    async def test_failed_operation_publishes_nothing(self, shift, catalog, new_pallet, bus):
        pallet_id = await new_pallet()
        bus.clear()

        with pytest.raises(NoActiveAssignment):
            await shift.complete_processing(pallet_id, catalog.machines["Saw-01"])

        assert bus.events == []

    async def test_events_are_published_after_commit(self, session, catalog, settings, packaging):
        coordinator = RoutingCoordinator(session, bus=ExplodingBus(), packaging=packaging, settings=settings)

        pallet = await coordinator.create_pallet(catalog.part_id, Decimal("5"))

        await session.rollback()
        assert await session.get(Pallet, pallet.id) is not None

    async def test_packaging_failure_keeps_completion(self, session, catalog, settings, bus, new_pallet):
        queue = ExplodingPackaging()
        coordinator = RoutingCoordinator(session, bus=bus, packaging=queue, settings=settings)
        pallet_id = await new_pallet()

        for machine in ("Saw-01", "Press-01"):
            await _run_stage(coordinator, pallet_id, catalog.machines[machine])
        result = await _run_stage(coordinator, pallet_id, catalog.machines["Welder-01"])

        assert result.ready_for_packaging is True
        assert queue.calls == 1
        statuses = await _statuses(session, pallet_id)
        assert statuses[catalog.route_stages["Welding"]] == StageStatus.COMPLETED

    async def test_event_topics(self, shift, catalog, new_pallet, bus):
        pallet_id = await new_pallet()
        bus.clear()

        await shift.assign_to_machine(pallet_id, catalog.machines["Saw-01"])

        changed = next(e for e in bus.events if e.event == "assignment.changed")
        assert f"routing:machine:{catalog.machines['Saw-01']}" in changed.topics
        assert f"routing:part:{catalog.part_id}" in changed.topics
        assert changed.payload["action"] == "opened"

    async def test_default_mode_is_shift(self, session, settings):
        assert RoutingCoordinator(session, settings=settings).mode == StationMode.SHIFT_ASSIGNED


class LockNotAvailable(Exception):
    sqlstate = "55P03"


class TestLockContention:
    async def test_lock_timeout_is_a_retryable_conflict(self, monkeypatch, session, shift, new_pallet, bus):
        pallet_id = await new_pallet("10")
        bus.clear()

        async def timed_out(repo, pallet_id):
            raise OperationalError("SELECT ... FOR UPDATE", {}, LockNotAvailable())

        monkeypatch.setattr(PalletRepository, "get_pallet_for_update", timed_out)

        with pytest.raises(LockContention) as exc:
            await shift.report_defect(pallet_id, Decimal("1"))

        assert exc.value.rule == "lock_contention"
        assert exc.value.details == {"sqlstate": "55P03"}
        assert bus.events == []
        assert (await session.get(Pallet, pallet_id)).quantity == Decimal("10")

    async def test_other_database_errors_propagate(self, monkeypatch, shift, new_pallet):
        pallet_id = await new_pallet("10")

        async def broken(repo, pallet_id):
            raise OperationalError("SELECT ... FOR UPDATE", {}, RuntimeError("connection reset"))

        monkeypatch.setattr(PalletRepository, "get_pallet_for_update", broken)

        with pytest.raises(OperationalError):
            await shift.report_defect(pallet_id, Decimal("1"))
