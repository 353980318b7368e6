from __future__ import annotations

from typing import Callable

from fastapi import APIRouter, Depends

from pallet_routing.core.deps import get_self_service_coordinator, get_shift_coordinator
from pallet_routing.schemas.routing import (
    AssignmentRead,
    CompletionResult,
    DefectReportRequest,
    DefectResult,
    MoveToBufferRequest,
    MoveToMachineRequest,
    PalletMachineRequest,
    PlacementRead,
    RedistributeRequest,
    RedistributeResult,
)
from pallet_routing.services.coordinator import RoutingCoordinator


def build_operations_router(
    prefix: str,
    tag: str,
    coordinator_dep: Callable[..., RoutingCoordinator],
    *,
    supervisor: bool,
) -> APIRouter:
    """
    Build the station operation endpoints for one station mode.

    Both modes share start/complete/buffer/redistribute/defect endpoints; supervisor
    endpoints (assign, move-to-machine) only exist for shift stations.
    """
    router = APIRouter(prefix=prefix, tags=[tag])

    # PUBLIC_INTERFACE
    @router.post(
        "/start",
        response_model=AssignmentRead,
        summary="Start processing",
        description="Start the pallet's current route stage on a machine and take it out of its buffer cell.",
    )
    async def start_processing(
        payload: PalletMachineRequest,
        coordinator: RoutingCoordinator = Depends(coordinator_dep),
    ) -> AssignmentRead:
        assignment = await coordinator.start_processing(payload.pallet_id, payload.machine_id)
        return AssignmentRead.model_validate(assignment)

    # PUBLIC_INTERFACE
    @router.post(
        "/complete",
        response_model=CompletionResult,
        summary="Complete processing",
        description="Complete the pallet's current route stage on the machine holding it.",
    )
    async def complete_processing(
        payload: PalletMachineRequest,
        coordinator: RoutingCoordinator = Depends(coordinator_dep),
    ) -> CompletionResult:
        return await coordinator.complete_processing(payload.pallet_id, payload.machine_id)

    # PUBLIC_INTERFACE
    @router.post(
        "/move-to-buffer",
        response_model=PlacementRead,
        summary="Move pallet to buffer cell",
    )
    async def move_to_buffer(
        payload: MoveToBufferRequest,
        coordinator: RoutingCoordinator = Depends(coordinator_dep),
    ) -> PlacementRead:
        placement = await coordinator.move_to_buffer(payload.pallet_id, payload.cell_id)
        return PlacementRead.model_validate(placement)

    # PUBLIC_INTERFACE
    @router.post(
        "/redistribute",
        response_model=RedistributeResult,
        summary="Redistribute pallet quantity",
        description="Split or merge a pallet's quantity onto existing or new pallets of the same part.",
    )
    async def redistribute(
        payload: RedistributeRequest,
        coordinator: RoutingCoordinator = Depends(coordinator_dep),
    ) -> RedistributeResult:
        return await coordinator.redistribute(payload.source_pallet_id, payload.distributions)

    # PUBLIC_INTERFACE
    @router.post(
        "/defects",
        response_model=DefectResult,
        summary="Report defect",
        description="Write off defective quantity from a pallet.",
    )
    async def report_defect(
        payload: DefectReportRequest,
        coordinator: RoutingCoordinator = Depends(coordinator_dep),
    ) -> DefectResult:
        return await coordinator.report_defect(
            payload.pallet_id,
            payload.quantity,
            payload.route_stage_id,
            machine_id=payload.machine_id,
            reported_by_id=payload.reported_by_id,
            note=payload.note,
        )

    if not supervisor:
        return router

    # PUBLIC_INTERFACE
    @router.post(
        "/assign",
        response_model=AssignmentRead,
        summary="Assign pallet to machine",
        description="Issue a shift task: the pallet's current stage becomes PENDING on the machine.",
    )
    async def assign_to_machine(
        payload: PalletMachineRequest,
        coordinator: RoutingCoordinator = Depends(coordinator_dep),
    ) -> AssignmentRead:
        assignment = await coordinator.assign_to_machine(payload.pallet_id, payload.machine_id)
        return AssignmentRead.model_validate(assignment)

    # PUBLIC_INTERFACE
    @router.post(
        "/move-to-machine",
        response_model=AssignmentRead,
        summary="Re-route pallet to another machine",
    )
    async def move_to_machine(
        payload: MoveToMachineRequest,
        coordinator: RoutingCoordinator = Depends(coordinator_dep),
    ) -> AssignmentRead:
        assignment = await coordinator.move_to_machine(payload.pallet_id, payload.target_machine_id)
        return AssignmentRead.model_validate(assignment)

    return router


shift_router = build_operations_router("/shift", "Shift Stations", get_shift_coordinator, supervisor=True)
self_service_router = build_operations_router(
    "/self-service", "Self-Service Stations", get_self_service_coordinator, supervisor=False
)
