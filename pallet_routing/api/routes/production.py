from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, Path, status

from pallet_routing.core.deps import get_read_service, get_shift_coordinator
from pallet_routing.schemas.routing import (
    BufferCellOccupancy,
    CreatePalletRequest,
    MachineAssignments,
    PalletsByPart,
    PalletSummary,
    PartProgressRead,
    ReturnResult,
    ReturnToProductionRequest,
)
from pallet_routing.services.coordinator import RoutingCoordinator
from pallet_routing.services.read_models import RoutingReadService

router = APIRouter(tags=["Production"])


# PUBLIC_INTERFACE
@router.post(
    "/pallets",
    response_model=PalletSummary,
    status_code=status.HTTP_201_CREATED,
    summary="Create pallet",
    description="Split a new pallet off the part's undistributed quantity.",
)
async def create_pallet(
    payload: CreatePalletRequest,
    coordinator: RoutingCoordinator = Depends(get_shift_coordinator),
) -> PalletSummary:
    pallet = await coordinator.create_pallet(payload.part_id, payload.quantity, payload.name)
    return PalletSummary(id=pallet.id, name=pallet.name, quantity=pallet.quantity, created=True)


# PUBLIC_INTERFACE
@router.post(
    "/returns",
    response_model=ReturnResult,
    summary="Return written-off quantity to production",
)
async def return_to_production(
    payload: ReturnToProductionRequest,
    coordinator: RoutingCoordinator = Depends(get_shift_coordinator),
) -> ReturnResult:
    return await coordinator.return_to_production(
        payload.part_id,
        payload.pallet_id,
        payload.quantity,
        payload.route_stage_id,
        user_id=payload.user_id,
    )


# PUBLIC_INTERFACE
@router.get(
    "/parts/{part_id}/pallets",
    response_model=PalletsByPart,
    summary="Pallets by part",
    description="Pallets of a part with buffer cell, machine and current stage.",
)
async def pallets_by_part(
    part_id: int = Path(..., ge=1),
    reads: RoutingReadService = Depends(get_read_service),
) -> PalletsByPart:
    return await reads.pallets_by_part(part_id)


# PUBLIC_INTERFACE
@router.get(
    "/parts/{part_id}/progress",
    response_model=PartProgressRead,
    summary="Part progress",
    description="Per-stage aggregate status of a part and its completion percentage.",
)
async def part_progress(
    part_id: int = Path(..., ge=1),
    reads: RoutingReadService = Depends(get_read_service),
) -> PartProgressRead:
    return await reads.part_progress(part_id)


# PUBLIC_INTERFACE
@router.get(
    "/machines/{machine_id}/assignments",
    response_model=MachineAssignments,
    summary="Open assignments by machine",
)
async def machine_assignments(
    machine_id: int = Path(..., ge=1),
    reads: RoutingReadService = Depends(get_read_service),
) -> MachineAssignments:
    return await reads.open_assignments_by_machine(machine_id)


# PUBLIC_INTERFACE
@router.get(
    "/buffers/cells",
    response_model=List[BufferCellOccupancy],
    summary="Buffer occupancy by cell",
)
async def buffer_cells(reads: RoutingReadService = Depends(get_read_service)) -> List[BufferCellOccupancy]:
    return await reads.buffer_occupancy()
