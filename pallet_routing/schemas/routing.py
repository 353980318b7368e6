from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from pallet_routing.db.models.enums import CellStatus, PartStatus, StageStatus
from pallet_routing.schemas.common import Quantity


# ---- requests ---------------------------------------------------------------


class PalletMachineRequest(BaseModel):
    """Pallet + machine pair (start, complete, supervisor assign)."""
    pallet_id: int = Field(..., description="Pallet id")
    machine_id: int = Field(..., description="Machine id")


class MoveToMachineRequest(BaseModel):
    """Supervisor re-route of a pallet's open assignment."""
    pallet_id: int = Field(..., description="Pallet id")
    target_machine_id: int = Field(..., description="Machine the pallet is re-routed to")


class MoveToBufferRequest(BaseModel):
    """Place a pallet into a buffer cell."""
    pallet_id: int = Field(..., description="Pallet id")
    cell_id: int = Field(..., description="Buffer cell id")


class Distribution(BaseModel):
    """One share of a redistribution: onto an existing pallet, or a new one when target_pallet_id is empty."""
    quantity: Decimal = Field(..., gt=0, description="Quantity moved to the target")
    target_pallet_id: Optional[int] = Field(None, description="Existing pallet of the same part")
    pallet_name: Optional[str] = Field(None, description="Name for a newly created pallet")


class RedistributeRequest(BaseModel):
    source_pallet_id: int = Field(..., description="Pallet the quantity is taken from")
    distributions: List[Distribution] = Field(..., min_length=1)


class CreatePalletRequest(BaseModel):
    part_id: int = Field(..., description="Part the pallet is split from")
    quantity: Decimal = Field(..., gt=0, description="Quantity taken from the undistributed remainder")
    name: Optional[str] = Field(None, description="Pallet name; generated when omitted")


class DefectReportRequest(BaseModel):
    pallet_id: int = Field(..., description="Pallet the defective parts are taken from")
    quantity: Decimal = Field(..., gt=0, description="Defective quantity")
    route_stage_id: Optional[int] = Field(None, description="Stage the defect was found at; defaults to the current stage")
    machine_id: Optional[int] = Field(None)
    reported_by_id: Optional[int] = Field(None)
    note: Optional[str] = Field(None)


class ReturnToProductionRequest(BaseModel):
    part_id: int = Field(..., description="Part whose written-off quantity is returned")
    pallet_id: int = Field(..., description="Pallet receiving the quantity")
    quantity: Decimal = Field(..., gt=0)
    route_stage_id: int = Field(..., description="Route stage production resumes from")
    user_id: Optional[int] = Field(None)


# ---- read models ------------------------------------------------------------


class AssignmentRead(BaseModel):
    """Machine assignment read model."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    pallet_id: int
    machine_id: int
    assigned_at: datetime
    completed_at: Optional[datetime] = None


class StageProgressRead(BaseModel):
    """Pallet stage progress read model."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    pallet_id: int
    route_stage_id: int
    status: StageStatus
    completed_at: Optional[datetime] = None


class PlacementRead(BaseModel):
    """Buffer placement read model."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    pallet_id: int
    cell_id: int
    placed_at: datetime
    removed_at: Optional[datetime] = None


class PalletCellRead(BaseModel):
    cell_id: int
    code: str
    buffer_name: Optional[str] = None
    placed_at: datetime


class PalletMachineRead(BaseModel):
    machine_id: int
    name: str
    assignment_id: int
    assigned_at: datetime


class PalletRead(BaseModel):
    """Pallet with its open placement, open assignment and current stage progress."""
    id: int
    part_id: int
    name: str
    quantity: Quantity
    buffer_cell: Optional[PalletCellRead] = None
    machine: Optional[PalletMachineRead] = None
    current_stage: Optional[StageProgressRead] = None


class PalletsByPart(BaseModel):
    part_id: int
    total_quantity: Quantity
    distributed_quantity: Quantity
    undistributed_quantity: Quantity
    pallets: List[PalletRead] = Field(default_factory=list)
    total: int


class OpenAssignmentRead(BaseModel):
    assignment_id: int
    pallet_id: int
    pallet_name: str
    part_id: int
    quantity: Quantity
    assigned_at: datetime
    route_stage_id: Optional[int] = None
    stage_status: Optional[StageStatus] = None


class MachineAssignments(BaseModel):
    machine_id: int
    assignments: List[OpenAssignmentRead] = Field(default_factory=list)


class BufferCellOccupancy(BaseModel):
    id: int
    code: str
    buffer_name: Optional[str] = None
    capacity: int
    current_load: int
    status: CellStatus
    pallet_ids: List[int] = Field(default_factory=list)


class PartStageRead(BaseModel):
    route_stage_id: int
    sequence_number: int
    stage_id: int
    is_final: bool
    status: StageStatus
    completed_at: Optional[datetime] = None


class PartProgressRead(BaseModel):
    part_id: int
    status: PartStatus
    completion_percent: float = Field(..., description="Share of route stages completed for the part (0-100)")
    stages: List[PartStageRead] = Field(default_factory=list)


# ---- operation results ------------------------------------------------------


class CompletionResult(BaseModel):
    assignment: AssignmentRead
    progress: StageProgressRead
    seeded_route_stage_id: Optional[int] = Field(None, description="Final stage row seeded for the pallet, if any")
    part_status: PartStatus
    ready_for_packaging: bool = False


class PalletSummary(BaseModel):
    id: int
    name: str
    quantity: Quantity
    created: bool = False


class RedistributeResult(BaseModel):
    source_pallet_id: int
    source_quantity: Quantity
    source_deleted: bool
    targets: List[PalletSummary] = Field(default_factory=list)


class DefectResult(BaseModel):
    reclamation_id: int
    pallet_id: int
    quantity: Quantity
    remaining_quantity: Quantity
    pallet_deleted: bool


class ReturnResult(BaseModel):
    movement_id: int
    pallet_id: int
    quantity: Quantity
    new_quantity: Quantity
    remaining_to_return: Quantity
