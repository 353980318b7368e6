"""
ORM models for the routing engine: route catalog, machines, parts and pallets,
stage progress, machine assignments, buffer cells and defect records.

Importing this package ensures model classes are registered with the Base
metadata for Alembic and runtime usage.
"""

from .enums import (  # noqa: F401
    CellStatus,
    MachineStatus,
    MovementReason,
    PartStatus,
    ReclamationStatus,
    StageStatus,
    StationMode,
)
from .routing import (  # noqa: F401
    Stage,
    Substage,
    Route,
    RouteStage,
    Machine,
    MachineStage,
    MachineSubstage,
)
from .production import (  # noqa: F401
    Part,
    Pallet,
    PalletStageProgress,
    PartRouteProgress,
    MachineAssignment,
)
from .buffer import (  # noqa: F401
    BufferCell,
    PalletBufferCell,
)
from .quality import (  # noqa: F401
    Reclamation,
    InventoryMovement,
)
