from __future__ import annotations

import enum


class StageStatus(str, enum.Enum):
    """Status of a pallet (or aggregated part) on one route stage."""
    NOT_PROCESSED = "NOT_PROCESSED"
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"


class PartStatus(str, enum.Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"


class CellStatus(str, enum.Enum):
    AVAILABLE = "AVAILABLE"
    OCCUPIED = "OCCUPIED"
    RESERVED = "RESERVED"


class MachineStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    MAINTENANCE = "MAINTENANCE"
    BROKEN = "BROKEN"


class ReclamationStatus(str, enum.Enum):
    NEW = "NEW"
    CONFIRMED = "CONFIRMED"
    RESOLVED = "RESOLVED"


class MovementReason(str, enum.Enum):
    DEFECT = "DEFECT"
    RETURN_FROM_RECLAMATION = "RETURN_FROM_RECLAMATION"


class StationMode(str, enum.Enum):
    """
    How a station receives work.

    SHIFT_ASSIGNED stations get pallets queued by a supervisor (PENDING first);
    SELF_SERVICE stations pick pallets themselves and go straight to IN_PROGRESS.
    """
    SHIFT_ASSIGNED = "SHIFT_ASSIGNED"
    SELF_SERVICE = "SELF_SERVICE"
