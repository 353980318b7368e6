"""
Domain error taxonomy for the routing engine.

Four families, each with a different contract for the caller:

- NotFound: a referenced pallet/machine/cell/route stage does not exist. Not retried.
- ValidationError: malformed input (quantities, wrong mode, mismatched part). Not retried.
- Conflict: state held by someone else right now (pallet busy, cell reserved). Safe to
  retry after re-reading state.
- InvariantViolation: the request would break a routing rule. The transaction is aborted
  and the specific rule is reported through ``rule``.

Every error carries a machine-readable ``rule`` code which the HTTP layer exposes as
``error.type``.
"""
from __future__ import annotations

from typing import Any, Optional


class RoutingError(Exception):
    """Base class for all routing engine errors."""

    rule: str = "routing_error"

    def __init__(self, message: str, *, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        return self.message


# ---- families ---------------------------------------------------------------


class NotFound(RoutingError):
    rule = "not_found"

    def __init__(self, entity: str, entity_id: Any) -> None:
        super().__init__(f"{entity} {entity_id} not found", details={"entity": entity, "id": entity_id})
        self.entity = entity
        self.entity_id = entity_id


class InvariantViolation(RoutingError):
    rule = "invariant_violation"


class Conflict(RoutingError):
    rule = "conflict"


class ValidationError(RoutingError):
    rule = "validation_error"


# ---- invariant violations ---------------------------------------------------


class SequenceViolation(InvariantViolation):
    rule = "previous_stage_not_completed"


class AlreadyCompleted(InvariantViolation):
    rule = "stage_already_completed"


class InvalidTransition(InvariantViolation):
    rule = "invalid_stage_transition"


class RouteCompleted(InvariantViolation):
    rule = "route_already_completed"


class CellFull(InvariantViolation):
    rule = "cell_capacity_exceeded"


class OverAllocation(InvariantViolation):
    rule = "over_allocation"


class InsufficientQuantity(InvariantViolation):
    rule = "insufficient_quantity"


class MachineNotCapable(InvariantViolation):
    rule = "machine_not_capable"


class CompletedTaskImmutable(InvariantViolation):
    rule = "completed_task_immutable"


# ---- conflicts --------------------------------------------------------------


class PalletBusyElsewhere(Conflict):
    rule = "pallet_busy_elsewhere"


class CellUnavailable(Conflict):
    rule = "cell_unavailable"


class MachineInactive(Conflict):
    rule = "machine_inactive"


class LockContention(Conflict):
    """Another operation held the rows too long or the database broke a deadlock; retry."""

    rule = "lock_contention"


class NoActiveAssignment(Conflict):
    rule = "no_active_assignment"


# ---- validation -------------------------------------------------------------


class InvalidQuantity(ValidationError):
    rule = "invalid_quantity"


class PartMismatch(ValidationError):
    rule = "part_mismatch"


class StationModeViolation(ValidationError):
    rule = "station_mode_violation"
