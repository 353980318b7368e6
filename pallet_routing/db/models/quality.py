from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Integer, Numeric, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from pallet_routing.db.base import Base, IntPkMixin, TimestampMixin, enum_column
from pallet_routing.db.models.enums import MovementReason, ReclamationStatus


class Reclamation(IntPkMixin, TimestampMixin, Base):
    """Defect write-off reducing a pallet's usable quantity."""
    __tablename__ = "reclamations"

    part_id: Mapped[int] = mapped_column(ForeignKey("parts.id", ondelete="CASCADE"), nullable=False, index=True)
    pallet_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("pallets.id", ondelete="SET NULL"), nullable=True, index=True
    )
    route_stage_id: Mapped[int] = mapped_column(ForeignKey("route_stages.id"), nullable=False)
    machine_id: Mapped[Optional[int]] = mapped_column(ForeignKey("machines.id"), nullable=True)
    reported_by_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    quantity: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    status: Mapped[ReclamationStatus] = mapped_column(
        enum_column(ReclamationStatus), nullable=False, default=ReclamationStatus.NEW
    )
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class InventoryMovement(IntPkMixin, Base):
    """Signed quantity change on a part's stock (defects out, returns in)."""
    __tablename__ = "inventory_movements"

    part_id: Mapped[int] = mapped_column(ForeignKey("parts.id", ondelete="CASCADE"), nullable=False, index=True)
    pallet_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("pallets.id", ondelete="SET NULL"), nullable=True
    )
    delta_quantity: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    reason: Mapped[MovementReason] = mapped_column(enum_column(MovementReason), nullable=False)
    reclamation_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("reclamations.id", ondelete="SET NULL"), nullable=True
    )
    return_to_route_stage_id: Mapped[Optional[int]] = mapped_column(ForeignKey("route_stages.id"), nullable=True)
    user_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
