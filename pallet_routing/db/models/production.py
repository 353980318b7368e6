from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Index, Integer, Numeric, Text, UniqueConstraint, text
from sqlalchemy.orm import Mapped, mapped_column

from pallet_routing.db.base import Base, IntPkMixin, TimestampMixin, enum_column
from pallet_routing.db.models.enums import PartStatus, StageStatus

QUANTITY = Numeric(18, 6)


class Part(IntPkMixin, TimestampMixin, Base):
    """Part to be produced; status is derived from its pallets by aggregation."""
    __tablename__ = "parts"

    name: Mapped[str] = mapped_column(Text, nullable=False)
    total_quantity: Mapped[Decimal] = mapped_column(QUANTITY, nullable=False)
    status: Mapped[PartStatus] = mapped_column(
        enum_column(PartStatus), nullable=False, default=PartStatus.PENDING
    )
    route_id: Mapped[int] = mapped_column(ForeignKey("routes.id"), nullable=False, index=True)
    # Last suffix handed out for generated pallet names; never decreases.
    pallet_seq: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")


class Pallet(IntPkMixin, TimestampMixin, Base):
    """Physical batch of one part's quantity moving through the route together."""
    __tablename__ = "pallets"

    part_id: Mapped[int] = mapped_column(ForeignKey("parts.id", ondelete="CASCADE"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    quantity: Mapped[Decimal] = mapped_column(QUANTITY, nullable=False)


class PalletStageProgress(IntPkMixin, TimestampMixin, Base):
    """Per-pallet status on one route stage (created lazily on first touch)."""
    __tablename__ = "pallet_stage_progress"
    __table_args__ = (
        UniqueConstraint("pallet_id", "route_stage_id", name="uq_pallet_stage_progress_pallet_stage"),
    )

    pallet_id: Mapped[int] = mapped_column(ForeignKey("pallets.id", ondelete="CASCADE"), nullable=False, index=True)
    route_stage_id: Mapped[int] = mapped_column(ForeignKey("route_stages.id"), nullable=False, index=True)
    status: Mapped[StageStatus] = mapped_column(
        enum_column(StageStatus), nullable=False, default=StageStatus.NOT_PROCESSED
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class PartRouteProgress(IntPkMixin, TimestampMixin, Base):
    """Aggregate of all pallets of a part on one route stage."""
    __tablename__ = "part_route_progress"
    __table_args__ = (
        UniqueConstraint("part_id", "route_stage_id", name="uq_part_route_progress_part_stage"),
    )

    part_id: Mapped[int] = mapped_column(ForeignKey("parts.id", ondelete="CASCADE"), nullable=False, index=True)
    route_stage_id: Mapped[int] = mapped_column(ForeignKey("route_stages.id"), nullable=False)
    status: Mapped[StageStatus] = mapped_column(
        enum_column(StageStatus), nullable=False, default=StageStatus.PENDING
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class MachineAssignment(IntPkMixin, Base):
    """Binding of a pallet to a machine; open while completed_at is null."""
    __tablename__ = "machine_assignments"
    __table_args__ = (
        # At most one open assignment per pallet.
        Index(
            "uq_machine_assignments_open_pallet",
            "pallet_id",
            unique=True,
            postgresql_where=text("completed_at IS NULL"),
            sqlite_where=text("completed_at IS NULL"),
        ),
    )

    pallet_id: Mapped[int] = mapped_column(ForeignKey("pallets.id", ondelete="CASCADE"), nullable=False, index=True)
    machine_id: Mapped[int] = mapped_column(ForeignKey("machines.id"), nullable=False, index=True)
    assigned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
