from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, Integer, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from pallet_routing.db.base import Base, IntPkMixin, TimestampMixin, enum_column
from pallet_routing.db.models.enums import CellStatus


class BufferCell(IntPkMixin, TimestampMixin, Base):
    """Capacity-limited holding location for pallets between machine operations."""
    __tablename__ = "buffer_cells"
    __table_args__ = (CheckConstraint("capacity > 0", name="capacity_positive"),)

    code: Mapped[str] = mapped_column(Text, nullable=False)
    buffer_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    capacity: Mapped[int] = mapped_column(Integer, nullable=False)
    # Cached count of open placements; always recomputed, never incremented.
    current_load: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[CellStatus] = mapped_column(
        enum_column(CellStatus), nullable=False, default=CellStatus.AVAILABLE
    )


class PalletBufferCell(IntPkMixin, Base):
    """Placement of a pallet in a cell; open while removed_at is null."""
    __tablename__ = "pallet_buffer_cells"
    __table_args__ = (
        Index(
            "uq_pallet_buffer_cells_open_pallet",
            "pallet_id",
            unique=True,
            postgresql_where=text("removed_at IS NULL"),
            sqlite_where=text("removed_at IS NULL"),
        ),
    )

    pallet_id: Mapped[int] = mapped_column(ForeignKey("pallets.id", ondelete="CASCADE"), nullable=False, index=True)
    cell_id: Mapped[int] = mapped_column(ForeignKey("buffer_cells.id"), nullable=False, index=True)
    placed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    removed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
