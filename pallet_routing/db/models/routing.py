from __future__ import annotations

from typing import Optional

from sqlalchemy import Boolean, ForeignKey, Integer, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from pallet_routing.db.base import Base, IntPkMixin, TimestampMixin, enum_column
from pallet_routing.db.models.enums import MachineStatus


class Stage(IntPkMixin, TimestampMixin, Base):
    """Production stage (first-level flow step)."""
    __tablename__ = "stages"

    name: Mapped[str] = mapped_column(Text, nullable=False)
    # Marks the packaging/hand-off stage that closes routing.
    is_final: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class Substage(IntPkMixin, TimestampMixin, Base):
    """Optional refinement of a stage (second-level flow step)."""
    __tablename__ = "substages"

    stage_id: Mapped[int] = mapped_column(ForeignKey("stages.id", ondelete="CASCADE"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)


class Route(IntPkMixin, TimestampMixin, Base):
    """Ordered template of stages a part must pass through."""
    __tablename__ = "routes"

    name: Mapped[str] = mapped_column(Text, nullable=False)


class RouteStage(IntPkMixin, Base):
    """One step of a route. Immutable once a part references the route."""
    __tablename__ = "route_stages"
    __table_args__ = (UniqueConstraint("route_id", "sequence_number", name="uq_route_stages_route_sequence"),)

    route_id: Mapped[int] = mapped_column(ForeignKey("routes.id", ondelete="CASCADE"), nullable=False, index=True)
    stage_id: Mapped[int] = mapped_column(ForeignKey("stages.id"), nullable=False)
    substage_id: Mapped[Optional[int]] = mapped_column(ForeignKey("substages.id"), nullable=True)
    sequence_number: Mapped[int] = mapped_column(Integer, nullable=False)


class Machine(IntPkMixin, TimestampMixin, Base):
    """Machine (work station) that executes stages."""
    __tablename__ = "machines"

    name: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[MachineStatus] = mapped_column(
        enum_column(MachineStatus), nullable=False, default=MachineStatus.ACTIVE
    )
    # Station picks its own work instead of receiving a shift task.
    self_service: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class MachineStage(Base):
    """Capability link: machine can execute a stage."""
    __tablename__ = "machine_stages"

    machine_id: Mapped[int] = mapped_column(ForeignKey("machines.id", ondelete="CASCADE"), primary_key=True)
    stage_id: Mapped[int] = mapped_column(ForeignKey("stages.id", ondelete="CASCADE"), primary_key=True)


class MachineSubstage(Base):
    """Capability link: machine can execute a substage."""
    __tablename__ = "machine_substages"

    machine_id: Mapped[int] = mapped_column(ForeignKey("machines.id", ondelete="CASCADE"), primary_key=True)
    substage_id: Mapped[int] = mapped_column(ForeignKey("substages.id", ondelete="CASCADE"), primary_key=True)
