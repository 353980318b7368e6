"""Routing schema.

- stages, substages, routes, route_stages
- machines with stage/substage capabilities
- parts, pallets, pallet_stage_progress, part_route_progress
- machine_assignments (one open assignment per pallet)
- buffer_cells, pallet_buffer_cells (one open placement per pallet)
- reclamations, inventory_movements
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "3c1d5e7a9b20"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    ]


def upgrade() -> None:
    # Catalog
    op.create_table(
        "stages",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("is_final", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        *_timestamps(),
    )
    op.create_table(
        "substages",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("stage_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["stage_id"], ["stages.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_substages_stage_id", "substages", ["stage_id"])

    op.create_table(
        "routes",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.Text(), nullable=False),
        *_timestamps(),
    )
    op.create_table(
        "route_stages",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("route_id", sa.Integer(), nullable=False),
        sa.Column("stage_id", sa.Integer(), nullable=False),
        sa.Column("substage_id", sa.Integer(), nullable=True),
        sa.Column("sequence_number", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["route_id"], ["routes.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["stage_id"], ["stages.id"]),
        sa.ForeignKeyConstraint(["substage_id"], ["substages.id"]),
        sa.UniqueConstraint("route_id", "sequence_number", name="uq_route_stages_route_sequence"),
    )
    op.create_index("ix_route_stages_route_id", "route_stages", ["route_id"])

    # Machines
    op.create_table(
        "machines",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("status", sa.String(32), server_default="ACTIVE", nullable=False),
        sa.Column("self_service", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        *_timestamps(),
    )
    op.create_table(
        "machine_stages",
        sa.Column("machine_id", sa.Integer(), primary_key=True),
        sa.Column("stage_id", sa.Integer(), primary_key=True),
        sa.ForeignKeyConstraint(["machine_id"], ["machines.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["stage_id"], ["stages.id"], ondelete="CASCADE"),
    )
    op.create_table(
        "machine_substages",
        sa.Column("machine_id", sa.Integer(), primary_key=True),
        sa.Column("substage_id", sa.Integer(), primary_key=True),
        sa.ForeignKeyConstraint(["machine_id"], ["machines.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["substage_id"], ["substages.id"], ondelete="CASCADE"),
    )

    # Parts and pallets
    op.create_table(
        "parts",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("total_quantity", sa.Numeric(18, 6), nullable=False),
        sa.Column("status", sa.String(32), server_default="PENDING", nullable=False),
        sa.Column("route_id", sa.Integer(), nullable=False),
        sa.Column("pallet_seq", sa.Integer(), server_default="0", nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["route_id"], ["routes.id"]),
    )
    op.create_index("ix_parts_route_id", "parts", ["route_id"])

    op.create_table(
        "pallets",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("part_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("quantity", sa.Numeric(18, 6), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["part_id"], ["parts.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_pallets_part_id", "pallets", ["part_id"])

    op.create_table(
        "pallet_stage_progress",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("pallet_id", sa.Integer(), nullable=False),
        sa.Column("route_stage_id", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(32), server_default="NOT_PROCESSED", nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["pallet_id"], ["pallets.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["route_stage_id"], ["route_stages.id"]),
        sa.UniqueConstraint("pallet_id", "route_stage_id", name="uq_pallet_stage_progress_pallet_stage"),
    )
    op.create_index("ix_pallet_stage_progress_pallet_id", "pallet_stage_progress", ["pallet_id"])
    op.create_index("ix_pallet_stage_progress_route_stage_id", "pallet_stage_progress", ["route_stage_id"])

    op.create_table(
        "part_route_progress",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("part_id", sa.Integer(), nullable=False),
        sa.Column("route_stage_id", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(32), server_default="PENDING", nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["part_id"], ["parts.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["route_stage_id"], ["route_stages.id"]),
        sa.UniqueConstraint("part_id", "route_stage_id", name="uq_part_route_progress_part_stage"),
    )
    op.create_index("ix_part_route_progress_part_id", "part_route_progress", ["part_id"])

    op.create_table(
        "machine_assignments",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("pallet_id", sa.Integer(), nullable=False),
        sa.Column("machine_id", sa.Integer(), nullable=False),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["pallet_id"], ["pallets.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["machine_id"], ["machines.id"]),
    )
    op.create_index("ix_machine_assignments_pallet_id", "machine_assignments", ["pallet_id"])
    op.create_index("ix_machine_assignments_machine_id", "machine_assignments", ["machine_id"])
    op.create_index(
        "uq_machine_assignments_open_pallet",
        "machine_assignments",
        ["pallet_id"],
        unique=True,
        postgresql_where=sa.text("completed_at IS NULL"),
    )

    # Buffer
    op.create_table(
        "buffer_cells",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("code", sa.Text(), nullable=False),
        sa.Column("buffer_name", sa.Text(), nullable=True),
        sa.Column("capacity", sa.Integer(), nullable=False),
        sa.Column("current_load", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("status", sa.String(32), server_default="AVAILABLE", nullable=False),
        *_timestamps(),
        sa.CheckConstraint("capacity > 0", name="ck_buffer_cells_capacity_positive"),
    )
    op.create_table(
        "pallet_buffer_cells",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("pallet_id", sa.Integer(), nullable=False),
        sa.Column("cell_id", sa.Integer(), nullable=False),
        sa.Column("placed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("removed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["pallet_id"], ["pallets.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["cell_id"], ["buffer_cells.id"]),
    )
    op.create_index("ix_pallet_buffer_cells_pallet_id", "pallet_buffer_cells", ["pallet_id"])
    op.create_index("ix_pallet_buffer_cells_cell_id", "pallet_buffer_cells", ["cell_id"])
    op.create_index(
        "uq_pallet_buffer_cells_open_pallet",
        "pallet_buffer_cells",
        ["pallet_id"],
        unique=True,
        postgresql_where=sa.text("removed_at IS NULL"),
    )

    # Quality
    op.create_table(
        "reclamations",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("part_id", sa.Integer(), nullable=False),
        sa.Column("pallet_id", sa.Integer(), nullable=True),
        sa.Column("route_stage_id", sa.Integer(), nullable=False),
        sa.Column("machine_id", sa.Integer(), nullable=True),
        sa.Column("reported_by_id", sa.Integer(), nullable=True),
        sa.Column("quantity", sa.Numeric(18, 6), nullable=False),
        sa.Column("status", sa.String(32), server_default="NEW", nullable=False),
        sa.Column("note", sa.Text(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["part_id"], ["parts.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["pallet_id"], ["pallets.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["route_stage_id"], ["route_stages.id"]),
        sa.ForeignKeyConstraint(["machine_id"], ["machines.id"]),
    )
    op.create_index("ix_reclamations_part_id", "reclamations", ["part_id"])
    op.create_index("ix_reclamations_pallet_id", "reclamations", ["pallet_id"])

    op.create_table(
        "inventory_movements",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("part_id", sa.Integer(), nullable=False),
        sa.Column("pallet_id", sa.Integer(), nullable=True),
        sa.Column("delta_quantity", sa.Numeric(18, 6), nullable=False),
        sa.Column("reason", sa.String(32), nullable=False),
        sa.Column("reclamation_id", sa.Integer(), nullable=True),
        sa.Column("return_to_route_stage_id", sa.Integer(), nullable=True),
        sa.Column("user_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["part_id"], ["parts.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["pallet_id"], ["pallets.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["reclamation_id"], ["reclamations.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["return_to_route_stage_id"], ["route_stages.id"]),
    )
    op.create_index("ix_inventory_movements_part_id", "inventory_movements", ["part_id"])


def downgrade() -> None:
    # Drop tables in reverse dependency order
    op.drop_table("inventory_movements")
    op.drop_table("reclamations")
    op.drop_table("pallet_buffer_cells")
    op.drop_table("buffer_cells")
    op.drop_table("machine_assignments")
    op.drop_table("part_route_progress")
    op.drop_table("pallet_stage_progress")
    op.drop_table("pallets")
    op.drop_table("parts")
    op.drop_table("machine_substages")
    op.drop_table("machine_stages")
    op.drop_table("machines")
    op.drop_table("route_stages")
    op.drop_table("routes")
    op.drop_table("substages")
    op.drop_table("stages")
