"""planning and budgeting schema

Revision ID: 20261018_0001
Revises:
Create Date: 2026-10-18
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


project_state = postgresql.ENUM(
    "draft",
    "pending",
    "approved",
    "in_development",
    "completed",
    "cancelled",
    name="project_state",
    create_type=False,
)
permission_level = postgresql.ENUM("admin", "manager", "common", name="permission_level", create_type=False)
employment_regime = postgresql.ENUM("full_time", "part_time", name="employment_regime", create_type=False)
material_category = postgresql.ENUM(
    "materials",
    "third_party_services",
    "other_services",
    "travel",
    "other_costs",
    "structure_costs",
    name="material_category",
    create_type=False,
)


def upgrade() -> None:
    project_state.create(op.get_bind(), checkfirst=True)
    permission_level.create(op.get_bind(), checkfirst=True)
    employment_regime.create(op.get_bind(), checkfirst=True)
    material_category.create(op.get_bind(), checkfirst=True)

    op.create_table(
        "users",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False, unique=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("salary", sa.Numeric(12, 2), nullable=True),
        sa.Column("regime", employment_regime, nullable=False, server_default="full_time"),
        sa.Column("permission", permission_level, nullable=False, server_default="common"),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "projects",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.String(length=2000), nullable=True),
        sa.Column("responsible_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("state", project_state, nullable=False, server_default="draft"),
        sa.Column("eti_rate", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("financing_rate", sa.Numeric(7, 6), nullable=False, server_default="0"),
        sa.Column("overhead", sa.Numeric(5, 2), nullable=False, server_default="0"),
        sa.Column("approved_snapshot", postgresql.JSONB(), nullable=True),
        sa.Column("start_date", sa.Date(), nullable=True),
        sa.Column("end_date", sa.Date(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("eti_rate >= 0", name="ck_projects_eti_rate_non_negative"),
        sa.CheckConstraint(
            "financing_rate >= 0 AND financing_rate <= 1",
            name="ck_projects_financing_rate_fraction",
        ),
    )
    op.create_index("ix_projects_state", "projects", ["state"])

    op.create_table(
        "workpackages",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("project_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("projects.id"), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("completed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("start_date", sa.Date(), nullable=True),
        sa.Column("end_date", sa.Date(), nullable=True),
    )
    op.create_index("ix_workpackages_project_id", "workpackages", ["project_id"])

    op.create_table(
        "tasks",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column(
            "workpackage_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("workpackages.id"),
            nullable=False,
        ),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("completed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
    )
    op.create_index("ix_tasks_workpackage_id", "tasks", ["workpackage_id"])

    op.create_table(
        "materials",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column(
            "workpackage_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("workpackages.id"),
            nullable=False,
        ),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("unit_price", sa.Numeric(12, 2), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("category", material_category, nullable=False, server_default="materials"),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("acquired", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.CheckConstraint("unit_price >= 0", name="ck_materials_unit_price_non_negative"),
        sa.CheckConstraint("quantity >= 0", name="ck_materials_quantity_non_negative"),
        sa.CheckConstraint("month >= 1 AND month <= 12", name="ck_materials_month_range"),
    )
    op.create_index("ix_materials_workpackage_year", "materials", ["workpackage_id", "year"])

    op.create_table(
        "allocation_records",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column(
            "workpackage_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("workpackages.id"),
            nullable=True,
        ),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("occupancy", sa.Numeric(5, 4), nullable=False),
        sa.CheckConstraint("month >= 1 AND month <= 12", name="ck_allocations_month_range"),
        sa.CheckConstraint("year >= 2000", name="ck_allocations_year_min"),
        sa.CheckConstraint("occupancy >= 0 AND occupancy <= 1", name="ck_allocations_occupancy_fraction"),
        sa.UniqueConstraint(
            "workpackage_id",
            "user_id",
            "month",
            "year",
            name="uq_allocations_workpackage_user_month_year",
        ),
    )
    op.create_index(
        "uq_allocations_leave_user_month_year",
        "allocation_records",
        ["user_id", "month", "year"],
        unique=True,
        postgresql_where=sa.text("workpackage_id IS NULL"),
    )
    op.create_index("ix_allocations_user_month_year", "allocation_records", ["user_id", "month", "year"])


def downgrade() -> None:
    op.drop_index("ix_allocations_user_month_year", table_name="allocation_records")
    op.drop_index("uq_allocations_leave_user_month_year", table_name="allocation_records")
    op.drop_table("allocation_records")
    op.drop_index("ix_materials_workpackage_year", table_name="materials")
    op.drop_table("materials")
    op.drop_index("ix_tasks_workpackage_id", table_name="tasks")
    op.drop_table("tasks")
    op.drop_index("ix_workpackages_project_id", table_name="workpackages")
    op.drop_table("workpackages")
    op.drop_index("ix_projects_state", table_name="projects")
    op.drop_table("projects")
    op.drop_table("users")

    material_category.drop(op.get_bind(), checkfirst=True)
    employment_regime.drop(op.get_bind(), checkfirst=True)
    permission_level.drop(op.get_bind(), checkfirst=True)
    project_state.drop(op.get_bind(), checkfirst=True)
