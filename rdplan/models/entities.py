"""ORM entities for research project planning and budgeting."""

from __future__ import annotations

import enum
import uuid
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    text,
)
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from rdplan.db.base import Base


class ProjectState(str, enum.Enum):
    DRAFT = "draft"
    PENDING = "pending"
    APPROVED = "approved"
    IN_DEVELOPMENT = "in_development"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Permission(str, enum.Enum):
    ADMIN = "admin"
    MANAGER = "manager"
    COMMON = "common"


class EmploymentRegime(str, enum.Enum):
    FULL_TIME = "full_time"
    PART_TIME = "part_time"


class MaterialCategory(str, enum.Enum):
    MATERIALS = "materials"
    THIRD_PARTY_SERVICES = "third_party_services"
    OTHER_SERVICES = "other_services"
    TRAVEL = "travel"
    OTHER_COSTS = "other_costs"
    STRUCTURE_COSTS = "structure_costs"


def _enum_column(enum_cls: type[enum.Enum], name: str) -> SQLEnum:
    return SQLEnum(
        enum_cls,
        name=name,
        values_callable=lambda members: [member.value for member in members],
    )


class User(Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(320), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    # Monthly base salary; NULL means the person adds no staff cost.
    salary: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    regime: Mapped[EmploymentRegime] = mapped_column(
        _enum_column(EmploymentRegime, "employment_regime"),
        nullable=False,
        default=EmploymentRegime.FULL_TIME,
    )
    permission: Mapped[Permission] = mapped_column(
        _enum_column(Permission, "permission_level"),
        nullable=False,
        default=Permission.COMMON,
    )
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)


class Project(Base):
    __tablename__ = "projects"
    __table_args__ = (
        CheckConstraint("eti_rate >= 0", name="ck_projects_eti_rate_non_negative"),
        CheckConstraint(
            "financing_rate >= 0 AND financing_rate <= 1",
            name="ck_projects_financing_rate_fraction",
        ),
        Index("ix_projects_state", "state"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(String(2000), nullable=True)
    responsible_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id"), nullable=True
    )
    state: Mapped[ProjectState] = mapped_column(
        _enum_column(ProjectState, "project_state"),
        nullable=False,
        default=ProjectState.DRAFT,
    )
    eti_rate: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    # Canonical 0..1 fraction. Percentages are converted at the API boundary.
    financing_rate: Mapped[Decimal] = mapped_column(Numeric(7, 6), nullable=False, default=Decimal("0"))
    overhead: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False, default=Decimal("0"))
    approved_snapshot: Mapped[dict | None] = mapped_column(
        JSON().with_variant(JSONB(), "postgresql"), nullable=True
    )
    start_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)


class Workpackage(Base):
    __tablename__ = "workpackages"
    __table_args__ = (Index("ix_workpackages_project_id", "project_id"),)

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    project_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("projects.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    start_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    project: Mapped[Project] = relationship(lazy="joined")


class Task(Base):
    __tablename__ = "tasks"
    __table_args__ = (Index("ix_tasks_workpackage_id", "workpackage_id"),)

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workpackage_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("workpackages.id"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class Material(Base):
    __tablename__ = "materials"
    __table_args__ = (
        CheckConstraint("unit_price >= 0", name="ck_materials_unit_price_non_negative"),
        CheckConstraint("quantity >= 0", name="ck_materials_quantity_non_negative"),
        CheckConstraint("month >= 1 AND month <= 12", name="ck_materials_month_range"),
        Index("ix_materials_workpackage_year", "workpackage_id", "year"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workpackage_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("workpackages.id"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    category: Mapped[MaterialCategory] = mapped_column(
        _enum_column(MaterialCategory, "material_category"),
        nullable=False,
        default=MaterialCategory.MATERIALS,
    )
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    # True once the item was actually acquired (realized spend).
    acquired: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    workpackage: Mapped[Workpackage] = relationship(lazy="joined")


class AllocationRecord(Base):
    __tablename__ = "allocation_records"
    __table_args__ = (
        CheckConstraint("month >= 1 AND month <= 12", name="ck_allocations_month_range"),
        CheckConstraint("year >= 2000", name="ck_allocations_year_min"),
        CheckConstraint("occupancy >= 0 AND occupancy <= 1", name="ck_allocations_occupancy_fraction"),
        UniqueConstraint(
            "workpackage_id",
            "user_id",
            "month",
            "year",
            name="uq_allocations_workpackage_user_month_year",
        ),
        Index(
            "uq_allocations_leave_user_month_year",
            "user_id",
            "month",
            "year",
            unique=True,
            postgresql_where=text("workpackage_id IS NULL"),
            sqlite_where=text("workpackage_id IS NULL"),
        ),
        Index("ix_allocations_user_month_year", "user_id", "month", "year"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    # NULL marks non-project time (leave, absence).
    workpackage_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("workpackages.id"), nullable=True
    )
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    occupancy: Mapped[Decimal] = mapped_column(Numeric(5, 4), nullable=False)

    user: Mapped[User] = relationship(lazy="joined")
    workpackage: Mapped[Workpackage | None] = relationship(lazy="joined")
