"""Actual (real) cost of a project from live allocations and materials."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from uuid import UUID

from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from rdplan.core.money import ZERO, adjusted_salary
from rdplan.models.entities import AllocationRecord, Material, MaterialCategory, Project
from rdplan.repositories.planning_repository import PlanningRepository


@dataclass(slots=True)
class UserCost:
    user_id: UUID
    user_name: str
    base_salary: Decimal
    adjusted_salary: Decimal
    occupancy: Decimal = ZERO
    cost: Decimal = ZERO


@dataclass(slots=True)
class MaterialLine:
    material_id: UUID
    name: str
    workpackage_id: UUID
    unit_price: Decimal
    quantity: int
    total: Decimal
    year: int
    month: int
    acquired: bool


@dataclass(slots=True)
class CategoryCost:
    category: MaterialCategory
    total: Decimal = ZERO
    materials: list[MaterialLine] = field(default_factory=list)


@dataclass(slots=True)
class YearCost:
    year: int
    resource_cost: Decimal = ZERO
    material_cost: Decimal = ZERO
    occupancy: Decimal = ZERO

    @property
    def total(self) -> Decimal:
        return self.resource_cost + self.material_cost


@dataclass(slots=True)
class RealCost:
    resource_cost: Decimal
    material_cost: Decimal
    per_user: list[UserCost]
    per_category: list[CategoryCost]
    by_year: list[YearCost]

    @property
    def total(self) -> Decimal:
        return self.resource_cost + self.material_cost


@dataclass(slots=True)
class CompletedCost:
    """Cost already incurred: elapsed months of staff time, acquired materials."""

    resources: Decimal
    materials: Decimal

    @property
    def total(self) -> Decimal:
        return self.resources + self.materials


@dataclass(slots=True)
class MonthlySpend:
    month: int
    year: int
    estimated: Decimal
    realized: Decimal


def is_month_elapsed(year: int, month: int, today: date) -> bool:
    """Whether (year, month) is strictly before the current month."""

    return year < today.year or (year == today.year and month < today.month)


def allocation_cost(record: AllocationRecord) -> Decimal | None:
    salary = record.user.salary
    if not salary:
        return None
    return record.occupancy * adjusted_salary(salary)


def material_cost(material: Material) -> Decimal:
    return material.unit_price * Decimal(material.quantity)


def material_line(material: Material) -> MaterialLine:
    return MaterialLine(
        material_id=material.id,
        name=material.name,
        workpackage_id=material.workpackage_id,
        unit_price=material.unit_price,
        quantity=material.quantity,
        total=material_cost(material),
        year=material.year,
        month=material.month,
        acquired=material.acquired,
    )


def summarize_real_cost(allocations: Iterable[AllocationRecord], materials: Iterable[Material]) -> RealCost:
    resource_total = ZERO
    per_user: dict[UUID, UserCost] = {}
    by_year: dict[int, YearCost] = {}

    for record in allocations:
        year_bucket = by_year.setdefault(record.year, YearCost(year=record.year))
        year_bucket.occupancy += record.occupancy

        cost = allocation_cost(record)
        if cost is None:
            continue
        resource_total += cost
        year_bucket.resource_cost += cost

        user_row = per_user.get(record.user_id)
        if user_row is None:
            user_row = UserCost(
                user_id=record.user_id,
                user_name=record.user.name,
                base_salary=record.user.salary,
                adjusted_salary=adjusted_salary(record.user.salary),
            )
            per_user[record.user_id] = user_row
        user_row.occupancy += record.occupancy
        user_row.cost += cost

    material_total = ZERO
    per_category: dict[MaterialCategory, CategoryCost] = {}
    for material in materials:
        line_total = material_cost(material)
        material_total += line_total
        by_year.setdefault(material.year, YearCost(year=material.year)).material_cost += line_total

        category_row = per_category.setdefault(material.category, CategoryCost(category=material.category))
        category_row.total += line_total
        category_row.materials.append(material_line(material))

    return RealCost(
        resource_cost=resource_total,
        material_cost=material_total,
        per_user=sorted(per_user.values(), key=lambda row: (row.user_name, str(row.user_id))),
        per_category=sorted(per_category.values(), key=lambda row: row.category.value),
        by_year=[by_year[year] for year in sorted(by_year)],
    )


class RealCostCalculator:
    """Real cost, realized-vs-projected split, and monthly spend of a project."""

    def __init__(self, db: Session, *, today: Callable[[], date] = date.today) -> None:
        self.db = db
        self.repo = PlanningRepository(db)
        self.today = today

    def require_project(self, project_id: UUID) -> Project:
        project = self.repo.get_project(project_id)
        if project is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Project not found.")
        return project

    def require_project_workpackage(self, project_id: UUID, workpackage_id: UUID | None) -> None:
        if workpackage_id is None:
            return
        workpackage = self.repo.get_workpackage(workpackage_id)
        if workpackage is None or workpackage.project_id != project_id:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Workpackage not found.")

    def get_real_cost(
        self,
        project_id: UUID,
        *,
        year: int | None = None,
        workpackage_id: UUID | None = None,
    ) -> RealCost:
        project = self.require_project(project_id)
        self.require_project_workpackage(project.id, workpackage_id)

        allocations = self.repo.list_allocations(project_id=project.id, workpackage_id=workpackage_id, year=year)
        materials = self.repo.list_materials(project_id=project.id, workpackage_id=workpackage_id, year=year)
        return summarize_real_cost(allocations, materials)

    def get_completed_cost(
        self,
        project_id: UUID,
        *,
        year: int | None = None,
        workpackage_id: UUID | None = None,
    ) -> CompletedCost:
        project = self.require_project(project_id)
        self.require_project_workpackage(project.id, workpackage_id)
        today = self.today()

        resources = ZERO
        for record in self.repo.list_allocations(project_id=project.id, workpackage_id=workpackage_id, year=year):
            if not is_month_elapsed(record.year, record.month, today):
                continue
            cost = allocation_cost(record)
            if cost is not None:
                resources += cost

        materials = sum(
            (
                material_cost(material)
                for material in self.repo.list_materials(
                    project_id=project.id,
                    workpackage_id=workpackage_id,
                    year=year,
                    acquired=True,
                )
            ),
            ZERO,
        )
        return CompletedCost(resources=resources, materials=materials)

    def monthly_spend(self, project_id: UUID, *, year: int) -> list[MonthlySpend]:
        project = self.require_project(project_id)
        today = self.today()

        allocations = self.repo.list_allocations(project_id=project.id, year=year)
        materials = self.repo.list_materials(project_id=project.id, year=year)

        rows: list[MonthlySpend] = []
        for month in range(1, 13):
            staff = ZERO
            for record in allocations:
                if record.month != month:
                    continue
                cost = allocation_cost(record)
                if cost is not None:
                    staff += cost

            month_materials = [material for material in materials if material.month == month]
            estimated_materials = sum((material_cost(material) for material in month_materials), ZERO)
            acquired_materials = sum(
                (material_cost(material) for material in month_materials if material.acquired),
                ZERO,
            )

            realized_staff = staff if is_month_elapsed(year, month, today) else ZERO
            rows.append(
                MonthlySpend(
                    month=month,
                    year=year,
                    estimated=staff + estimated_materials,
                    realized=realized_staff + acquired_materials,
                )
            )
        return rows
