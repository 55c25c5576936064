"""Project financial indicators and portfolio-level aggregates."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from uuid import UUID

import structlog
from fastapi import HTTPException
from sqlalchemy.orm import Session

from rdplan.core.money import (
    AT_RISK_COST_RATIO,
    HEALTHY_COST_RATIO,
    HUNDRED,
    ONE,
    OVERHEAD_PENALTY_RATE,
    ZERO,
    fraction_to_percent,
    safe_div,
)
from rdplan.models.entities import Project, ProjectState
from rdplan.repositories.planning_repository import PlanningRepository
from rdplan.services.real_cost import (
    CompletedCost,
    MaterialLine,
    MonthlySpend,
    RealCost,
    allocation_cost,
    is_month_elapsed,
    material_line,
)
from rdplan.services.submitted_budget import BudgetMode, SubmittedBudget, SubmittedBudgetCalculator

logger = structlog.get_logger(__name__)

ACTIVE_PROJECT_STATES = (ProjectState.APPROVED, ProjectState.IN_DEVELOPMENT)
# Every project past approval, including closed ones, contributes to monthly spend.
SPENDING_PROJECT_STATES = (
    ProjectState.APPROVED,
    ProjectState.IN_DEVELOPMENT,
    ProjectState.COMPLETED,
    ProjectState.CANCELLED,
)


@dataclass(slots=True)
class FinancialIndicators:
    submitted_budget: Decimal
    financing_rate: Decimal
    financed_value: Decimal
    real_cost: RealCost
    completed_costs: CompletedCost
    overhead: Decimal
    result: Decimal
    vab: Decimal
    margin: Decimal
    vab_over_staff_cost: Decimal
    slack: Decimal


@dataclass(slots=True)
class YearTotals:
    year: int
    occupancy: Decimal
    indicators: FinancialIndicators


@dataclass(slots=True)
class ProjectTotals:
    project_id: UUID
    year: int | None
    budget_mode: BudgetMode
    indicators: FinancialIndicators
    years: list[int] = field(default_factory=list)
    yearly: list[YearTotals] = field(default_factory=list)


@dataclass(slots=True)
class WorkpackageFinance:
    workpackage_id: UUID
    name: str
    budget_mode: BudgetMode
    submitted_budget: Decimal
    occupancy: Decimal
    real_cost: RealCost


@dataclass(slots=True)
class PortfolioProject:
    project_id: UUID
    name: str
    state: ProjectState
    responsible_id: UUID | None
    physical_progress: Decimal
    totals: ProjectTotals


@dataclass(slots=True)
class PortfolioOverview:
    only_active: bool
    projects_considered: int
    projects: list[PortfolioProject]
    submitted_budget: Decimal = ZERO
    financed_value: Decimal = ZERO
    real_cost: Decimal = ZERO
    completed_cost: Decimal = ZERO
    overhead: Decimal = ZERO
    result: Decimal = ZERO
    slack: Decimal = ZERO
    healthy: int = 0
    at_risk: int = 0
    critical: int = 0
    positive_result: int = 0
    negative_result: int = 0
    average_financing_rate: Decimal = ZERO
    average_margin: Decimal = ZERO
    average_financial_progress: Decimal = ZERO
    average_physical_progress: Decimal = ZERO


@dataclass(slots=True)
class StaffMonthCost:
    user_id: UUID
    user_name: str
    occupancy: Decimal = ZERO
    estimated: Decimal = ZERO
    realized: Decimal = ZERO
    eti_value: Decimal = ZERO


@dataclass(slots=True)
class PortfolioMonth:
    """Revenue and spend of the whole portfolio in one month."""

    month: int
    year: int
    elapsed: bool
    revenue: Decimal = ZERO
    staff_estimated: Decimal = ZERO
    staff_realized: Decimal = ZERO
    materials_estimated: Decimal = ZERO
    materials_realized: Decimal = ZERO
    eti_value_estimated: Decimal = ZERO
    eti_value_realized: Decimal = ZERO
    staff: list[StaffMonthCost] = field(default_factory=list)
    materials: list[MaterialLine] = field(default_factory=list)

    @property
    def estimated(self) -> Decimal:
        return self.staff_estimated + self.materials_estimated

    @property
    def realized(self) -> Decimal:
        return self.staff_realized + self.materials_realized


def financial_indicators(
    *,
    submitted_budget: Decimal,
    financing_rate: Decimal,
    real_cost: RealCost,
    completed_costs: CompletedCost,
) -> FinancialIndicators:
    """Apply the fixed budget formulas. ``financing_rate`` is a 0..1 fraction."""

    financed_value = submitted_budget * financing_rate
    overhead = real_cost.resource_cost * OVERHEAD_PENALTY_RATE
    result = financed_value - real_cost.total + overhead
    vab = financed_value - real_cost.material_cost
    return FinancialIndicators(
        submitted_budget=submitted_budget,
        financing_rate=financing_rate,
        financed_value=financed_value,
        real_cost=real_cost,
        completed_costs=completed_costs,
        overhead=overhead,
        result=result,
        vab=vab,
        margin=safe_div(result, submitted_budget) * HUNDRED,
        vab_over_staff_cost=safe_div(vab, real_cost.resource_cost),
        slack=submitted_budget - real_cost.total + overhead,
    )


def physical_progress(completed_tasks: int, total_tasks: int) -> Decimal:
    """Share of completed tasks as a whole percentage."""

    if total_tasks == 0:
        return ZERO
    return (Decimal(completed_tasks) / Decimal(total_tasks) * HUNDRED).quantize(ONE, rounding=ROUND_HALF_UP)


class FinancialTotalsService:
    """Combines submitted budget and real cost into the project financial indicators."""

    def __init__(self, db: Session, *, today: Callable[[], date] = date.today) -> None:
        self.db = db
        self.repo = PlanningRepository(db)
        self.today = today
        self.budgets = SubmittedBudgetCalculator(db, today=today)
        self.real_costs = self.budgets.real_costs

    # ---------- Serialization ----------
    @staticmethod
    def serialize_real_cost(real: RealCost) -> dict[str, object]:
        return {
            "resource_cost": str(real.resource_cost),
            "material_cost": str(real.material_cost),
            "total": str(real.total),
            "per_user": [
                {
                    "user_id": str(row.user_id),
                    "user_name": row.user_name,
                    "base_salary": str(row.base_salary),
                    "adjusted_salary": str(row.adjusted_salary),
                    "occupancy": str(row.occupancy),
                    "cost": str(row.cost),
                }
                for row in real.per_user
            ],
            "per_category": [
                {
                    "category": row.category.value,
                    "total": str(row.total),
                    "materials": [
                        {
                            "id": str(line.material_id),
                            "name": line.name,
                            "workpackage_id": str(line.workpackage_id),
                            "unit_price": str(line.unit_price),
                            "quantity": line.quantity,
                            "total": str(line.total),
                            "year": line.year,
                            "month": line.month,
                            "acquired": line.acquired,
                        }
                        for line in row.materials
                    ],
                }
                for row in real.per_category
            ],
            "by_year": [
                {
                    "year": row.year,
                    "resource_cost": str(row.resource_cost),
                    "material_cost": str(row.material_cost),
                    "total": str(row.total),
                    "occupancy": str(row.occupancy),
                }
                for row in real.by_year
            ],
        }

    @staticmethod
    def serialize_completed_cost(completed: CompletedCost) -> dict[str, str]:
        return {
            "resources": str(completed.resources),
            "materials": str(completed.materials),
            "total": str(completed.total),
        }

    @staticmethod
    def serialize_submitted_budget(budget: SubmittedBudget) -> dict[str, object]:
        return {
            "total": str(budget.total),
            "mode": budget.mode.value,
            "total_allocation": str(budget.total_allocation),
            "eti_rate": str(budget.eti_rate),
            "details_by_year": [
                {"year": row.year, "occupancy": str(row.occupancy), "amount": str(row.amount)}
                for row in budget.details_by_year
            ],
        }

    @classmethod
    def serialize_indicators(cls, indicators: FinancialIndicators) -> dict[str, object]:
        return {
            "submitted_budget": str(indicators.submitted_budget),
            "financing_rate_percent": str(fraction_to_percent(indicators.financing_rate)),
            "financed_value": str(indicators.financed_value),
            "real_cost": cls.serialize_real_cost(indicators.real_cost),
            "completed_costs": cls.serialize_completed_cost(indicators.completed_costs),
            "overhead": str(indicators.overhead),
            "result": str(indicators.result),
            "vab": str(indicators.vab),
            "margin": str(indicators.margin),
            "vab_over_staff_cost": str(indicators.vab_over_staff_cost),
            "slack": str(indicators.slack),
        }

    @classmethod
    def serialize_totals(cls, totals: ProjectTotals) -> dict[str, object]:
        return {
            "project_id": str(totals.project_id),
            "year": totals.year,
            "budget_mode": totals.budget_mode.value,
            **cls.serialize_indicators(totals.indicators),
            "years": totals.years,
            "yearly": [
                {"year": row.year, "occupancy": str(row.occupancy), **cls.serialize_indicators(row.indicators)}
                for row in totals.yearly
            ],
        }

    @classmethod
    def serialize_workpackage(cls, row: WorkpackageFinance) -> dict[str, object]:
        return {
            "workpackage_id": str(row.workpackage_id),
            "name": row.name,
            "budget_mode": row.budget_mode.value,
            "submitted_budget": str(row.submitted_budget),
            "occupancy": str(row.occupancy),
            "real_cost": cls.serialize_real_cost(row.real_cost),
        }

    @staticmethod
    def serialize_monthly_spend(row: MonthlySpend) -> dict[str, object]:
        return {
            "month": row.month,
            "year": row.year,
            "estimated": str(row.estimated),
            "realized": str(row.realized),
        }

    @classmethod
    def serialize_overview(cls, overview: PortfolioOverview) -> dict[str, object]:
        return {
            "only_active": overview.only_active,
            "projects_considered": overview.projects_considered,
            "projects_with_finances": len(overview.projects),
            "projects": [
                {
                    "id": str(row.project_id),
                    "name": row.name,
                    "state": row.state.value,
                    "responsible_id": str(row.responsible_id) if row.responsible_id else None,
                    "physical_progress": str(row.physical_progress),
                    "finances": cls.serialize_totals(row.totals),
                }
                for row in overview.projects
            ],
            "consolidated": {
                "submitted_budget": str(overview.submitted_budget),
                "financed_value": str(overview.financed_value),
                "real_cost": str(overview.real_cost),
                "completed_cost": str(overview.completed_cost),
                "overhead": str(overview.overhead),
                "result": str(overview.result),
                "slack": str(overview.slack),
            },
            "classification": {
                "healthy": overview.healthy,
                "at_risk": overview.at_risk,
                "critical": overview.critical,
                "positive_result": overview.positive_result,
                "negative_result": overview.negative_result,
            },
            "average_financing_rate": str(overview.average_financing_rate),
            "average_margin": str(overview.average_margin),
            "average_financial_progress": str(overview.average_financial_progress),
            "average_physical_progress": str(overview.average_physical_progress),
        }

    @staticmethod
    def serialize_portfolio_month(row: PortfolioMonth) -> dict[str, object]:
        return {
            "month": row.month,
            "year": row.year,
            "elapsed": row.elapsed,
            "revenue": str(row.revenue),
            "estimated": str(row.estimated),
            "realized": str(row.realized),
            "staff_estimated": str(row.staff_estimated),
            "staff_realized": str(row.staff_realized),
            "materials_estimated": str(row.materials_estimated),
            "materials_realized": str(row.materials_realized),
            "eti_value_estimated": str(row.eti_value_estimated),
            "eti_value_realized": str(row.eti_value_realized),
            "staff": [
                {
                    "user_id": str(person.user_id),
                    "user_name": person.user_name,
                    "occupancy": str(person.occupancy),
                    "estimated": str(person.estimated),
                    "realized": str(person.realized),
                    "eti_value": str(person.eti_value),
                }
                for person in row.staff
            ],
            "materials": [
                {
                    "id": str(line.material_id),
                    "name": line.name,
                    "workpackage_id": str(line.workpackage_id),
                    "unit_price": str(line.unit_price),
                    "quantity": line.quantity,
                    "total": str(line.total),
                    "acquired": line.acquired,
                }
                for line in row.materials
            ],
        }

    # ---------- Queries ----------
    def project_years(self, project: Project) -> list[int]:
        if project.start_date is not None and project.end_date is not None:
            return list(range(project.start_date.year, project.end_date.year + 1))
        years = set(self.repo.list_allocation_years(project.id)) | set(self.repo.list_material_years(project.id))
        return sorted(years)

    def _indicators(self, project: Project, *, year: int | None) -> tuple[BudgetMode, Decimal, FinancialIndicators]:
        submitted = self.budgets.get_submitted_budget(project.id, year=year)
        real = self.real_costs.get_real_cost(project.id, year=year)
        completed = self.real_costs.get_completed_cost(project.id, year=year)
        indicators = financial_indicators(
            submitted_budget=submitted.total,
            financing_rate=project.financing_rate,
            real_cost=real,
            completed_costs=completed,
        )
        return submitted.mode, submitted.total_allocation, indicators

    def get_totals(
        self,
        project_id: UUID,
        *,
        year: int | None = None,
        include_yearly: bool = True,
    ) -> ProjectTotals:
        project = self.real_costs.require_project(project_id)
        mode, _, indicators = self._indicators(project, year=year)
        totals = ProjectTotals(project_id=project.id, year=year, budget_mode=mode, indicators=indicators)

        if year is None and include_yearly:
            totals.years = self.project_years(project)
            for each_year in totals.years:
                _, occupancy, year_indicators = self._indicators(project, year=each_year)
                totals.yearly.append(YearTotals(year=each_year, occupancy=occupancy, indicators=year_indicators))
        return totals

    def get_workpackage_breakdown(self, project_id: UUID, *, year: int | None = None) -> list[WorkpackageFinance]:
        project = self.real_costs.require_project(project_id)
        rows: list[WorkpackageFinance] = []
        for workpackage in self.repo.list_workpackages(project.id):
            submitted = self.budgets.get_submitted_budget(project.id, year=year, workpackage_id=workpackage.id)
            real = self.real_costs.get_real_cost(project.id, year=year, workpackage_id=workpackage.id)
            rows.append(
                WorkpackageFinance(
                    workpackage_id=workpackage.id,
                    name=workpackage.name,
                    budget_mode=submitted.mode,
                    submitted_budget=submitted.total,
                    occupancy=submitted.total_allocation,
                    real_cost=real,
                )
            )
        return rows

    def _physical_progress(self, project: Project) -> Decimal:
        tasks = self.repo.list_tasks_for_project(project.id)
        return physical_progress(sum(1 for task in tasks if task.completed), len(tasks))

    def portfolio_overview(self, *, only_active: bool = True) -> PortfolioOverview:
        projects = self.repo.list_projects(states=ACTIVE_PROJECT_STATES if only_active else None)

        rows: list[PortfolioProject] = []
        for project in projects:
            try:
                totals = self.get_totals(project.id)
                progress = self._physical_progress(project)
            except (HTTPException, ArithmeticError):
                # Database errors propagate and fail the whole overview.
                logger.exception("portfolio_project_failed", project_id=str(project.id))
                continue
            rows.append(
                PortfolioProject(
                    project_id=project.id,
                    name=project.name,
                    state=project.state,
                    responsible_id=project.responsible_id,
                    physical_progress=progress,
                    totals=totals,
                )
            )

        overview = PortfolioOverview(only_active=only_active, projects_considered=len(projects), projects=rows)
        for row in rows:
            indicators = row.totals.indicators
            overview.submitted_budget += indicators.submitted_budget
            overview.financed_value += indicators.financed_value
            overview.real_cost += indicators.real_cost.total
            overview.completed_cost += indicators.completed_costs.total
            overview.overhead += indicators.overhead
            overview.result += indicators.result
            overview.slack += indicators.slack

            if indicators.submitted_budget > ZERO:
                cost_ratio = indicators.real_cost.total / indicators.submitted_budget
                if cost_ratio <= HEALTHY_COST_RATIO:
                    overview.healthy += 1
                elif cost_ratio <= AT_RISK_COST_RATIO:
                    overview.at_risk += 1
                else:
                    overview.critical += 1
            if indicators.result > ZERO:
                overview.positive_result += 1
            elif indicators.result < ZERO:
                overview.negative_result += 1

        overview.average_financing_rate = safe_div(overview.financed_value, overview.submitted_budget) * HUNDRED
        overview.average_margin = safe_div(overview.result, overview.submitted_budget) * HUNDRED
        overview.average_financial_progress = safe_div(overview.completed_cost, overview.real_cost) * HUNDRED
        if rows:
            overview.average_physical_progress = sum((row.physical_progress for row in rows), ZERO) / Decimal(len(rows))
        return overview

    def portfolio_monthly(self, year: int, *, month: int | None = None) -> list[PortfolioMonth]:
        """Month-by-month revenue and spend across every project past approval.

        Revenue is the month's occupancy valued at the project's ETI rate (or, without
        a rate, its estimated staff and material cost) times the financing rate. Staff
        cost counts as realized once the month has elapsed; materials once acquired.
        """

        today = self.today()
        months = [month] if month is not None else list(range(1, 13))
        rows = {
            number: PortfolioMonth(month=number, year=year, elapsed=is_month_elapsed(year, number, today))
            for number in months
        }
        staff: dict[int, dict[UUID, StaffMonthCost]] = {number: {} for number in months}

        for project in self.repo.list_projects(states=SPENDING_PROJECT_STATES):
            allocations = self.repo.list_allocations(project_id=project.id, year=year, month=month)
            materials = self.repo.list_materials(project_id=project.id, year=year, month=month)
            for number, row in rows.items():
                occupancy = staff_cost = ZERO
                for record in allocations:
                    if record.month != number:
                        continue
                    cost = allocation_cost(record) or ZERO
                    eti_value = record.occupancy * project.eti_rate
                    occupancy += record.occupancy
                    staff_cost += cost

                    person = staff[number].get(record.user_id)
                    if person is None:
                        person = StaffMonthCost(user_id=record.user_id, user_name=record.user.name)
                        staff[number][record.user_id] = person
                        row.staff.append(person)
                    person.occupancy += record.occupancy
                    person.estimated += cost
                    person.eti_value += eti_value
                    row.eti_value_estimated += eti_value
                    if row.elapsed:
                        person.realized += cost
                        row.eti_value_realized += eti_value

                material_total = ZERO
                for material in materials:
                    if material.month != number:
                        continue
                    line = material_line(material)
                    row.materials.append(line)
                    material_total += line.total
                    if material.acquired:
                        row.materials_realized += line.total

                row.staff_estimated += staff_cost
                if row.elapsed:
                    row.staff_realized += staff_cost
                row.materials_estimated += material_total

                if project.eti_rate > ZERO:
                    base = occupancy * project.eti_rate
                else:
                    base = staff_cost + material_total
                row.revenue += base * project.financing_rate

        return list(rows.values())
