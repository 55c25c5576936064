"""Submitted budget: what the funder is asked for (or has approved) for a project."""

from __future__ import annotations

import enum
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from uuid import UUID

import structlog
from sqlalchemy.orm import Session

from rdplan.core.money import ZERO
from rdplan.models.entities import ProjectState
from rdplan.repositories.planning_repository import PlanningRepository
from rdplan.services.real_cost import RealCostCalculator
from rdplan.services.snapshot import MalformedSnapshotError, parse_snapshot

logger = structlog.get_logger(__name__)


class BudgetMode(str, enum.Enum):
    ETI_DB = "ETI_DB"
    ETI_SNAPSHOT = "ETI_SNAPSHOT"
    REAL = "REAL"


@dataclass(slots=True)
class YearBudget:
    year: int
    occupancy: Decimal
    amount: Decimal


@dataclass(slots=True)
class SubmittedBudget:
    total: Decimal
    mode: BudgetMode
    total_allocation: Decimal
    eti_rate: Decimal
    details_by_year: list[YearBudget]


def _eti_budget(mode: BudgetMode, eti_rate: Decimal, occupancy_by_year: dict[int, Decimal]) -> SubmittedBudget:
    details = [
        YearBudget(year=year, occupancy=occupancy, amount=occupancy * eti_rate)
        for year, occupancy in sorted(occupancy_by_year.items())
    ]
    total_allocation = sum((row.occupancy for row in details), ZERO)
    return SubmittedBudget(
        total=total_allocation * eti_rate,
        mode=mode,
        total_allocation=total_allocation,
        eti_rate=eti_rate,
        details_by_year=details,
    )


class SubmittedBudgetCalculator:
    """Chooses between the live ETI rate, the approval snapshot and real cost."""

    def __init__(self, db: Session, *, today: Callable[[], date] = date.today) -> None:
        self.db = db
        self.repo = PlanningRepository(db)
        self.real_costs = RealCostCalculator(db, today=today)

    def get_submitted_budget(
        self,
        project_id: UUID,
        *,
        year: int | None = None,
        workpackage_id: UUID | None = None,
    ) -> SubmittedBudget:
        project = self.real_costs.require_project(project_id)
        self.real_costs.require_project_workpackage(project.id, workpackage_id)

        uses_snapshot = project.state == ProjectState.APPROVED and project.approved_snapshot is not None
        if not uses_snapshot:
            if project.eti_rate > ZERO:
                return _eti_budget(
                    BudgetMode.ETI_DB,
                    project.eti_rate,
                    self._live_occupancy_by_year(project.id, year=year, workpackage_id=workpackage_id),
                )
            return self._real_budget(project.id, year=year, workpackage_id=workpackage_id)

        try:
            snapshot = parse_snapshot(project.approved_snapshot)
        except MalformedSnapshotError as exc:
            logger.warning(
                "approval_snapshot_malformed",
                project_id=str(project.id),
                reason=str(exc),
            )
            return self._real_budget(project.id, year=year, workpackage_id=workpackage_id)

        if snapshot.eti_rate > ZERO:
            return _eti_budget(
                BudgetMode.ETI_SNAPSHOT,
                snapshot.eti_rate,
                snapshot.occupancy_by_year(year=year, workpackage_id=workpackage_id),
            )
        return self._real_budget(project.id, year=year, workpackage_id=workpackage_id)

    def _live_occupancy_by_year(
        self,
        project_id: UUID,
        *,
        year: int | None,
        workpackage_id: UUID | None,
    ) -> dict[int, Decimal]:
        totals: dict[int, Decimal] = {}
        for record in self.repo.list_allocations(project_id=project_id, workpackage_id=workpackage_id, year=year):
            totals[record.year] = totals.get(record.year, ZERO) + record.occupancy
        return totals

    def _real_budget(self, project_id: UUID, *, year: int | None, workpackage_id: UUID | None) -> SubmittedBudget:
        real = self.real_costs.get_real_cost(project_id, year=year, workpackage_id=workpackage_id)
        details = [YearBudget(year=row.year, occupancy=row.occupancy, amount=row.total) for row in real.by_year]
        return SubmittedBudget(
            total=real.total,
            mode=BudgetMode.REAL,
            total_allocation=sum((row.occupancy for row in details), ZERO),
            eti_rate=ZERO,
            details_by_year=details,
        )
