"""Repository helpers for projects, allocations and materials."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from decimal import Decimal
from typing import TypeVar
from uuid import UUID

from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from rdplan.models.allocation_key import AllocationKey
from rdplan.models.entities import (
    AllocationRecord,
    Material,
    Project,
    ProjectState,
    Task,
    User,
    Workpackage,
)

T = TypeVar("T")


class PlanningRepository:
    """Persistence operations used by the budget and allocation services."""

    def __init__(self, db: Session) -> None:
        self.db = db

    # ---------- Projects ----------
    def get_project(self, project_id: UUID) -> Project | None:
        return self.db.scalar(select(Project).where(Project.id == project_id))

    def list_projects(self, *, states: Iterable[ProjectState] | None = None) -> list[Project]:
        query = select(Project)
        if states is not None:
            query = query.where(Project.state.in_(list(states)))
        return self.db.scalars(query.order_by(Project.name.asc())).all()

    def add_project(self, project: Project) -> Project:
        self.db.add(project)
        self.db.flush()
        return project

    # ---------- Workpackages and tasks ----------
    def get_workpackage(self, workpackage_id: UUID) -> Workpackage | None:
        return self.db.scalar(select(Workpackage).where(Workpackage.id == workpackage_id))

    def list_workpackages(self, project_id: UUID) -> list[Workpackage]:
        return self.db.scalars(
            select(Workpackage)
            .where(Workpackage.project_id == project_id)
            .order_by(Workpackage.start_date.asc(), Workpackage.name.asc())
        ).all()

    def list_tasks_for_project(self, project_id: UUID) -> list[Task]:
        return self.db.scalars(
            select(Task)
            .join(Workpackage, Workpackage.id == Task.workpackage_id)
            .where(Workpackage.project_id == project_id)
        ).all()

    # ---------- Users ----------
    def get_user(self, user_id: UUID) -> User | None:
        return self.db.scalar(select(User).where(User.id == user_id))

    def lock_users(self, user_ids: Iterable[UUID]) -> list[User]:
        """Row-lock the given people until the surrounding transaction ends.

        Allocation writes for one person are serialized through this lock so the
        occupancy ceiling is re-checked against committed rows only.
        """

        ids = sorted(set(user_ids), key=str)
        if not ids:
            return []
        return self.db.scalars(select(User).where(User.id.in_(ids)).order_by(User.id).with_for_update()).all()

    # ---------- Allocations ----------
    def list_allocations(
        self,
        *,
        project_id: UUID | None = None,
        workpackage_id: UUID | None = None,
        user_id: UUID | None = None,
        month: int | None = None,
        year: int | None = None,
    ) -> list[AllocationRecord]:
        query = select(AllocationRecord)
        conditions = []
        if project_id is not None:
            query = query.join(Workpackage, Workpackage.id == AllocationRecord.workpackage_id)
            conditions.append(Workpackage.project_id == project_id)
        if workpackage_id is not None:
            conditions.append(AllocationRecord.workpackage_id == workpackage_id)
        if user_id is not None:
            conditions.append(AllocationRecord.user_id == user_id)
        if month is not None:
            conditions.append(AllocationRecord.month == month)
        if year is not None:
            conditions.append(AllocationRecord.year == year)
        if conditions:
            query = query.where(and_(*conditions))

        return self.db.scalars(
            query.order_by(
                AllocationRecord.year.asc(),
                AllocationRecord.month.asc(),
                AllocationRecord.user_id.asc(),
            )
        ).all()

    def list_allocation_years(self, project_id: UUID) -> list[int]:
        return self.db.scalars(
            select(AllocationRecord.year)
            .join(Workpackage, Workpackage.id == AllocationRecord.workpackage_id)
            .where(Workpackage.project_id == project_id)
            .distinct()
            .order_by(AllocationRecord.year.asc())
        ).all()

    def get_allocation(self, key: AllocationKey) -> AllocationRecord | None:
        conditions = [
            AllocationRecord.user_id == key.user_id,
            AllocationRecord.month == key.month,
            AllocationRecord.year == key.year,
        ]
        if key.workpackage_id is None:
            conditions.append(AllocationRecord.workpackage_id.is_(None))
        else:
            conditions.append(AllocationRecord.workpackage_id == key.workpackage_id)
        return self.db.scalar(select(AllocationRecord).where(and_(*conditions)))

    def add_allocation(self, key: AllocationKey, occupancy: Decimal) -> AllocationRecord:
        record = AllocationRecord(
            workpackage_id=key.workpackage_id,
            user_id=key.user_id,
            month=key.month,
            year=key.year,
            occupancy=occupancy,
        )
        self.db.add(record)
        self.db.flush()
        return record

    def update_allocation(self, key: AllocationKey, occupancy: Decimal) -> AllocationRecord | None:
        record = self.get_allocation(key)
        if record is None:
            return None
        record.occupancy = occupancy
        self.db.flush()
        return record

    def upsert_allocation(self, key: AllocationKey, occupancy: Decimal) -> AllocationRecord:
        record = self.update_allocation(key, occupancy)
        if record is None:
            record = self.add_allocation(key, occupancy)
        return record

    def delete_allocation(self, key: AllocationKey) -> bool:
        record = self.get_allocation(key)
        if record is None:
            return False
        self.db.delete(record)
        self.db.flush()
        return True

    # ---------- Materials ----------
    def list_materials(
        self,
        *,
        project_id: UUID | None = None,
        workpackage_id: UUID | None = None,
        year: int | None = None,
        month: int | None = None,
        acquired: bool | None = None,
    ) -> list[Material]:
        query = select(Material)
        conditions = []
        if project_id is not None:
            query = query.join(Workpackage, Workpackage.id == Material.workpackage_id)
            conditions.append(Workpackage.project_id == project_id)
        if workpackage_id is not None:
            conditions.append(Material.workpackage_id == workpackage_id)
        if year is not None:
            conditions.append(Material.year == year)
        if month is not None:
            conditions.append(Material.month == month)
        if acquired is not None:
            conditions.append(Material.acquired.is_(acquired))
        if conditions:
            query = query.where(and_(*conditions))

        return self.db.scalars(query.order_by(Material.year.asc(), Material.month.asc(), Material.name.asc())).all()

    def list_material_years(self, project_id: UUID) -> list[int]:
        return self.db.scalars(
            select(Material.year)
            .join(Workpackage, Workpackage.id == Material.workpackage_id)
            .where(Workpackage.project_id == project_id)
            .distinct()
            .order_by(Material.year.asc())
        ).all()

    # ---------- Transactions ----------
    def run_in_transaction(self, fn: Callable[[], T]) -> T:
        """Run ``fn`` atomically: every write it performs commits, or none does."""

        try:
            with self.db.begin_nested():
                result = fn()
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return result
