"""Allocation validation and the write path that enforces the monthly occupancy ceiling."""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from decimal import Decimal
from uuid import UUID

import structlog
from fastapi import HTTPException, status
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from rdplan.core.money import OCCUPANCY_CEILING, OCCUPANCY_STEP, ONE, ZERO, fits_step, percent_label, to_decimal
from rdplan.models.allocation_key import AllocationKey, target_for
from rdplan.models.entities import AllocationRecord, ProjectState, User, Workpackage
from rdplan.repositories.planning_repository import PlanningRepository

logger = structlog.get_logger(__name__)

LOCKED_PROJECT_STATES = {ProjectState.APPROVED, ProjectState.COMPLETED}
COMMITTED_PROJECT_STATES = {ProjectState.APPROVED, ProjectState.IN_DEVELOPMENT}
MIN_ALLOCATION_YEAR = 2000


@dataclass(frozen=True, slots=True)
class AllocationValidationResult:
    is_valid: bool
    message: str | None = None


VALID = AllocationValidationResult(is_valid=True)


@dataclass(slots=True)
class AllocationEntry:
    key: AllocationKey
    occupancy: Decimal


@dataclass(slots=True)
class MonthlyOccupancy:
    month: int
    committed: Decimal
    pending: Decimal
    leave: Decimal
    # Time on draft, completed or cancelled projects.
    other: Decimal
    total: Decimal

    @property
    def available(self) -> Decimal:
        return max(ZERO, OCCUPANCY_CEILING - self.total)


def make_key(workpackage_id: UUID | None, user_id: UUID, month: int, year: int) -> AllocationKey:
    return AllocationKey(target=target_for(workpackage_id), user_id=user_id, month=month, year=year)


def _invalid(message: str) -> AllocationValidationResult:
    return AllocationValidationResult(is_valid=False, message=message)


def _month_index(year: int, month: int) -> int:
    return year * 12 + month


def _outside_period(workpackage: Workpackage, year: int, month: int) -> bool:
    current = _month_index(year, month)
    if workpackage.start_date is not None:
        if current < _month_index(workpackage.start_date.year, workpackage.start_date.month):
            return True
    if workpackage.end_date is not None:
        if current > _month_index(workpackage.end_date.year, workpackage.end_date.month):
            return True
    return False


def _ceiling_message(user: User, month: int, year: int, committed: Decimal, proposed: Decimal) -> str:
    return (
        f"Total occupancy for {user.name} in {month}/{year} would exceed 100% "
        f"({percent_label(committed + proposed)}). Already allocated: {percent_label(committed)}."
    )


class AllocationService:
    """Validates and writes allocation rows for one person-month at a time or in batches."""

    def __init__(self, db: Session) -> None:
        self.db = db
        self.repo = PlanningRepository(db)

    @staticmethod
    def serialize_allocation(record: AllocationRecord) -> dict[str, object]:
        return {
            "id": str(record.id),
            "workpackage_id": str(record.workpackage_id) if record.workpackage_id else None,
            "user_id": str(record.user_id),
            "month": record.month,
            "year": record.year,
            "occupancy": str(record.occupancy),
        }

    @staticmethod
    def serialize_monthly_occupancy(row: MonthlyOccupancy) -> dict[str, object]:
        return {
            "month": row.month,
            "committed": str(row.committed),
            "pending": str(row.pending),
            "leave": str(row.leave),
            "other": str(row.other),
            "total": str(row.total),
            "available": str(row.available),
        }

    # ---------- Lookups ----------
    def _require_user(self, user_id: UUID) -> User:
        user = self.repo.get_user(user_id)
        if user is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found.")
        return user

    def _require_workpackage(self, workpackage_id: UUID) -> Workpackage:
        workpackage = self.repo.get_workpackage(workpackage_id)
        if workpackage is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Workpackage not found.")
        return workpackage

    # ---------- Validation ----------
    @staticmethod
    def _check_inputs(key: AllocationKey, occupancy: Decimal) -> AllocationValidationResult:
        if occupancy < ZERO or occupancy > ONE:
            return _invalid("Occupancy must be between 0 and 1.")
        if not fits_step(occupancy, OCCUPANCY_STEP):
            return _invalid(f"Occupancy must have at most 4 decimal places, got {occupancy}.")
        if key.month < 1 or key.month > 12:
            return _invalid("Month must be between 1 and 12.")
        if key.year < MIN_ALLOCATION_YEAR:
            return _invalid(f"Year must be {MIN_ALLOCATION_YEAR} or later.")
        return VALID

    @staticmethod
    def _check_period(workpackage: Workpackage | None, key: AllocationKey) -> AllocationValidationResult:
        if workpackage is None or not _outside_period(workpackage, key.year, key.month):
            return VALID
        return _invalid(
            f"{key.month}/{key.year} is outside the period of workpackage {workpackage.name} "
            f"({workpackage.start_date} to {workpackage.end_date})."
        )

    @staticmethod
    def _check_project_state(workpackage: Workpackage | None) -> AllocationValidationResult:
        if workpackage is None:
            return VALID
        project = workpackage.project
        if project.state in LOCKED_PROJECT_STATES:
            return _invalid(f"Project {project.name} is {project.state.value}; its allocations cannot be changed.")
        return VALID

    def _committed_occupancy(self, key: AllocationKey, *, skip: Iterable[AllocationKey] = ()) -> Decimal:
        skipped = set(skip)
        total = ZERO
        for record in self.repo.list_allocations(user_id=key.user_id, month=key.month, year=key.year):
            if make_key(record.workpackage_id, record.user_id, record.month, record.year) in skipped:
                continue
            total += record.occupancy
        return total

    def validate_key(
        self,
        key: AllocationKey,
        occupancy: Decimal | int | float | str,
        *,
        exclude_current: bool = False,
    ) -> AllocationValidationResult:
        proposed = to_decimal(occupancy)
        result = self._check_inputs(key, proposed)
        if not result.is_valid:
            return result

        workpackage = self._require_workpackage(key.workpackage_id) if key.workpackage_id is not None else None
        user = self._require_user(key.user_id)

        result = self._check_period(workpackage, key)
        if not result.is_valid:
            return result

        committed = self._committed_occupancy(key, skip=[key] if exclude_current else [])
        if committed + proposed > OCCUPANCY_CEILING:
            return _invalid(_ceiling_message(user, key.month, key.year, committed, proposed))

        return self._check_project_state(workpackage)

    def validate(
        self,
        workpackage_id: UUID | None,
        user_id: UUID,
        month: int,
        year: int,
        occupancy: Decimal | int | float | str,
        exclude_current: bool = False,
    ) -> AllocationValidationResult:
        """Check a proposed allocation without writing anything.

        A ``workpackage_id`` of ``None`` targets the person's leave bucket, which
        counts toward the same monthly ceiling but has no period or project state.
        """

        key = make_key(workpackage_id, user_id, month, year)
        return self.validate_key(key, occupancy, exclude_current=exclude_current)

    def _ensure_valid(self, key: AllocationKey, occupancy: Decimal, *, exclude_current: bool) -> None:
        result = self.validate_key(key, occupancy, exclude_current=exclude_current)
        if result.is_valid:
            return
        logger.info(
            "allocation_rejected",
            user_id=str(key.user_id),
            workpackage_id=str(key.workpackage_id) if key.workpackage_id else None,
            month=key.month,
            year=key.year,
            occupancy=str(occupancy),
            reason=result.message,
        )
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=result.message)

    # ---------- Single writes ----------
    def _write(self, fn: Callable[[], AllocationRecord]) -> AllocationRecord:
        try:
            return self.repo.run_in_transaction(fn)
        except IntegrityError as exc:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Allocation conflicts with an existing record.",
            ) from exc

    def create_allocation(self, key: AllocationKey, occupancy: Decimal | int | float | str) -> AllocationRecord:
        value = to_decimal(occupancy)

        def write() -> AllocationRecord:
            self.repo.lock_users([key.user_id])
            if self.repo.get_allocation(key) is not None:
                raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Allocation already exists.")
            self._ensure_valid(key, value, exclude_current=False)
            return self.repo.add_allocation(key, value)

        return self._write(write)

    def update_allocation(self, key: AllocationKey, occupancy: Decimal | int | float | str) -> AllocationRecord:
        value = to_decimal(occupancy)

        def write() -> AllocationRecord:
            self.repo.lock_users([key.user_id])
            if self.repo.get_allocation(key) is None:
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Allocation not found.")
            self._ensure_valid(key, value, exclude_current=True)
            return self.repo.update_allocation(key, value)

        return self._write(write)

    def upsert_allocation(self, key: AllocationKey, occupancy: Decimal | int | float | str) -> AllocationRecord:
        value = to_decimal(occupancy)

        def write() -> AllocationRecord:
            self.repo.lock_users([key.user_id])
            self._ensure_valid(key, value, exclude_current=True)
            return self.repo.upsert_allocation(key, value)

        return self._write(write)

    def delete_allocation(self, key: AllocationKey) -> None:
        def write() -> None:
            self.repo.lock_users([key.user_id])
            if key.workpackage_id is not None:
                result = self._check_project_state(self._require_workpackage(key.workpackage_id))
                if not result.is_valid:
                    raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=result.message)
            if not self.repo.delete_allocation(key):
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Allocation not found.")

        self.repo.run_in_transaction(write)

    # ---------- Batch writes ----------
    def bulk_upsert_allocations(self, entries: Sequence[AllocationEntry]) -> list[AllocationRecord]:
        """Write every entry or none of them.

        Each (user, month, year) bucket is checked against the rows already stored
        for it outside the batch plus every batch entry that lands in it.
        """

        seen: set[AllocationKey] = set()
        for entry in entries:
            if entry.key in seen:
                raise HTTPException(
                    status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                    detail=f"Duplicate allocation for user {entry.key.user_id} in {entry.key.month}/{entry.key.year}.",
                )
            seen.add(entry.key)

        normalized = [AllocationEntry(key=entry.key, occupancy=to_decimal(entry.occupancy)) for entry in entries]

        def write() -> list[AllocationRecord]:
            self.repo.lock_users(entry.key.user_id for entry in normalized)
            self._ensure_batch_valid(normalized, batch_keys=seen)
            return [self.repo.upsert_allocation(entry.key, entry.occupancy) for entry in normalized]

        try:
            records = self.repo.run_in_transaction(write)
        except IntegrityError as exc:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Allocation batch conflicts with an existing record.",
            ) from exc

        logger.info("allocation_batch_written", entries=len(records))
        return records

    def _ensure_batch_valid(self, entries: Sequence[AllocationEntry], *, batch_keys: set[AllocationKey]) -> None:
        buckets: dict[tuple[UUID, int, int], list[AllocationEntry]] = defaultdict(list)
        for entry in entries:
            result = self._check_inputs(entry.key, entry.occupancy)
            if result.is_valid and entry.key.workpackage_id is not None:
                workpackage = self._require_workpackage(entry.key.workpackage_id)
                result = self._check_period(workpackage, entry.key)
                if result.is_valid:
                    result = self._check_project_state(workpackage)
            if not result.is_valid:
                self._reject_batch(entry, result.message)
            buckets[entry.key.bucket].append(entry)

        for (user_id, month, year), bucket_entries in buckets.items():
            user = self._require_user(user_id)
            first = bucket_entries[0]
            committed = self._committed_occupancy(first.key, skip=batch_keys)
            proposed = sum((entry.occupancy for entry in bucket_entries), ZERO)
            if committed + proposed > OCCUPANCY_CEILING:
                self._reject_batch(first, _ceiling_message(user, month, year, committed, proposed))

    @staticmethod
    def _reject_batch(entry: AllocationEntry, message: str | None) -> None:
        logger.info(
            "allocation_batch_rejected",
            user_id=str(entry.key.user_id),
            month=entry.key.month,
            year=entry.key.year,
            reason=message,
        )
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=message)

    # ---------- Reads ----------
    def user_monthly_occupancy(self, user_id: UUID, year: int) -> list[MonthlyOccupancy]:
        self._require_user(user_id)
        records = self.repo.list_allocations(user_id=user_id, year=year)

        rows: list[MonthlyOccupancy] = []
        for month in range(1, 13):
            committed = pending = leave = other = total = ZERO
            for record in records:
                if record.month != month:
                    continue
                total += record.occupancy
                if record.workpackage is None:
                    leave += record.occupancy
                elif record.workpackage.project.state in COMMITTED_PROJECT_STATES:
                    committed += record.occupancy
                elif record.workpackage.project.state == ProjectState.PENDING:
                    pending += record.occupancy
                else:
                    other += record.occupancy
            rows.append(
                MonthlyOccupancy(
                    month=month,
                    committed=committed,
                    pending=pending,
                    leave=leave,
                    other=other,
                    total=total,
                )
            )
        return rows
