"""Identity of an allocation row: who, which month, and on what."""

from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID


@dataclass(frozen=True, slots=True)
class WorkpackageTarget:
    """Time committed to project work in a workpackage."""

    workpackage_id: UUID


@dataclass(frozen=True, slots=True)
class LeaveTarget:
    """Time outside any project (vacation, absence)."""


AllocationTarget = WorkpackageTarget | LeaveTarget

LEAVE = LeaveTarget()


def target_for(workpackage_id: UUID | None) -> AllocationTarget:
    if workpackage_id is None:
        return LEAVE
    return WorkpackageTarget(workpackage_id)


def target_workpackage_id(target: AllocationTarget) -> UUID | None:
    if isinstance(target, WorkpackageTarget):
        return target.workpackage_id
    return None


@dataclass(frozen=True, slots=True)
class AllocationKey:
    target: AllocationTarget
    user_id: UUID
    month: int
    year: int

    @property
    def workpackage_id(self) -> UUID | None:
        return target_workpackage_id(self.target)

    @property
    def bucket(self) -> tuple[UUID, int, int]:
        """Occupancy ceiling bucket shared by all targets of the person."""

        return (self.user_id, self.month, self.year)
