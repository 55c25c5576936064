"""ORM model package."""

from rdplan.models.entities import (
    AllocationRecord,
    EmploymentRegime,
    Material,
    MaterialCategory,
    Permission,
    Project,
    ProjectState,
    Task,
    User,
    Workpackage,
)

__all__ = [
    "AllocationRecord",
    "EmploymentRegime",
    "Material",
    "MaterialCategory",
    "Permission",
    "Project",
    "ProjectState",
    "Task",
    "User",
    "Workpackage",
]
