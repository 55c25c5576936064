"""Approval snapshot: frozen copy of a project's plan taken when it is approved.

The snapshot is stored as JSON on ``Project.approved_snapshot`` using the keys
of the legacy approval workflow (``valor_eti``, ``recursos``, ``ocupacao`` ...),
so snapshots captured before this service existed remain readable.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from decimal import Decimal
from typing import Any
from uuid import UUID

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from rdplan.core.money import ZERO
from rdplan.models.entities import Project
from rdplan.repositories.planning_repository import PlanningRepository

logger = structlog.get_logger(__name__)

SNAPSHOT_VERSION = 1


class MalformedSnapshotError(ValueError):
    """Stored snapshot cannot be decoded into an ``ApprovalSnapshot``."""


class _SnapshotModel(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")


class SnapshotUser(_SnapshotModel):
    salary: Decimal | None = Field(default=None, alias="salario")


class SnapshotResource(_SnapshotModel):
    user_id: str = Field(alias="userId")
    month: int = Field(alias="mes", ge=1, le=12)
    year: int = Field(alias="ano", ge=2000)
    occupancy: Decimal = Field(alias="ocupacao", ge=0, le=1)
    user: SnapshotUser = Field(default_factory=SnapshotUser)

    @field_validator("user_id", mode="before")
    @classmethod
    def stringify_user_id(cls, value: Any) -> Any:
        if isinstance(value, UUID):
            return str(value)
        return value


class SnapshotMaterial(_SnapshotModel):
    price: Decimal = Field(alias="preco", ge=0)
    quantity: int = Field(alias="quantidade", ge=0)
    category: str | None = Field(default=None, alias="rubrica")
    year: int = Field(alias="ano_utilizacao")


class SnapshotWorkpackage(_SnapshotModel):
    id: str
    name: str = Field(default="", alias="nome")
    resources: tuple[SnapshotResource, ...] = Field(default=(), alias="recursos")
    materials: tuple[SnapshotMaterial, ...] = Field(default=(), alias="materiais")

    @field_validator("id", mode="before")
    @classmethod
    def stringify_id(cls, value: Any) -> Any:
        if isinstance(value, UUID):
            return str(value)
        return value


class ApprovalSnapshot(_SnapshotModel):
    version: int = Field(default=SNAPSHOT_VERSION, alias="versao")
    eti_rate: Decimal = Field(default=ZERO, alias="valor_eti", ge=0)
    workpackages: tuple[SnapshotWorkpackage, ...] = ()

    @field_validator("eti_rate", mode="before")
    @classmethod
    def null_rate_is_zero(cls, value: Any) -> Any:
        return ZERO if value is None else value

    def resources(
        self,
        *,
        year: int | None = None,
        workpackage_id: str | UUID | None = None,
    ) -> list[SnapshotResource]:
        wanted_wp = str(workpackage_id) if workpackage_id is not None else None
        return [
            resource
            for workpackage in self.workpackages
            if wanted_wp is None or workpackage.id == wanted_wp
            for resource in workpackage.resources
            if year is None or resource.year == year
        ]

    def occupancy_by_year(
        self,
        *,
        year: int | None = None,
        workpackage_id: str | UUID | None = None,
    ) -> dict[int, Decimal]:
        totals: dict[int, Decimal] = {}
        for resource in self.resources(year=year, workpackage_id=workpackage_id):
            totals[resource.year] = totals.get(resource.year, ZERO) + resource.occupancy
        return dict(sorted(totals.items()))

    def total_occupancy(self, *, year: int | None = None, workpackage_id: str | UUID | None = None) -> Decimal:
        return sum(self.occupancy_by_year(year=year, workpackage_id=workpackage_id).values(), ZERO)

    def resources_for_user(self, user_id: str | UUID, *, year: int | None = None) -> list[SnapshotResource]:
        wanted = str(user_id)
        return [resource for resource in self.resources(year=year) if resource.user_id == wanted]


def parse_snapshot(raw: Mapping[str, Any] | str | bytes | None) -> ApprovalSnapshot:
    """Decode a stored snapshot, failing closed on anything unexpected."""

    if raw is None:
        raise MalformedSnapshotError("Snapshot is empty.")
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError as exc:
            raise MalformedSnapshotError(f"Snapshot is not valid JSON: {exc}") from exc
    if not isinstance(raw, Mapping):
        raise MalformedSnapshotError("Snapshot must be a JSON object.")

    try:
        snapshot = ApprovalSnapshot.model_validate(raw)
    except ValidationError as exc:
        raise MalformedSnapshotError(f"Snapshot has unexpected shape: {exc.error_count()} error(s).") from exc

    if snapshot.version != SNAPSHOT_VERSION:
        raise MalformedSnapshotError(f"Unsupported snapshot version {snapshot.version}.")
    return snapshot


def capture_snapshot(repo: PlanningRepository, project: Project) -> dict[str, Any]:
    """Build the JSON document frozen on the project at approval time."""

    workpackages: list[dict[str, Any]] = []
    for workpackage in repo.list_workpackages(project.id):
        allocations = repo.list_allocations(workpackage_id=workpackage.id)
        materials = repo.list_materials(workpackage_id=workpackage.id)
        workpackages.append(
            {
                "id": str(workpackage.id),
                "nome": workpackage.name,
                "recursos": [
                    {
                        "userId": str(row.user_id),
                        "mes": row.month,
                        "ano": row.year,
                        "ocupacao": str(row.occupancy),
                        "user": {"salario": str(row.user.salary) if row.user.salary is not None else None},
                    }
                    for row in allocations
                ],
                "materiais": [
                    {
                        "preco": str(row.unit_price),
                        "quantidade": row.quantity,
                        "rubrica": row.category.value,
                        "ano_utilizacao": row.year,
                    }
                    for row in materials
                ],
            }
        )

    document = {
        "versao": SNAPSHOT_VERSION,
        "valor_eti": str(project.eti_rate),
        "workpackages": workpackages,
    }
    logger.info(
        "approval_snapshot_captured",
        project_id=str(project.id),
        workpackages=len(workpackages),
    )
    return document
