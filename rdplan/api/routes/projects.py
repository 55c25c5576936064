"""Project creation and lifecycle endpoints."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from uuid import UUID

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from rdplan.core.auth import (
    RequestUserContext,
    ensure_project_finance_access,
    get_current_user_context,
    require_permissions,
)
from rdplan.core.money import percent_to_fraction
from rdplan.db.dependencies import get_db_session
from rdplan.models.entities import Permission
from rdplan.services.project_service import ProjectCreateData, ProjectService

router = APIRouter(tags=["projects"])


class ProjectCreatePayload(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: str | None = Field(default=None, max_length=2000)
    responsible_id: UUID | None = None
    eti_rate: Decimal = Field(default=Decimal("0"), ge=0)
    financing_rate_percent: Decimal = Field(default=Decimal("0"), ge=0, le=100, decimal_places=4)
    overhead: Decimal = Field(default=Decimal("0"), ge=0, le=100)
    start_date: date | None = None
    end_date: date | None = None


@router.post("/projects", status_code=status.HTTP_201_CREATED)
def create_project(
    payload: ProjectCreatePayload,
    context: RequestUserContext = Depends(require_permissions(Permission.ADMIN, Permission.MANAGER)),
    db: Session = Depends(get_db_session),
) -> dict[str, object]:
    service = ProjectService(db)
    project = service.create_project(
        ProjectCreateData(
            name=payload.name,
            description=payload.description,
            responsible_id=payload.responsible_id or context.user_id,
            eti_rate=payload.eti_rate,
            financing_rate=percent_to_fraction(payload.financing_rate_percent),
            overhead=payload.overhead,
            start_date=payload.start_date,
            end_date=payload.end_date,
        )
    )
    return service.serialize_project(project)


@router.get("/projects/{project_id}")
def get_project(
    project_id: UUID,
    context: RequestUserContext = Depends(get_current_user_context),
    db: Session = Depends(get_db_session),
) -> dict[str, object]:
    service = ProjectService(db)
    project = service.get_project(project_id)
    ensure_project_finance_access(context, project)
    return service.serialize_project(project)


@router.post("/projects/{project_id}/submit")
def submit_project(
    project_id: UUID,
    context: RequestUserContext = Depends(get_current_user_context),
    db: Session = Depends(get_db_session),
) -> dict[str, object]:
    service = ProjectService(db)
    ensure_project_finance_access(context, service.get_project(project_id))
    return service.serialize_project(service.submit_project(project_id))


@router.post("/projects/{project_id}/approve")
def approve_project(
    project_id: UUID,
    _: RequestUserContext = Depends(require_permissions(Permission.ADMIN, Permission.MANAGER)),
    db: Session = Depends(get_db_session),
) -> dict[str, object]:
    service = ProjectService(db)
    return service.serialize_project(service.approve_project(project_id))
