"""Project lifecycle: creation, submission and approval with snapshot capture."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

import structlog
from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from rdplan.core.money import FINANCING_RATE_STEP, ONE, ZERO, fits_step, fraction_to_percent
from rdplan.models.entities import Project, ProjectState
from rdplan.repositories.planning_repository import PlanningRepository
from rdplan.services.snapshot import capture_snapshot

logger = structlog.get_logger(__name__)


@dataclass(slots=True)
class ProjectCreateData:
    name: str
    description: str | None
    responsible_id: UUID | None
    eti_rate: Decimal
    financing_rate: Decimal
    overhead: Decimal
    start_date: date | None
    end_date: date | None


class ProjectService:
    """Creates projects and moves them through submission and approval."""

    def __init__(self, db: Session, *, today: Callable[[], date] = date.today) -> None:
        self.db = db
        self.repo = PlanningRepository(db)
        self.today = today

    @staticmethod
    def serialize_project(project: Project) -> dict[str, object]:
        return {
            "id": str(project.id),
            "name": project.name,
            "description": project.description,
            "responsible_id": str(project.responsible_id) if project.responsible_id else None,
            "state": project.state.value,
            "eti_rate": str(project.eti_rate),
            "financing_rate_percent": str(fraction_to_percent(project.financing_rate)),
            "overhead": str(project.overhead),
            "start_date": project.start_date.isoformat() if project.start_date else None,
            "end_date": project.end_date.isoformat() if project.end_date else None,
            "approved": project.approved_snapshot is not None,
            "created_at": project.created_at.isoformat(),
            "updated_at": project.updated_at.isoformat(),
        }

    def get_project(self, project_id: UUID) -> Project:
        project = self.repo.get_project(project_id)
        if project is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Project not found.")
        return project

    def create_project(self, data: ProjectCreateData) -> Project:
        if data.start_date and data.end_date and data.end_date < data.start_date:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="end_date must be greater than or equal to start_date.",
            )
        if data.financing_rate < ZERO or data.financing_rate > ONE:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="Financing rate must be between 0% and 100%.",
            )
        if not fits_step(data.financing_rate, FINANCING_RATE_STEP):
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="Financing rate must have at most 4 decimal places as a percentage.",
            )
        if data.responsible_id is not None and self.repo.get_user(data.responsible_id) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Responsible user not found.")

        now = datetime.utcnow()
        project = Project(
            name=data.name.strip(),
            description=data.description.strip() if data.description else None,
            responsible_id=data.responsible_id,
            state=ProjectState.DRAFT,
            eti_rate=data.eti_rate,
            financing_rate=data.financing_rate,
            overhead=data.overhead,
            start_date=data.start_date,
            end_date=data.end_date,
            created_at=now,
            updated_at=now,
        )
        self.repo.add_project(project)
        self.db.commit()
        self.db.refresh(project)
        return project

    def submit_project(self, project_id: UUID) -> Project:
        project = self.get_project(project_id)
        if project.state != ProjectState.DRAFT:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="Only draft projects can be submitted.",
            )
        project.state = ProjectState.PENDING
        project.updated_at = datetime.utcnow()
        self.db.commit()
        self.db.refresh(project)
        return project

    def approve_project(self, project_id: UUID) -> Project:
        """Freeze the current plan on the project and mark it approved.

        Projects whose start date has already been reached go straight to
        ``IN_DEVELOPMENT``.
        """

        project = self.get_project(project_id)
        if project.state != ProjectState.PENDING:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="Only pending projects can be approved.",
            )

        def approve() -> Project:
            project.approved_snapshot = capture_snapshot(self.repo, project)
            if project.start_date is not None and project.start_date <= self.today():
                project.state = ProjectState.IN_DEVELOPMENT
            else:
                project.state = ProjectState.APPROVED
            project.updated_at = datetime.utcnow()
            self.db.flush()
            return project

        self.repo.run_in_transaction(approve)
        self.db.refresh(project)
        logger.info("project_approved", project_id=str(project.id), state=project.state.value)
        return project
