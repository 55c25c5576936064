"""Project financial query endpoints: budgets, costs, totals and portfolio overview."""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from rdplan.core.auth import (
    RequestUserContext,
    ensure_project_finance_access,
    get_current_user_context,
    require_permissions,
)
from rdplan.db.dependencies import get_db_session
from rdplan.models.entities import Permission
from rdplan.services.financial_totals import FinancialTotalsService

router = APIRouter(tags=["finance"])


def _finance_service(db: Session, context: RequestUserContext, project_id: UUID) -> FinancialTotalsService:
    service = FinancialTotalsService(db)
    ensure_project_finance_access(context, service.real_costs.require_project(project_id))
    return service


@router.get("/projects/{project_id}/submitted-budget")
def get_submitted_budget(
    project_id: UUID,
    year: int | None = Query(default=None, ge=2000),
    workpackage_id: UUID | None = None,
    context: RequestUserContext = Depends(get_current_user_context),
    db: Session = Depends(get_db_session),
) -> dict[str, object]:
    service = _finance_service(db, context, project_id)
    budget = service.budgets.get_submitted_budget(project_id, year=year, workpackage_id=workpackage_id)
    return service.serialize_submitted_budget(budget)


@router.get("/projects/{project_id}/real-cost")
def get_real_cost(
    project_id: UUID,
    year: int | None = Query(default=None, ge=2000),
    workpackage_id: UUID | None = None,
    context: RequestUserContext = Depends(get_current_user_context),
    db: Session = Depends(get_db_session),
) -> dict[str, object]:
    service = _finance_service(db, context, project_id)
    real = service.real_costs.get_real_cost(project_id, year=year, workpackage_id=workpackage_id)
    completed = service.real_costs.get_completed_cost(project_id, year=year, workpackage_id=workpackage_id)
    return {
        **service.serialize_real_cost(real),
        "completed_costs": service.serialize_completed_cost(completed),
    }


@router.get("/projects/{project_id}/totals")
def get_project_totals(
    project_id: UUID,
    year: int | None = Query(default=None, ge=2000),
    include_yearly: bool = True,
    context: RequestUserContext = Depends(get_current_user_context),
    db: Session = Depends(get_db_session),
) -> dict[str, object]:
    service = _finance_service(db, context, project_id)
    totals = service.get_totals(project_id, year=year, include_yearly=include_yearly)
    return service.serialize_totals(totals)


@router.get("/projects/{project_id}/workpackage-breakdown")
def get_workpackage_breakdown(
    project_id: UUID,
    year: int | None = Query(default=None, ge=2000),
    context: RequestUserContext = Depends(get_current_user_context),
    db: Session = Depends(get_db_session),
) -> dict[str, object]:
    service = _finance_service(db, context, project_id)
    rows = service.get_workpackage_breakdown(project_id, year=year)
    return {"items": [service.serialize_workpackage(row) for row in rows]}


@router.get("/projects/{project_id}/monthly-spend")
def get_monthly_spend(
    project_id: UUID,
    year: int = Query(ge=2000),
    context: RequestUserContext = Depends(get_current_user_context),
    db: Session = Depends(get_db_session),
) -> dict[str, object]:
    service = _finance_service(db, context, project_id)
    rows = service.real_costs.monthly_spend(project_id, year=year)
    return {"items": [service.serialize_monthly_spend(row) for row in rows]}


@router.get("/finance/overview")
def get_portfolio_overview(
    only_active: bool = True,
    _: RequestUserContext = Depends(require_permissions(Permission.ADMIN, Permission.MANAGER)),
    db: Session = Depends(get_db_session),
) -> dict[str, object]:
    service = FinancialTotalsService(db)
    return service.serialize_overview(service.portfolio_overview(only_active=only_active))


@router.get("/finance/monthly")
def get_portfolio_monthly(
    year: int = Query(ge=2000),
    month: int | None = Query(default=None, ge=1, le=12),
    _: RequestUserContext = Depends(require_permissions(Permission.ADMIN)),
    db: Session = Depends(get_db_session),
) -> dict[str, object]:
    service = FinancialTotalsService(db)
    rows = service.portfolio_monthly(year, month=month)
    return {"year": year, "items": [service.serialize_portfolio_month(row) for row in rows]}
