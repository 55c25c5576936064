"""Allocation validation and write endpoints."""

from __future__ import annotations

from decimal import Decimal
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from rdplan.core.auth import RequestUserContext, get_current_user_context, require_permissions
from rdplan.db.dependencies import get_db_session
from rdplan.models.allocation_key import AllocationKey
from rdplan.models.entities import Permission
from rdplan.services.allocation_service import AllocationEntry, AllocationService, make_key

router = APIRouter(tags=["allocations"])

WRITE_PERMISSIONS = (Permission.ADMIN, Permission.MANAGER)


class AllocationKeyPayload(BaseModel):
    # Omit workpackage_id to address the person's leave bucket.
    workpackage_id: UUID | None = None
    user_id: UUID
    month: int = Field(ge=1, le=12)
    year: int = Field(ge=2000)


class AllocationPayload(AllocationKeyPayload):
    occupancy: Decimal = Field(ge=0, le=1, decimal_places=4)


class AllocationValidatePayload(AllocationPayload):
    exclude_current: bool = False


class AllocationBulkPayload(BaseModel):
    entries: list[AllocationPayload]


def _key(payload: AllocationKeyPayload) -> AllocationKey:
    return make_key(payload.workpackage_id, payload.user_id, payload.month, payload.year)


@router.post("/allocations/validate")
def validate_allocation(
    payload: AllocationValidatePayload,
    _: RequestUserContext = Depends(get_current_user_context),
    db: Session = Depends(get_db_session),
) -> dict[str, object]:
    result = AllocationService(db).validate(
        payload.workpackage_id,
        payload.user_id,
        payload.month,
        payload.year,
        payload.occupancy,
        exclude_current=payload.exclude_current,
    )
    return {"is_valid": result.is_valid, "message": result.message}


@router.post("/allocations", status_code=status.HTTP_201_CREATED)
def create_allocation(
    payload: AllocationPayload,
    _: RequestUserContext = Depends(require_permissions(*WRITE_PERMISSIONS)),
    db: Session = Depends(get_db_session),
) -> dict[str, object]:
    service = AllocationService(db)
    return service.serialize_allocation(service.create_allocation(_key(payload), payload.occupancy))


@router.put("/allocations")
def upsert_allocation(
    payload: AllocationPayload,
    _: RequestUserContext = Depends(require_permissions(*WRITE_PERMISSIONS)),
    db: Session = Depends(get_db_session),
) -> dict[str, object]:
    service = AllocationService(db)
    return service.serialize_allocation(service.upsert_allocation(_key(payload), payload.occupancy))


@router.patch("/allocations")
def update_allocation(
    payload: AllocationPayload,
    _: RequestUserContext = Depends(require_permissions(*WRITE_PERMISSIONS)),
    db: Session = Depends(get_db_session),
) -> dict[str, object]:
    service = AllocationService(db)
    return service.serialize_allocation(service.update_allocation(_key(payload), payload.occupancy))


@router.delete("/allocations", status_code=status.HTTP_204_NO_CONTENT)
def delete_allocation(
    payload: AllocationKeyPayload,
    _: RequestUserContext = Depends(require_permissions(*WRITE_PERMISSIONS)),
    db: Session = Depends(get_db_session),
) -> Response:
    AllocationService(db).delete_allocation(_key(payload))
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.put("/allocations:bulk")
@router.put("/allocations/bulk")
def put_allocations_bulk(
    payload: AllocationBulkPayload,
    _: RequestUserContext = Depends(require_permissions(*WRITE_PERMISSIONS)),
    db: Session = Depends(get_db_session),
) -> dict[str, object]:
    service = AllocationService(db)
    records = service.bulk_upsert_allocations(
        [AllocationEntry(key=_key(entry), occupancy=entry.occupancy) for entry in payload.entries]
    )
    return {
        "updated_entries": len(records),
        "items": [service.serialize_allocation(record) for record in records],
    }


@router.get("/users/{user_id}/occupancy")
def get_user_occupancy(
    user_id: UUID,
    year: int = Query(ge=2000),
    context: RequestUserContext = Depends(get_current_user_context),
    db: Session = Depends(get_db_session),
) -> dict[str, object]:
    if not context.is_manager and context.user_id != user_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient permissions to view this user's occupancy.",
        )
    service = AllocationService(db)
    rows = service.user_monthly_occupancy(user_id, year)
    return {
        "user_id": str(user_id),
        "year": year,
        "months": [service.serialize_monthly_occupancy(row) for row in rows],
    }
