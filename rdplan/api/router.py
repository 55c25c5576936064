"""Top-level API router."""

from fastapi import APIRouter

from rdplan.api.routes.allocations import router as allocations_router
from rdplan.api.routes.finance import router as finance_router
from rdplan.api.routes.health import router as health_router
from rdplan.api.routes.projects import router as projects_router

api_router = APIRouter()
api_router.include_router(health_router, tags=["health"])
api_router.include_router(projects_router)
api_router.include_router(allocations_router)
api_router.include_router(finance_router)
