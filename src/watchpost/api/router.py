"""Master API router mounted at /api/v1."""

from fastapi import APIRouter
from watchpost.api.routes import (
    domains,
    health,
    issues,
    notifications,
    rules,
    stats,
)

api_router = APIRouter(prefix="/api/v1")
api_router.include_router(health.router, tags=["Health"])
api_router.include_router(issues.router)
api_router.include_router(rules.router)
api_router.include_router(domains.router)
api_router.include_router(notifications.router)
api_router.include_router(stats.router)
