"""Notification queue API routes."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from watchpost.dependencies import RequireAdmin, get_current_user, get_db, get_pipeline
from watchpost.models.enums import NotificationStatus
from watchpost.notifications.queue import notification_to_dict

router = APIRouter(prefix="/notifications", tags=["Notifications"])


@router.get("", status_code=200)
async def list_notifications(
    status: NotificationStatus | None = None,
    limit: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    pipeline=Depends(get_pipeline),
    user: dict = Depends(get_current_user),
) -> list[dict]:
    rows = await pipeline.notifications(db).list_notifications(status, limit)
    return [notification_to_dict(row) for row in rows]


@router.post("/process", status_code=200, dependencies=[RequireAdmin])
async def process_pending(
    limit: int | None = Query(None, ge=1, le=500),
    pipeline=Depends(get_pipeline),
) -> dict:
    """Run one delivery pass now instead of waiting for the scheduler."""
    return await pipeline.deliver(limit)
