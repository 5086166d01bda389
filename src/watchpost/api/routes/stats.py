"""Dashboard statistics route."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from watchpost.dependencies import get_current_user, get_db, get_pipeline

router = APIRouter(tags=["Stats"])


@router.get("/stats", status_code=200)
async def get_stats(
    db: AsyncSession = Depends(get_db),
    pipeline=Depends(get_pipeline),
    user: dict = Depends(get_current_user),
) -> dict:
    return {
        "issues": await pipeline.issue_service(db).get_stats(),
        "domains": await pipeline.domains(db).get_stats(),
        "notifications": await pipeline.notifications(db).get_stats(),
    }
