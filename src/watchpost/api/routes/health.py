"""Liveness and readiness of the pipeline."""

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    settings = request.app.state.settings
    return {
        "status": "healthy",
        "service": "watchpost",
        "site": settings.site_url,
        "scheduler": settings.scheduler_enabled,
    }


@router.get("/health/ready")
async def readiness(request: Request):
    """Ready when storage answers and the configured rate limit store is reachable.

    Also reports which issuers and channels are live and how many
    notifications are waiting, so a stuck delivery loop shows up here.
    """
    checks: dict[str, str] = {}
    pipeline = request.app.state.pipeline
    backlog = None

    try:
        async with request.app.state.db_session_factory() as session:
            await session.execute(text("SELECT 1"))
            stats = await pipeline.notifications(session).get_stats()
            backlog = stats["pending"] + stats["retry"]
        checks["database"] = "ok"
    except Exception as exc:
        checks["database"] = f"error: {exc}"

    redis = getattr(request.app.state, "redis", None)
    if redis is None:
        checks["redis"] = "disabled"
    else:
        try:
            await redis.ping()
            checks["redis"] = "ok"
        except Exception as exc:
            checks["redis"] = f"error: {exc}"

    ready = all(value in ("ok", "disabled") for value in checks.values())
    return JSONResponse(
        status_code=200 if ready else 503,
        content={
            "status": "ready" if ready else "not_ready",
            "checks": checks,
            "issuers": [issuer.name for issuer in pipeline.issuers.all(enabled_only=True)],
            "channels": [channel.name for channel in pipeline.channels.enabled()],
            "notification_backlog": backlog,
        },
    )
