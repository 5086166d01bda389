"""FastAPI application factory and lifespan management."""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from watchpost.config import settings
from watchpost.logging_config import configure_logging

# Configure logging at import time
configure_logging(settings)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application startup and shutdown resources."""
    from watchpost.db.engine import create_db_engine, create_session_factory, create_tables
    from watchpost.pipeline import Pipeline

    app_settings = app.state.settings
    engine = create_db_engine(app_settings.effective_database_url)

    # create_all is idempotent; there is no migration history yet
    await create_tables(engine)
    logger.info("Database tables ready (%s)", engine.dialect.name)

    app.state.db_engine = engine
    app.state.db_session_factory = create_session_factory(engine)

    # Redis is only needed for the shared rate limit store
    app.state.redis = None
    if app_settings.rate_limit_backend == "redis":
        import redis.asyncio as aioredis

        app.state.redis = aioredis.from_url(app_settings.redis_url, decode_responses=True)

    app.state.pipeline = Pipeline.from_settings(app_settings, app.state.db_session_factory, app.state.redis)

    scheduler_task = None
    if app_settings.scheduler_enabled:
        from watchpost.workers.scheduler import run_scheduler

        scheduler_task = asyncio.create_task(run_scheduler(app.state.pipeline))

    logger.info(
        "watchpost started (db=%s, issuers=%d, channels=%s)",
        engine.dialect.name,
        len(app.state.pipeline.issuers),
        ",".join(app.state.pipeline.channels.names()) or "none",
    )
    yield

    # Shutdown
    if scheduler_task is not None:
        scheduler_task.cancel()
        try:
            await scheduler_task
        except asyncio.CancelledError:
            pass
    if app.state.redis:
        await app.state.redis.aclose()
    await engine.dispose()
    logger.info("watchpost shutdown complete")


def create_app(app_settings=None) -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="watchpost",
        version="1.2.0",
        description="Security telemetry triage: issues, ignore rules, redirect domains and notifications.",
        lifespan=lifespan,
    )
    app.state.settings = app_settings or settings

    # Add middleware (order matters: last added = first executed)
    from watchpost.api.middleware.auth import AuthMiddleware
    from watchpost.api.middleware.trace_id import TraceIdMiddleware
    app.add_middleware(AuthMiddleware)
    app.add_middleware(TraceIdMiddleware)

    # Register error handlers
    from watchpost.errors.handlers import register_exception_handlers
    register_exception_handlers(app)

    # Import and mount routers
    from watchpost.api.router import api_router
    app.include_router(api_router)

    return app


app = create_app()
