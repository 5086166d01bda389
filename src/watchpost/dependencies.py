"""FastAPI dependency injection providers."""

from collections.abc import AsyncGenerator

from fastapi import Depends, Request

from watchpost.errors.exceptions import AuthenticationError, AuthorizationError
from watchpost.models.common import Actor


async def get_db(request: Request) -> AsyncGenerator:
    """Yield a database session from the app's session factory."""
    session_factory = request.app.state.db_session_factory
    async with session_factory() as session:
        yield session


def get_pipeline(request: Request):
    """Return the pipeline built at startup."""
    return request.app.state.pipeline


async def get_current_user(request: Request) -> dict:
    """Return the authenticated user dict or raise 401."""
    user = getattr(request.state, "user", {})
    if "_auth_error" in user:
        raise AuthenticationError(user["_auth_error"])
    if not user or user.get("sub") in ("anonymous", ""):
        raise AuthenticationError("Authentication required")
    return user


def require_role(*roles: str):
    """Return a dependency that enforces one of the given roles."""

    async def _check(user: dict = Depends(get_current_user)) -> dict:
        user_roles = set(user.get("roles", []))
        if not user_roles.intersection(roles):
            raise AuthorizationError(f"Requires one of: {', '.join(roles)}")
        return user

    return _check


async def get_actor(request: Request, user: dict = Depends(get_current_user)) -> Actor:
    """Who is performing an admin mutation, for the audit log."""
    return Actor(
        user_id=user["sub"],
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


RequireAdmin = Depends(require_role("admin"))
