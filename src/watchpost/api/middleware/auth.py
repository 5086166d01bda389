"""API key authentication middleware for the admin surface."""

import hmac
import logging

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger(__name__)

# Paths that do not require authentication
_PUBLIC_PATHS = {
    "/api/v1/health",
    "/api/v1/health/ready",
    "/docs",
    "/openapi.json",
    "/redoc",
}

_ANONYMOUS = {"sub": "anonymous", "roles": [], "scopes": []}


class AuthMiddleware(BaseHTTPMiddleware):
    """Validate X-API-Key against the configured admin key; attach user info to request.state.

    With no admin key configured, local mode grants admin to every caller and
    any other mode denies every caller.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path

        if path in _PUBLIC_PATHS or path.startswith("/docs") or path.startswith("/redoc"):
            request.state.user = {**_ANONYMOUS, "scopes": ["*"]}
            return await call_next(request)

        request.state.user = self._authenticate(request)
        return await call_next(request)

    def _authenticate(self, request: Request) -> dict:
        settings = request.app.state.settings
        expected = settings.admin_api_key
        if not expected:
            if settings.local_mode:
                return {"sub": "local-admin", "roles": ["admin"], "scopes": ["*"]}
            return dict(_ANONYMOUS)

        provided = request.headers.get("x-api-key", "")
        if not provided:
            return dict(_ANONYMOUS)
        if not hmac.compare_digest(provided.encode(), expected.encode()):
            logger.warning("Rejected admin API key from %s", request.client.host if request.client else "unknown")
            return {**_ANONYMOUS, "_auth_error": "invalid_api_key"}
        return {"sub": "api-key", "roles": ["admin"], "scopes": ["*"]}
