"""Map watchpost errors and request validation failures onto one JSON envelope.

Every error body carries the request's trace id, so an operator can match an
admin API failure with the log lines the pipeline wrote while serving it.
"""

import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from watchpost.errors.exceptions import AuthenticationError, AuthorizationError, WatchpostError
from watchpost.models.common import ErrorDetail, ErrorResponse

logger = logging.getLogger(__name__)


def error_response(request: Request, status_code: int, code: str, message: str, details: Any = None) -> JSONResponse:
    body = ErrorResponse(
        error=ErrorDetail(
            code=code,
            message=message,
            details=details,
            trace_id=getattr(request.state, "trace_id", None) or "unknown",
            timestamp=datetime.now(timezone.utc),
        ),
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json", exclude_none=True))


def _field_errors(exc: RequestValidationError) -> list[dict[str, str]]:
    # loc is ("body", "rule_type") or ("query", "per_page")
    return [
        {"field": ".".join(str(part) for part in err["loc"][1:]) or str(err["loc"][0]), "message": err["msg"]}
        for err in exc.errors()
    ]


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(WatchpostError)
    async def watchpost_error_handler(request: Request, exc: WatchpostError):
        if isinstance(exc, (AuthenticationError, AuthorizationError)):
            # failed admin access is a security event in its own right
            user = getattr(request.state, "user", None) or {}
            logger.warning(
                "Admin access denied: %s %s (%s, user=%s)",
                request.method, request.url.path, exc.message, user.get("sub", "anonymous"),
            )
        return error_response(request, exc.status_code, exc.code, exc.message, exc.details)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return error_response(request, 422, "VALIDATION_ERROR", "Request validation failed", _field_errors(exc))
