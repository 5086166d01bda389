"""Pydantic models shared by the services and the admin surface."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ErrorDetail(BaseModel):
    """Error detail in API responses."""

    model_config = ConfigDict(extra="forbid")

    code: str
    message: str
    details: dict[str, Any] | list[Any] | str | None = None
    trace_id: str = Field(..., min_length=1, max_length=128)
    timestamp: datetime


class ErrorResponse(BaseModel):
    """Standard error response envelope."""

    model_config = ConfigDict(extra="forbid")

    error: ErrorDetail


class Page(BaseModel):
    """One page of a filtered listing."""

    model_config = ConfigDict(extra="forbid")

    items: list[dict] = Field(default_factory=list)
    total: int = 0
    pages: int = 0
    current_page: int = 1
    per_page: int = 20


class Actor(BaseModel):
    """Who performed an admin mutation, for audit entries."""

    model_config = ConfigDict(extra="forbid")

    user_id: str = "system"
    ip_address: str | None = None
    user_agent: str | None = None


SYSTEM_ACTOR = Actor()
