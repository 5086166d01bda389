"""Typed findings: the closed set of events issuers feed into the pipeline.

Every variant carries the common fields (issuer, type, severity, title, ...)
and declares which of its fields identify "the same underlying condition"
through ``identity()``. The fingerprint service hashes that identity, so two
findings with equal identities collapse into one Issue row.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from watchpost.models.enums import Severity


class RawFinding(BaseModel):
    """A raw, pre-deduplication detection event."""

    model_config = ConfigDict(extra="forbid")

    kind: Literal["generic"] = "generic"
    issuer_name: str = Field(..., min_length=1, max_length=100)
    issue_type: str | None = Field(None, max_length=50)
    severity: Severity | None = None
    title: str | None = None
    message: str | None = None
    description: str | None = None
    details: dict[str, Any] | str | None = None
    file_path: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    backtrace: list[dict[str, Any]] | str | None = None
    content_hash: str | None = None
    timestamp: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    def identity(self) -> dict[str, Any]:
        """Fields that identify the underlying condition."""
        return {
            "message": self.title or self.message,
            "file": self.file_path,
            "details": self.details,
        }

    @property
    def redirect_target(self) -> str | None:
        return None


class FatalErrorFinding(RawFinding):
    kind: Literal["fatal_error"] = "fatal_error"
    error_type: str | None = None
    line: int | None = None

    def identity(self) -> dict[str, Any]:
        return {
            "message": self.title or self.message,
            "file": self.file_path,
            "line": self.line,
            "error_type": self.error_type,
        }


class SlowRequestFinding(RawFinding):
    kind: Literal["slow_request"] = "slow_request"
    request_uri: str
    duration_ms: float | None = None
    memory_bytes: int | None = None

    def identity(self) -> dict[str, Any]:
        # duration differs on every request; only the endpoint identifies it
        return {"request_uri": self.request_uri}


class MaliciousUploadFinding(RawFinding):
    kind: Literal["malicious_upload"] = "malicious_upload"
    file_name: str | None = None
    uploaded_by: str | None = None

    def identity(self) -> dict[str, Any]:
        return {"file": self.file_path or self.file_name, "content_hash": self.content_hash}


class AdminActivityFinding(RawFinding):
    kind: Literal["admin_activity"] = "admin_activity"
    action: str
    username: str | None = None
    object_name: str | None = None

    def identity(self) -> dict[str, Any]:
        return {"action": self.action, "username": self.username, "object": self.object_name}


class FailedLoginFinding(RawFinding):
    kind: Literal["failed_login"] = "failed_login"
    username: str | None = None
    attempts: int | None = None

    def identity(self) -> dict[str, Any]:
        return {"ip": self.ip_address, "username": self.username}


class RedirectFinding(RawFinding):
    kind: Literal["redirect"] = "redirect"
    to_url: str
    from_url: str | None = None
    method: str | None = None
    status: int | None = None

    def identity(self) -> dict[str, Any]:
        return {"to_url": self.to_url, "from_url": self.from_url}

    @property
    def redirect_target(self) -> str | None:
        return self.to_url


class UserRegistrationFinding(RawFinding):
    kind: Literal["user_registration"] = "user_registration"
    username: str
    email: str | None = None
    role: str | None = None

    def identity(self) -> dict[str, Any]:
        return {"username": self.username, "role": self.role}


class CodeScanFinding(RawFinding):
    kind: Literal["code_scan"] = "code_scan"
    matched_function: str | None = None
    line: int | None = None

    def identity(self) -> dict[str, Any]:
        return {"file": self.file_path, "function": self.matched_function}


class IssuerErrorFinding(RawFinding):
    """Self-report emitted when an issuer's detect() raises."""

    kind: Literal["issuer_error"] = "issuer_error"
    error: str

    def identity(self) -> dict[str, Any]:
        return {"error": self.error}


AnyFinding = Annotated[
    Union[
        RawFinding,
        FatalErrorFinding,
        SlowRequestFinding,
        MaliciousUploadFinding,
        AdminActivityFinding,
        FailedLoginFinding,
        RedirectFinding,
        UserRegistrationFinding,
        CodeScanFinding,
        IssuerErrorFinding,
    ],
    Field(discriminator="kind"),
]

_finding_adapter: TypeAdapter = TypeAdapter(AnyFinding)

# Host payload key -> model field
_KEY_ALIASES = {
    "type": "issue_type",
    "ip": "ip_address",
    "file": "file_path",
}


def parse_finding(payload: dict[str, Any], issuer_name: str | None = None) -> RawFinding:
    """Build the matching finding variant from a host event payload.

    Keys the variant does not declare are folded into ``metadata`` so that
    issuer-specific extras survive without loosening validation.
    """
    data: dict[str, Any] = {}
    for key, value in payload.items():
        data[_KEY_ALIASES.get(key, key)] = value
    if issuer_name and not data.get("issuer_name"):
        data["issuer_name"] = issuer_name
    data.setdefault("kind", "generic")
    if data["kind"] not in _VARIANTS:
        data["source_kind"] = data["kind"]
        data["kind"] = "generic"

    variant = _VARIANTS[data["kind"]]
    known = set(variant.model_fields)
    extras = {k: v for k, v in data.items() if k not in known}
    finding_data = {k: v for k, v in data.items() if k in known}
    if extras:
        finding_data["metadata"] = {**(finding_data.get("metadata") or {}), **extras}

    return _finding_adapter.validate_python(finding_data)


_VARIANTS: dict[str, type[RawFinding]] = {
    "generic": RawFinding,
    "fatal_error": FatalErrorFinding,
    "slow_request": SlowRequestFinding,
    "malicious_upload": MaliciousUploadFinding,
    "admin_activity": AdminActivityFinding,
    "failed_login": FailedLoginFinding,
    "redirect": RedirectFinding,
    "user_registration": UserRegistrationFinding,
    "code_scan": CodeScanFinding,
    "issuer_error": IssuerErrorFinding,
}
