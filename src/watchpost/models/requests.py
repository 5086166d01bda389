"""Request bodies for the admin HTTP surface."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from watchpost.models.enums import RuleType


class IgnoreIssueRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    reason: str | None = Field(None, max_length=2000)


class ResolveIssueRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    notes: str | None = Field(None, max_length=2000)


class IgnoreRuleFromIssueRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    rule_type: RuleType
    pattern: str | None = None
    description: str | None = None
    expires_days: int | None = Field(None, ge=1)


class CreateIgnoreRuleRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    rule_type: RuleType
    rule_value: str = Field(..., min_length=1)
    rule_name: str | None = Field(None, max_length=100)
    issuer_name: str | None = Field(None, max_length=100)
    issue_type: str | None = Field(None, max_length=50)
    description: str | None = None
    expires_at: datetime | None = None


class WhitelistDomainRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    domain: str = Field(..., min_length=1, max_length=255)
    reason: str | None = None


class DomainDecisionRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    reason: str | None = None


class BulkImportRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    domains: list[str] = Field(..., min_length=1)
    reason: str | None = None
