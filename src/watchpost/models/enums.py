"""String enums shared by storage rows, services and the admin surface."""

from enum import StrEnum


class Severity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class IssueStatus(StrEnum):
    NEW = "new"
    INVESTIGATING = "investigating"
    RESOLVED = "resolved"
    IGNORED = "ignored"
    FALSE_POSITIVE = "false_positive"


class RuleType(StrEnum):
    HASH = "hash"
    PATTERN = "pattern"
    ISSUER = "issuer"
    FILE = "file"
    IP = "ip"
    REGEX = "regex"


class DomainStatus(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class NotificationStatus(StrEnum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    RETRY = "retry"


class IssuerKind(StrEnum):
    """How an issuer feeds the pipeline.

    TRIGGER issuers push findings inline with host events, SCAN issuers are
    polled on a schedule, HYBRID issuers register candidates from events and
    promote them on the next scheduled pass.
    """

    TRIGGER = "trigger"
    SCAN = "scan"
    HYBRID = "hybrid"


class SubmitOutcome(StrEnum):
    CREATED = "created"
    UPDATED = "updated"
    SUPPRESSED = "suppressed"
    WHITELISTED = "whitelisted"
    THROTTLED = "throttled"
    FAILED = "failed"


class AuditEvent(StrEnum):
    ISSUE_IGNORED = "issue_ignored"
    ISSUE_UNIGNORED = "issue_unignored"
    ISSUE_RESOLVED = "issue_resolved"
    ISSUE_STATUS_CHANGED = "issue_status_changed"
    RULE_CREATED = "ignore_rule_created"
    RULE_DEACTIVATED = "ignore_rule_deactivated"
    RULE_DELETED = "ignore_rule_deleted"
    DOMAIN_WHITELISTED = "domain_whitelisted"
    DOMAIN_UNWHITELISTED = "domain_removed_from_whitelist"
    DOMAIN_APPROVED = "domain_approved"
    DOMAIN_REJECTED = "domain_rejected"
    DOMAIN_ALLOWED_AGAIN = "domain_removed_from_rejected"
