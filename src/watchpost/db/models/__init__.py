"""SQLAlchemy ORM models - import all to register with Base.metadata."""

from watchpost.db.models.issue import IssueRow
from watchpost.db.models.ignore_rule import IgnoreRuleRow
from watchpost.db.models.domain import PendingDomainRow, RejectedDomainRow, WhitelistDomainRow
from watchpost.db.models.notification import NotificationRow
from watchpost.db.models.audit_log import AuditLogRow
from watchpost.db.models.rate_limit import RateLimitBucketRow

__all__ = [
    "IssueRow",
    "IgnoreRuleRow",
    "WhitelistDomainRow",
    "PendingDomainRow",
    "RejectedDomainRow",
    "NotificationRow",
    "AuditLogRow",
    "RateLimitBucketRow",
]
