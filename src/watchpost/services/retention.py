"""Age-based cleanup of issues, rules, domains, notifications and audit rows."""

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from watchpost.config import Settings, settings as default_settings
from watchpost.db.base import utcnow
from watchpost.repositories.audit_repo import AuditLogRepository
from watchpost.services.domains import DomainReputationService
from watchpost.services.issue_service import IssueService
from watchpost.services.suppression import SuppressionEngine
from watchpost.notifications.queue import NotificationQueue
from watchpost.notifications.registry import ChannelRegistry

logger = logging.getLogger(__name__)


class RetentionService:
    def __init__(
        self,
        session: AsyncSession,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session = session
        self.settings = settings or default_settings
        self._clock = clock

    async def run(self) -> dict[str, int]:
        """Run every cleanup step in one transaction and return the counts."""
        s = self.settings
        rules = SuppressionEngine(self.session, self._clock)

        counts = {
            "issues_deleted": await IssueService(self.session, s, self._clock).cleanup(s.retention_days),
            "rules_deactivated": await rules.deactivate_expired(),
            "rules_deleted": await rules.delete_expired(),
            "stale_rules_deactivated": await rules.deactivate_stale(s.retention_days, s.stale_rule_min_usage),
            "pending_domains_deleted": await DomainReputationService(self.session, s, self._clock).cleanup_old_pending(
                s.pending_domain_days
            ),
            "notifications_purged": await NotificationQueue(self.session, ChannelRegistry(), s, self._clock).purge_sent(
                s.notification_retention_days
            ),
            "audit_entries_purged": await AuditLogRepository(self.session).purge_older_than(
                self._clock() - timedelta(days=s.audit_retention_days)
            ),
        }
        await self.session.commit()

        if any(counts.values()):
            logger.info("Retention pass: %s", counts)
        return counts
