"""Persistent per-channel notification queue with bounded retry.

Each (issue, channel) delivery is one row. A delivery pass sends due rows
and records the outcome on that row only, committing after each one, so a
failing channel never blocks or rolls back another channel's delivery.

Row states: pending -> sent | retry -> ... -> sent | failed. ``failed`` is
reached only once ``retry_count`` equals ``max_retries``; sent rows are
never modified again.
"""

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from watchpost.config import Settings, settings as default_settings
from watchpost.db.base import utcnow
from watchpost.db.models.issue import IssueRow
from watchpost.db.models.notification import NotificationRow
from watchpost.models.enums import NotificationStatus
from watchpost.notifications.formatter import build_message
from watchpost.notifications.registry import ChannelRegistry
from watchpost.repositories.notification_repo import NotificationRepository

logger = logging.getLogger(__name__)

_MAX_BACKOFF_STEPS = 32


def notification_to_dict(row: NotificationRow) -> dict[str, Any]:
    return {
        "id": row.id,
        "issue_id": row.issue_id,
        "channel_name": row.channel_name,
        "status": row.status,
        "retry_count": row.retry_count,
        "max_retries": row.max_retries,
        "last_attempt": row.last_attempt.isoformat() if row.last_attempt else None,
        "sent_at": row.sent_at.isoformat() if row.sent_at else None,
        "error_message": row.error_message,
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


class NotificationQueue:
    def __init__(
        self,
        session: AsyncSession,
        channels: ChannelRegistry,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session = session
        self.channels = channels
        self.settings = settings or default_settings
        self._clock = clock
        self._repo = NotificationRepository(session)

    def backoff(self, retry_count: int) -> timedelta:
        """Delay before attempt ``retry_count + 1``: base * 2**(retry_count - 1), capped."""
        if retry_count <= 0:
            return timedelta(0)
        seconds = self.settings.retry_backoff_base_seconds * 2 ** (retry_count - 1)
        return timedelta(seconds=min(seconds, self.settings.retry_backoff_max_seconds))

    def retry_cutoffs(self, now: datetime) -> list[tuple[int, datetime]]:
        """Latest due ``last_attempt`` per retry count, up to the capped backoff."""
        cap = timedelta(seconds=self.settings.retry_backoff_max_seconds)
        cutoffs = []
        for retry_count in range(1, _MAX_BACKOFF_STEPS + 1):
            delay = self.backoff(retry_count)
            cutoffs.append((retry_count, now - delay))
            if delay >= cap:
                break
        return cutoffs

    async def enqueue_for_issue(self, issue: IssueRow) -> list[NotificationRow]:
        """Queue one pending row per enabled channel.

        A channel that still has an undelivered row for this issue is skipped.
        """
        message, context = build_message(issue, self.settings.site_url)
        created = []
        for channel in self.channels.enabled():
            if await self._repo.has_undelivered(issue.id, channel.name):
                logger.debug("Issue %s already queued for %s", issue.id, channel.name)
                continue
            row = await self._repo.create(
                channel_name=channel.name,
                issue_id=issue.id,
                message=message,
                context=context,
                status=NotificationStatus.PENDING,
                retry_count=0,
                max_retries=self.settings.notification_max_retries,
            )
            created.append(row)
        if created:
            logger.info("Queued %d notification(s) for issue %s", len(created), issue.id)
        return created

    async def process_pending(self, limit: int | None = None) -> dict[str, int]:
        """Attempt delivery of due rows. Never raises for channel failures.

        Each row is claimed before sending, so overlapping passes never deliver
        the same row twice. Returns counts of rows sent, scheduled for retry,
        failed, and skipped because another pass claimed them first.
        """
        batch = limit or self.settings.notification_batch_size
        now = self._clock()
        due = await self._repo.list_due(self.retry_cutoffs(now), limit=batch)

        stats = {"processed": 0, "sent": 0, "retry": 0, "failed": 0, "skipped": 0}
        for row in due:
            claimed = await self._repo.claim(row, now)
            await self.session.commit()
            if not claimed:
                logger.debug("Notification %s was taken by another delivery pass", row.id)
                stats["skipped"] += 1
                continue
            status = await self._deliver(row, now)
            stats["processed"] += 1
            stats[status] += 1
            await self.session.commit()

        if stats["processed"]:
            logger.info(
                "Notification pass: %d sent, %d retry, %d failed",
                stats["sent"], stats["retry"], stats["failed"],
            )
        return stats

    async def _deliver(self, row: NotificationRow, now: datetime) -> str:
        channel = self.channels.get(row.channel_name)
        error: str | None = None

        if channel is None:
            error = f"Channel '{row.channel_name}' is not registered"
        elif not channel.is_available():
            error = f"Channel '{row.channel_name}' is not available"
        else:
            try:
                delivered = await channel.send(row.message, dict(row.context or {}))
            except Exception as exc:
                logger.warning("Channel %s raised during delivery of notification %s", row.channel_name, row.id, exc_info=True)
                delivered = False
                error = f"{type(exc).__name__}: {exc}"
            if delivered:
                await self._repo.mark_sent(row.id, now)
                return NotificationStatus.SENT
            error = error or channel.last_error or "Channel reported a failed delivery"

        retry_count = min(row.retry_count + 1, row.max_retries)
        status = NotificationStatus.FAILED if retry_count >= row.max_retries else NotificationStatus.RETRY
        await self._repo.mark_attempt_failed(row.id, retry_count, status, now, error)
        logger.warning(
            "Notification %s to %s failed (attempt %d/%d): %s",
            row.id, row.channel_name, retry_count, row.max_retries, error,
        )
        return status

    async def list_notifications(self, status: str | None = None, limit: int = 50) -> list[NotificationRow]:
        return await self._repo.list_by_status(status, limit)

    async def list_for_issue(self, issue_id: int) -> list[NotificationRow]:
        return await self._repo.list_for_issue(issue_id)

    async def get_stats(self) -> dict[str, int]:
        counts = await self._repo.count_by_status()
        stats = {status.value: counts.get(status.value, 0) for status in NotificationStatus}
        stats["total"] = sum(counts.values())
        return stats

    async def purge_sent(self, days: int | None = None) -> int:
        days = days if days is not None else self.settings.notification_retention_days
        return await self._repo.delete_sent_before(self._clock() - timedelta(days=days))
