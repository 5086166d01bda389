"""Notification queue repository."""

from datetime import datetime

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from watchpost.db.models.notification import NotificationRow
from watchpost.models.enums import NotificationStatus
from watchpost.repositories.base import BaseRepository

_UNDELIVERED = [NotificationStatus.PENDING, NotificationStatus.RETRY]


class NotificationRepository(BaseRepository):
    def __init__(self, session: AsyncSession):
        super().__init__(session, NotificationRow)

    async def get(self, notification_id: int) -> NotificationRow | None:
        return await self.get_by_id("id", notification_id)

    async def has_undelivered(self, issue_id: int, channel_name: str) -> bool:
        count = await self.count(
            NotificationRow.issue_id == issue_id,
            NotificationRow.channel_name == channel_name,
            NotificationRow.status.in_(_UNDELIVERED),
        )
        return count > 0

    async def list_due(self, retry_cutoffs: list[tuple[int, datetime]], limit: int) -> list[NotificationRow]:
        """Pending rows plus retry rows whose backoff has elapsed, oldest first.

        ``retry_cutoffs`` maps a retry count to the latest ``last_attempt`` that
        is due; the final entry also covers every higher count.
        """
        retry_due = [NotificationRow.last_attempt.is_(None)]
        for i, (retry_count, cutoff) in enumerate(retry_cutoffs):
            if i == len(retry_cutoffs) - 1:
                count_matches = NotificationRow.retry_count >= retry_count
            else:
                count_matches = NotificationRow.retry_count == retry_count
            retry_due.append(and_(count_matches, NotificationRow.last_attempt <= cutoff))

        stmt = (
            select(NotificationRow)
            .where(
                or_(
                    NotificationRow.status == NotificationStatus.PENDING,
                    and_(NotificationRow.status == NotificationStatus.RETRY, or_(*retry_due)),
                )
            )
            .order_by(NotificationRow.created_at, NotificationRow.id)
            .limit(limit)
            # another pass may have moved these rows since this session loaded them
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def claim(self, row: NotificationRow, now: datetime) -> bool:
        """Take a due row for one delivery attempt.

        Matches only if status, retry count and last attempt are unchanged since
        ``row`` was read, so of two overlapping passes exactly one wins.
        """
        if row.last_attempt is None:
            unchanged = NotificationRow.last_attempt.is_(None)
        else:
            unchanged = NotificationRow.last_attempt == row.last_attempt
        stmt = (
            update(NotificationRow)
            .where(
                NotificationRow.id == row.id,
                NotificationRow.status == row.status,
                NotificationRow.retry_count == row.retry_count,
                unchanged,
            )
            .values(last_attempt=now)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return (result.rowcount or 0) > 0

    async def list_by_status(self, status: str | None = None, limit: int = 50) -> list[NotificationRow]:
        stmt = select(NotificationRow).order_by(NotificationRow.created_at.desc(), NotificationRow.id.desc())
        if status:
            stmt = stmt.where(NotificationRow.status == status)
        result = await self.session.execute(stmt.limit(limit))
        return list(result.scalars().all())

    async def list_for_issue(self, issue_id: int) -> list[NotificationRow]:
        stmt = (
            select(NotificationRow)
            .where(NotificationRow.issue_id == issue_id)
            .order_by(NotificationRow.id)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def mark_sent(self, notification_id: int, now: datetime) -> bool:
        stmt = (
            update(NotificationRow)
            .where(
                NotificationRow.id == notification_id,
                NotificationRow.status != NotificationStatus.SENT,
            )
            .values(status=NotificationStatus.SENT, sent_at=now, last_attempt=now)
        )
        result = await self.session.execute(stmt)
        return (result.rowcount or 0) > 0

    async def mark_attempt_failed(
        self,
        notification_id: int,
        retry_count: int,
        status: NotificationStatus,
        now: datetime,
        error_message: str,
    ) -> bool:
        stmt = (
            update(NotificationRow)
            .where(
                NotificationRow.id == notification_id,
                NotificationRow.status != NotificationStatus.SENT,
            )
            .values(
                retry_count=retry_count,
                status=status,
                last_attempt=now,
                error_message=error_message,
            )
        )
        result = await self.session.execute(stmt)
        return (result.rowcount or 0) > 0

    async def count_by_status(self) -> dict[str, int]:
        stmt = select(NotificationRow.status, func.count()).group_by(NotificationRow.status)
        result = await self.session.execute(stmt)
        return {status: count for status, count in result.all()}

    async def delete_sent_before(self, cutoff: datetime) -> int:
        stmt = delete(NotificationRow).where(
            NotificationRow.status == NotificationStatus.SENT,
            NotificationRow.sent_at < cutoff,
        ).execution_options(synchronize_session=False)
        result = await self.session.execute(stmt)
        return result.rowcount or 0
