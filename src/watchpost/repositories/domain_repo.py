"""Repositories for the whitelist / pending / rejected domain tables."""

from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from watchpost.db.models.domain import PendingDomainRow, RejectedDomainRow, WhitelistDomainRow
from watchpost.models.enums import DomainStatus
from watchpost.repositories.base import BaseRepository


def _append_context(contexts: list | None, context: dict[str, Any] | None, limit: int) -> list:
    merged = list(contexts or [])
    if context:
        merged.append(context)
    return merged[-limit:]


class WhitelistDomainRepository(BaseRepository):
    def __init__(self, session: AsyncSession):
        super().__init__(session, WhitelistDomainRow)

    async def get(self, domain: str) -> WhitelistDomainRow | None:
        return await self.get_by_id("domain", domain)

    async def list_all(self) -> list[WhitelistDomainRow]:
        stmt = select(WhitelistDomainRow).order_by(WhitelistDomainRow.added_at.desc())
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_wildcards(self) -> list[WhitelistDomainRow]:
        stmt = select(WhitelistDomainRow).where(WhitelistDomainRow.domain.like("*.%"))
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def remove(self, domain: str) -> bool:
        result = await self.session.execute(
            delete(WhitelistDomainRow).where(WhitelistDomainRow.domain == domain)
        )
        return (result.rowcount or 0) > 0

    async def record_use(self, domain: str, now: datetime) -> None:
        stmt = (
            update(WhitelistDomainRow)
            .where(WhitelistDomainRow.domain == domain)
            .values(usage_count=WhitelistDomainRow.usage_count + 1, last_used=now)
        )
        await self.session.execute(stmt)

    async def total_usage(self) -> int:
        result = await self.session.execute(
            select(func.coalesce(func.sum(WhitelistDomainRow.usage_count), 0))
        )
        return int(result.scalar_one())


class PendingDomainRepository(BaseRepository):
    def __init__(self, session: AsyncSession):
        super().__init__(session, PendingDomainRow)

    async def get(self, domain: str) -> PendingDomainRow | None:
        return await self.get_by_id("domain", domain)

    async def list_by_status(self, status: str | None = DomainStatus.PENDING) -> list[PendingDomainRow]:
        stmt = select(PendingDomainRow).order_by(PendingDomainRow.last_detected.desc())
        if status:
            stmt = stmt.where(PendingDomainRow.status == status)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def record_detection(
        self,
        domain: str,
        now: datetime,
        context: dict[str, Any] | None,
        context_limit: int,
    ) -> PendingDomainRow:
        """Create the pending row or count another detection against it.

        The counter is bumped atomically; contexts are merged read-modify-write
        and may lose an entry under concurrent detections.
        """
        await self.session.execute(
            self.insert()
            .values(
                domain=domain,
                first_detected=now,
                last_detected=now,
                detection_count=0,
                status=DomainStatus.PENDING,
                contexts=[],
            )
            .on_conflict_do_nothing(index_elements=["domain"])
        )
        await self.session.execute(
            update(PendingDomainRow)
            .where(PendingDomainRow.domain == domain)
            .values(
                detection_count=PendingDomainRow.detection_count + 1,
                last_detected=now,
            )
            .execution_options(synchronize_session=False)
        )
        row = await self._refresh(domain)
        row.contexts = _append_context(row.contexts, context, context_limit)
        await self.session.flush()
        return row

    async def restart_cycle(
        self,
        row: PendingDomainRow,
        now: datetime,
        context: dict[str, Any] | None,
    ) -> PendingDomainRow:
        """Reopen a settled marker as a fresh pending detection."""
        return await self.update(
            row,
            status=DomainStatus.PENDING,
            first_detected=now,
            last_detected=now,
            detection_count=1,
            contexts=[context] if context else [],
            approved_by=None,
            approved_at=None,
            rejected_by=None,
            rejected_at=None,
            reject_reason=None,
        )

    async def settle(self, domain: str, status: DomainStatus, **fields: Any) -> bool:
        """Move a pending row to approved/rejected. False if it was not pending."""
        stmt = (
            update(PendingDomainRow)
            .where(PendingDomainRow.domain == domain, PendingDomainRow.status == DomainStatus.PENDING)
            .values(status=status, **fields)
        )
        result = await self.session.execute(stmt)
        return (result.rowcount or 0) > 0

    async def mark(self, domain: str, status: DomainStatus, **fields: Any) -> None:
        await self.session.execute(
            update(PendingDomainRow)
            .where(PendingDomainRow.domain == domain)
            .values(status=status, **fields)
        )

    async def delete_stale(self, cutoff: datetime) -> int:
        """Drop settled markers and single-detection pending rows older than cutoff."""
        stmt = delete(PendingDomainRow).where(
            PendingDomainRow.first_detected < cutoff,
            or_(
                PendingDomainRow.status != DomainStatus.PENDING,
                PendingDomainRow.detection_count < 2,
            ),
        ).execution_options(synchronize_session=False)
        result = await self.session.execute(stmt)
        return result.rowcount or 0

    async def _refresh(self, domain: str) -> PendingDomainRow:
        stmt = (
            select(PendingDomainRow)
            .where(PendingDomainRow.domain == domain)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one()


class RejectedDomainRepository(BaseRepository):
    def __init__(self, session: AsyncSession):
        super().__init__(session, RejectedDomainRow)

    async def get(self, domain: str) -> RejectedDomainRow | None:
        return await self.get_by_id("domain", domain)

    async def list_all(self) -> list[RejectedDomainRow]:
        stmt = select(RejectedDomainRow).order_by(RejectedDomainRow.rejected_at.desc())
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def remove(self, domain: str) -> bool:
        result = await self.session.execute(
            delete(RejectedDomainRow).where(RejectedDomainRow.domain == domain)
        )
        return (result.rowcount or 0) > 0

    async def record_detection(
        self,
        row: RejectedDomainRow,
        now: datetime,
        context: dict[str, Any] | None,
        context_limit: int,
    ) -> RejectedDomainRow:
        await self.session.execute(
            update(RejectedDomainRow)
            .where(RejectedDomainRow.id == row.id)
            .values(
                detection_count=RejectedDomainRow.detection_count + 1,
                last_detected=now,
            )
            .execution_options(synchronize_session=False)
        )
        await self.session.refresh(row)
        row.contexts = _append_context(row.contexts, context, context_limit)
        await self.session.flush()
        return row
