"""Audit log repository (append-only)."""

from datetime import datetime
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from watchpost.db.models.audit_log import AuditLogRow
from watchpost.models.common import Actor
from watchpost.repositories.base import BaseRepository


class AuditLogRepository(BaseRepository):
    def __init__(self, session: AsyncSession):
        super().__init__(session, AuditLogRow)

    async def append(
        self,
        event_type: str,
        user_id: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        event_data: dict[str, Any] | None = None,
    ) -> AuditLogRow:
        return await self.create(
            event_type=event_type,
            user_id=user_id or "0",
            ip_address=ip_address or "",
            user_agent=user_agent,
            event_data=event_data,
        )

    async def list_recent(self, event_type: str | None = None, limit: int = 100) -> list[AuditLogRow]:
        stmt = select(AuditLogRow).order_by(AuditLogRow.created_at.desc(), AuditLogRow.id.desc())
        if event_type:
            stmt = stmt.where(AuditLogRow.event_type == event_type)
        result = await self.session.execute(stmt.limit(limit))
        return list(result.scalars().all())

    async def purge_older_than(self, cutoff: datetime) -> int:
        stmt = delete(AuditLogRow).where(AuditLogRow.created_at < cutoff).execution_options(synchronize_session=False)
        result = await self.session.execute(stmt)
        return result.rowcount or 0

    async def append_for(self, actor: Actor, event_type: str, event_data: dict[str, Any] | None = None) -> AuditLogRow:
        return await self.append(
            event_type,
            user_id=actor.user_id,
            ip_address=actor.ip_address,
            user_agent=actor.user_agent,
            event_data=event_data,
        )
