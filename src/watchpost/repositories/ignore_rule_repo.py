"""Ignore rule repository."""

from datetime import datetime

from sqlalchemy import and_, case, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from watchpost.db.models.ignore_rule import IgnoreRuleRow
from watchpost.models.enums import RuleType
from watchpost.repositories.base import BaseRepository

# Cheapest and most specific predicates first
RULE_PRIORITY: dict[str, int] = {
    RuleType.HASH: 0,
    RuleType.ISSUER: 1,
    RuleType.IP: 2,
    RuleType.FILE: 3,
    RuleType.PATTERN: 4,
    RuleType.REGEX: 5,
}


def _not_expired(now: datetime):
    return or_(IgnoreRuleRow.expires_at.is_(None), IgnoreRuleRow.expires_at > now)


class IgnoreRuleRepository(BaseRepository):
    def __init__(self, session: AsyncSession):
        super().__init__(session, IgnoreRuleRow)

    async def get(self, rule_id: int) -> IgnoreRuleRow | None:
        return await self.get_by_id("id", rule_id)

    async def list_effective(self, now: datetime) -> list[IgnoreRuleRow]:
        """Active, unexpired rules in evaluation order."""
        priority = case(RULE_PRIORITY, value=IgnoreRuleRow.rule_type, else_=len(RULE_PRIORITY))
        stmt = (
            select(IgnoreRuleRow)
            .where(IgnoreRuleRow.is_active.is_(True), _not_expired(now))
            .order_by(priority, IgnoreRuleRow.id)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_rules(
        self,
        rule_type: str | None = None,
        issuer_name: str | None = None,
        active_only: bool = False,
        limit: int = 200,
    ) -> list[IgnoreRuleRow]:
        stmt = select(IgnoreRuleRow).order_by(IgnoreRuleRow.created_at.desc(), IgnoreRuleRow.id.desc())
        if rule_type:
            stmt = stmt.where(IgnoreRuleRow.rule_type == rule_type)
        if issuer_name:
            stmt = stmt.where(IgnoreRuleRow.issuer_name == issuer_name)
        if active_only:
            stmt = stmt.where(IgnoreRuleRow.is_active.is_(True))
        result = await self.session.execute(stmt.limit(limit))
        return list(result.scalars().all())

    async def find_hash_rule(self, value: str, issuer_name: str | None) -> IgnoreRuleRow | None:
        stmt = select(IgnoreRuleRow).where(
            IgnoreRuleRow.rule_type == RuleType.HASH,
            IgnoreRuleRow.rule_value == value,
        )
        if issuer_name is None:
            stmt = stmt.where(IgnoreRuleRow.issuer_name.is_(None))
        else:
            stmt = stmt.where(IgnoreRuleRow.issuer_name == issuer_name)
        result = await self.session.execute(stmt.limit(1))
        return result.scalar_one_or_none()

    async def record_use(self, rule_id: int, now: datetime) -> None:
        """Atomically count a match against the rule."""
        stmt = (
            update(IgnoreRuleRow)
            .where(IgnoreRuleRow.id == rule_id)
            .values(usage_count=IgnoreRuleRow.usage_count + 1, last_used_at=now)
        )
        await self.session.execute(stmt)

    async def set_active(self, rule_id: int, active: bool) -> bool:
        stmt = (
            update(IgnoreRuleRow)
            .where(IgnoreRuleRow.id == rule_id)
            .values(is_active=active)
        )
        result = await self.session.execute(stmt)
        return (result.rowcount or 0) > 0

    async def deactivate_expired(self, now: datetime) -> int:
        stmt = (
            update(IgnoreRuleRow)
            .where(
                IgnoreRuleRow.is_active.is_(True),
                IgnoreRuleRow.expires_at.is_not(None),
                IgnoreRuleRow.expires_at <= now,
            )
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount or 0

    async def delete_expired(self, now: datetime) -> int:
        stmt = delete(IgnoreRuleRow).where(
            IgnoreRuleRow.expires_at.is_not(None),
            IgnoreRuleRow.expires_at <= now,
        ).execution_options(synchronize_session=False)
        result = await self.session.execute(stmt)
        return result.rowcount or 0

    async def deactivate_stale(self, cutoff: datetime, min_usage: int) -> int:
        """Deactivate rules unused since cutoff with fewer than min_usage matches."""
        last_seen = func.coalesce(IgnoreRuleRow.last_used_at, IgnoreRuleRow.created_at)
        stmt = (
            update(IgnoreRuleRow)
            .where(
                and_(
                    IgnoreRuleRow.is_active.is_(True),
                    IgnoreRuleRow.usage_count < min_usage,
                    last_seen < cutoff,
                )
            )
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount or 0

    async def count_effective(self, now: datetime) -> int:
        return await self.count(IgnoreRuleRow.is_active.is_(True), _not_expired(now))
