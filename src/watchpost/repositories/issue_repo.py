"""Issue repository.

The upsert path relies on the unique ``issue_hash`` constraint rather than
application locking: the insert uses ON CONFLICT DO NOTHING and every
re-detection is a single conditional UPDATE, so concurrent reporters of the
same fingerprint converge on one row.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from watchpost.db.models.issue import IssueRow
from watchpost.models.enums import IssueStatus
from watchpost.repositories.base import BaseRepository

_ORDERABLE = {
    "id",
    "last_detected",
    "first_detected",
    "detection_count",
    "severity",
    "status",
    "issuer_name",
    "created_at",
}


class IssueRepository(BaseRepository):
    def __init__(self, session: AsyncSession):
        super().__init__(session, IssueRow)

    async def get(self, issue_id: int) -> IssueRow | None:
        return await self.get_by_id("id", issue_id)

    async def get_by_hash(self, issue_hash: str) -> IssueRow | None:
        return await self.get_by_id("issue_hash", issue_hash)

    async def reload(self, issue_id: int) -> IssueRow | None:
        """Fetch a row, overwriting any stale identity-map state."""
        stmt = (
            select(IssueRow)
            .where(IssueRow.id == issue_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def insert_if_absent(self, values: dict[str, Any]) -> int | None:
        """Insert a new issue row. Returns its id, or None if the hash exists."""
        stmt = (
            self.insert()
            .values(**values)
            .on_conflict_do_nothing(index_elements=["issue_hash"])
            .returning(IssueRow.id)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def redetect_viewed(self, issue_hash: str, now: datetime) -> int | None:
        """Bump a viewed issue and clear its viewed flag in one statement.

        Returns the id only when this call performed the viewed -> unviewed
        transition.
        """
        stmt = (
            update(IssueRow)
            .where(IssueRow.issue_hash == issue_hash, IssueRow.viewed.is_(True))
            .values(
                last_detected=now,
                detection_count=IssueRow.detection_count + 1,
                viewed=False,
                viewed_by=None,
                viewed_at=None,
            )
            .returning(IssueRow.id)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def redetect(self, issue_hash: str, now: datetime) -> int | None:
        stmt = (
            update(IssueRow)
            .where(IssueRow.issue_hash == issue_hash)
            .values(
                last_detected=now,
                detection_count=IssueRow.detection_count + 1,
            )
            .returning(IssueRow.id)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_filtered(
        self,
        status: str | None = None,
        severity: str | None = None,
        issuer_name: str | None = None,
        issue_type: str | None = None,
        search: str | None = None,
        include_ignored: bool = True,
        viewed: bool | None = None,
        order_by: str = "last_detected",
        order: str = "desc",
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[IssueRow], int]:
        """List issues matching the filters. Returns (rows, total)."""
        criteria = []
        if status:
            criteria.append(IssueRow.status == status)
        if severity:
            criteria.append(IssueRow.severity == severity)
        if issuer_name:
            criteria.append(IssueRow.issuer_name == issuer_name)
        if issue_type:
            criteria.append(IssueRow.issue_type == issue_type)
        if search:
            like = f"%{search}%"
            criteria.append(
                or_(
                    IssueRow.title.like(like),
                    IssueRow.description.like(like),
                    IssueRow.file_path.like(like),
                )
            )
        if not include_ignored:
            criteria.append(IssueRow.is_ignored.is_(False))
        if viewed is not None:
            criteria.append(IssueRow.viewed.is_(viewed))

        total = await self.count(*criteria)

        column = getattr(IssueRow, order_by if order_by in _ORDERABLE else "last_detected")
        ordering = column.asc() if order.lower() == "asc" else column.desc()
        stmt = select(IssueRow).order_by(ordering, IssueRow.id.desc()).offset(offset).limit(limit)
        if criteria:
            stmt = stmt.where(*criteria)
        result = await self.session.execute(stmt)
        return list(result.scalars().all()), total

    async def count_by(self, column_name: str, limit: int | None = None) -> dict[str, int]:
        column = getattr(IssueRow, column_name)
        stmt = (
            select(column, func.count())
            .group_by(column)
            .order_by(func.count().desc())
        )
        if limit:
            stmt = stmt.limit(limit)
        result = await self.session.execute(stmt)
        return {key: count for key, count in result.all()}

    async def count_detected_since(self, since: datetime) -> int:
        return await self.count(IssueRow.first_detected >= since)

    async def delete_closed_before(self, cutoff: datetime) -> int:
        """Delete resolved and false-positive issues last touched before cutoff."""
        stmt = delete(IssueRow).where(
            IssueRow.status.in_([IssueStatus.RESOLVED, IssueStatus.FALSE_POSITIVE]),
            IssueRow.updated_at < cutoff,
        ).execution_options(synchronize_session=False)
        result = await self.session.execute(stmt)
        return result.rowcount or 0
