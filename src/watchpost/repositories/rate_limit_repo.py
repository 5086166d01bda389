"""Hourly rate-limit bucket repository."""

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from watchpost.db.models.rate_limit import RateLimitBucketRow
from watchpost.repositories.base import BaseRepository


class RateLimitRepository(BaseRepository):
    def __init__(self, session: AsyncSession):
        super().__init__(session, RateLimitBucketRow)

    async def try_increment(self, issuer_name: str, bucket_hour: str, limit: int) -> bool:
        """Take one slot in the bucket if fewer than ``limit`` are taken."""
        await self.session.execute(
            self.insert()
            .values(issuer_name=issuer_name, bucket_hour=bucket_hour, count=0)
            .on_conflict_do_nothing(index_elements=["issuer_name", "bucket_hour"])
        )
        result = await self.session.execute(
            update(RateLimitBucketRow)
            .where(
                RateLimitBucketRow.issuer_name == issuer_name,
                RateLimitBucketRow.bucket_hour == bucket_hour,
                RateLimitBucketRow.count < limit,
            )
            .values(count=RateLimitBucketRow.count + 1)
        )
        return (result.rowcount or 0) > 0

    async def get_count(self, issuer_name: str, bucket_hour: str) -> int:
        stmt = select(RateLimitBucketRow.count).where(
            RateLimitBucketRow.issuer_name == issuer_name,
            RateLimitBucketRow.bucket_hour == bucket_hour,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none() or 0

    async def prune_before(self, oldest_bucket: str) -> int:
        # bucket keys are zero-padded YYYY-MM-DD-HH, so string order is time order
        result = await self.session.execute(
            delete(RateLimitBucketRow).where(RateLimitBucketRow.bucket_hour < oldest_bucket)
        )
        return result.rowcount or 0
