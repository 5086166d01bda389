"""Hourly alert buckets used by the database-backed rate limiter."""

from sqlalchemy import Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from watchpost.db.base import Base, TimestampMixin


class RateLimitBucketRow(Base, TimestampMixin):
    __tablename__ = "security_monitor_rate_limits"
    __table_args__ = (UniqueConstraint("issuer_name", "bucket_hour", name="uq_rate_limit_bucket"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    issuer_name: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    bucket_hour: Mapped[str] = mapped_column(String(13), nullable=False, index=True)
    count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
