"""Issue table: one row per deduplicated finding."""

from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from watchpost.db.base import Base, TimestampMixin


class IssueRow(Base, TimestampMixin):
    __tablename__ = "security_monitor_issues"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    issue_hash: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    line_code_hash: Mapped[str | None] = mapped_column(String(32), nullable=True, index=True)
    issuer_name: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    issue_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    severity: Mapped[str] = mapped_column(String(20), nullable=False, default="medium", index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="new", index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    details: Mapped[str | None] = mapped_column(Text, nullable=True)
    raw_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    backtrace: Mapped[str | None] = mapped_column(Text, nullable=True)
    file_path: Mapped[str | None] = mapped_column(String(500), nullable=True, index=True)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True, index=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    first_detected: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    last_detected: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    detection_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    is_ignored: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    viewed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    viewed_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    viewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ignored_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    ignored_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ignore_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    extra_data: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)
