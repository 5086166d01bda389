"""Redirect-target domain reputation tables (whitelist / pending / rejected)."""

from datetime import datetime

from sqlalchemy import JSON, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from watchpost.db.base import Base, TimestampMixin


class WhitelistDomainRow(Base):
    __tablename__ = "security_monitor_whitelist_domains"

    domain: Mapped[str] = mapped_column(String(255), primary_key=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    added_by: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    added_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    usage_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_used: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class PendingDomainRow(Base):
    __tablename__ = "security_monitor_pending_domains"

    domain: Mapped[str] = mapped_column(String(255), primary_key=True)
    first_detected: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    last_detected: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    detection_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)
    contexts: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    approved_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejected_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reject_reason: Mapped[str | None] = mapped_column(Text, nullable=True)


class RejectedDomainRow(Base, TimestampMixin):
    __tablename__ = "security_monitor_rejected_domains"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    domain: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    first_detected: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_detected: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    detection_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    rejected_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    rejected_by: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    reject_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    contexts: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
