"""Issue recording and administration.

``record_issue`` is the deduplicating upsert: the first detection of a
fingerprint inserts a ``new`` row, every later one bumps ``last_detected``
and ``detection_count`` on that same row. A re-detection of a viewed issue
clears the viewed flag, and that transition (or the insert) is what makes
the issue eligible for a fresh notification.
"""

import json
import logging
import math
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from os.path import basename
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from watchpost.config import Settings, settings as default_settings
from watchpost.db.base import utcnow
from watchpost.db.models.ignore_rule import IgnoreRuleRow
from watchpost.db.models.issue import IssueRow
from watchpost.errors.exceptions import NotFoundError, ValidationError
from watchpost.models.common import SYSTEM_ACTOR, Actor, Page
from watchpost.models.enums import AuditEvent, IssueStatus, RuleType
from watchpost.models.finding import RawFinding
from watchpost.repositories.audit_repo import AuditLogRepository
from watchpost.repositories.ignore_rule_repo import IgnoreRuleRepository
from watchpost.repositories.issue_repo import IssueRepository
from watchpost.services.fingerprint import ExtractedFinding, extract
from watchpost.services.lifecycle import ensure_transition
from watchpost.services.suppression import SuppressionEngine

logger = logging.getLogger(__name__)


@dataclass
class RecordResult:
    issue: IssueRow
    created: bool
    unviewed: bool = False
    should_notify: bool = False


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def issue_to_dict(issue: IssueRow) -> dict[str, Any]:
    return {
        "id": issue.id,
        "issue_hash": issue.issue_hash,
        "line_code_hash": issue.line_code_hash,
        "issuer_name": issue.issuer_name,
        "issue_type": issue.issue_type,
        "severity": issue.severity,
        "status": issue.status,
        "title": issue.title,
        "description": issue.description,
        "details": issue.details,
        "raw_data": issue.raw_data,
        "backtrace": issue.backtrace,
        "file_path": issue.file_path,
        "ip_address": issue.ip_address,
        "user_agent": issue.user_agent,
        "first_detected": _iso(issue.first_detected),
        "last_detected": _iso(issue.last_detected),
        "detection_count": issue.detection_count,
        "is_ignored": issue.is_ignored,
        "viewed": issue.viewed,
        "viewed_by": issue.viewed_by,
        "viewed_at": _iso(issue.viewed_at),
        "ignored_by": issue.ignored_by,
        "ignored_at": _iso(issue.ignored_at),
        "ignore_reason": issue.ignore_reason,
        "resolved_by": issue.resolved_by,
        "resolved_at": _iso(issue.resolved_at),
        "resolution_notes": issue.resolution_notes,
        "metadata": issue.extra_data,
    }


class IssueService:
    def __init__(
        self,
        session: AsyncSession,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session = session
        self.settings = settings or default_settings
        self._clock = clock
        self._issues = IssueRepository(session)
        self._rules = IgnoreRuleRepository(session)
        self._audit = AuditLogRepository(session)

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    async def record_issue(
        self,
        finding: RawFinding,
        identity: dict[str, Any] | None = None,
        extracted: ExtractedFinding | None = None,
        notify_on_redetection: bool = False,
    ) -> RecordResult:
        """Insert or update the issue row for a finding's fingerprint.

        The insert is ON CONFLICT DO NOTHING against the unique
        ``issue_hash``; a losing racer falls through to the update path, so
        concurrent reporters never create duplicate rows.
        """
        ex = extracted or extract(finding, self.settings.backtrace_exclude_paths, identity)
        now = self._clock()

        created = False
        unviewed = False
        issue_id = None
        # a second pass covers a row deleted by cleanup between insert and update
        for _ in range(2):
            issue_id = await self._issues.insert_if_absent(self._new_row(finding, ex, now))
            if issue_id is not None:
                created = True
                break
            issue_id = await self._issues.redetect_viewed(ex.issue_hash, now)
            if issue_id is not None:
                unviewed = True
                break
            issue_id = await self._issues.redetect(ex.issue_hash, now)
            if issue_id is not None:
                break
        if issue_id is None:
            raise RuntimeError(f"Could not upsert issue {ex.issue_hash}")

        issue = await self._issues.reload(issue_id)
        if not created and ex.metadata:
            # last writer wins on concurrent metadata merges
            merged = {**(issue.extra_data or {}), **ex.metadata}
            if merged != issue.extra_data:
                issue.extra_data = merged
                await self.session.flush()

        should_notify = not issue.is_ignored and (created or unviewed or notify_on_redetection)
        if created:
            logger.info("New issue %s from %s: %s", issue.id, issue.issuer_name, issue.title)
        else:
            logger.debug(
                "Issue %s re-detected (count=%d, unviewed=%s)", issue.id, issue.detection_count, unviewed
            )
        return RecordResult(issue=issue, created=created, unviewed=unviewed, should_notify=should_notify)

    @staticmethod
    def _new_row(finding: RawFinding, ex: ExtractedFinding, now: datetime) -> dict[str, Any]:
        return {
            "issue_hash": ex.issue_hash,
            "line_code_hash": ex.line_code_hash,
            "issuer_name": ex.issuer_name,
            "issue_type": ex.issue_type,
            "severity": ex.severity,
            "status": IssueStatus.NEW,
            "title": ex.title,
            "description": ex.description,
            "details": ex.details,
            "raw_data": finding.model_dump(mode="json", exclude_none=True),
            "backtrace": json.dumps(ex.backtrace) if ex.backtrace else None,
            "file_path": ex.file_path,
            "ip_address": ex.ip_address,
            "user_agent": ex.user_agent,
            "first_detected": now,
            "last_detected": now,
            "detection_count": 1,
            "is_ignored": False,
            "viewed": False,
            "extra_data": ex.metadata or None,
        }

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_issue(self, issue_id: int) -> IssueRow:
        issue = await self._issues.get(issue_id)
        if not issue:
            raise NotFoundError("Issue", issue_id)
        return issue

    async def get_issues(
        self,
        status: str | None = None,
        severity: str | None = None,
        issuer_name: str | None = None,
        issue_type: str | None = None,
        search: str | None = None,
        include_ignored: bool = False,
        viewed: bool | None = None,
        order_by: str = "last_detected",
        order: str = "desc",
        page: int = 1,
        per_page: int = 20,
    ) -> Page:
        if page < 1 or per_page < 1:
            raise ValidationError("page and per_page must be positive")
        # an explicit status filter for ignored issues implies including them
        if status == IssueStatus.IGNORED:
            include_ignored = True
        rows, total = await self._issues.list_filtered(
            status=status,
            severity=severity,
            issuer_name=issuer_name,
            issue_type=issue_type,
            search=search,
            include_ignored=include_ignored,
            viewed=viewed,
            order_by=order_by,
            order=order,
            offset=(page - 1) * per_page,
            limit=per_page,
        )
        return Page(
            items=[issue_to_dict(row) for row in rows],
            total=total,
            pages=math.ceil(total / per_page),
            current_page=page,
            per_page=per_page,
        )

    async def get_stats(self) -> dict[str, Any]:
        now = self._clock()
        by_status = await self._issues.count_by("status")
        return {
            "total_issues": sum(by_status.values()),
            "new_issues": by_status.get(IssueStatus.NEW, 0),
            "investigating_issues": by_status.get(IssueStatus.INVESTIGATING, 0),
            "ignored_issues": by_status.get(IssueStatus.IGNORED, 0),
            "resolved_issues": by_status.get(IssueStatus.RESOLVED, 0),
            "false_positive_issues": by_status.get(IssueStatus.FALSE_POSITIVE, 0),
            "by_severity": await self._issues.count_by("severity"),
            "by_issuer": await self._issues.count_by("issuer_name", limit=10),
            "total_rules": await self._rules.count(),
            "active_rules": await self._rules.count_effective(now),
            "issues_last_24h": await self._issues.count_detected_since(now - timedelta(hours=24)),
            "issues_last_7d": await self._issues.count_detected_since(now - timedelta(days=7)),
        }

    # ------------------------------------------------------------------
    # Admin actions
    # ------------------------------------------------------------------

    async def mark_viewed(self, issue_id: int, actor: Actor = SYSTEM_ACTOR) -> IssueRow:
        issue = await self.get_issue(issue_id)
        return await self._issues.update(issue, viewed=True, viewed_by=actor.user_id, viewed_at=self._clock())

    async def unmark_viewed(self, issue_id: int) -> IssueRow:
        issue = await self.get_issue(issue_id)
        return await self._issues.update(issue, viewed=False, viewed_by=None, viewed_at=None)

    async def start_investigation(self, issue_id: int, actor: Actor = SYSTEM_ACTOR) -> IssueRow:
        return await self._change_status(issue_id, IssueStatus.INVESTIGATING, actor)

    async def mark_false_positive(
        self,
        issue_id: int,
        notes: str | None = None,
        actor: Actor = SYSTEM_ACTOR,
    ) -> IssueRow:
        return await self._change_status(issue_id, IssueStatus.FALSE_POSITIVE, actor, resolution_notes=notes)

    async def ignore_issue(self, issue_id: int, reason: str | None = None, actor: Actor = SYSTEM_ACTOR) -> IssueRow:
        issue = await self.get_issue(issue_id)
        ensure_transition(issue.status, IssueStatus.IGNORED)
        await self._issues.update(
            issue,
            status=IssueStatus.IGNORED,
            is_ignored=True,
            ignored_by=actor.user_id,
            ignored_at=self._clock(),
            ignore_reason=reason,
        )
        await self._audit.append_for(actor, AuditEvent.ISSUE_IGNORED, {"issue_id": issue_id, "reason": reason})
        logger.info("Issue %s ignored by %s", issue_id, actor.user_id)
        return issue

    async def unignore_issue(self, issue_id: int, actor: Actor = SYSTEM_ACTOR) -> IssueRow:
        issue = await self.get_issue(issue_id)
        ensure_transition(issue.status, IssueStatus.NEW)
        await self._issues.update(
            issue,
            status=IssueStatus.NEW,
            is_ignored=False,
            ignored_by=None,
            ignored_at=None,
            ignore_reason=None,
        )
        await self._audit.append_for(actor, AuditEvent.ISSUE_UNIGNORED, {"issue_id": issue_id})
        return issue

    async def resolve_issue(self, issue_id: int, notes: str | None = None, actor: Actor = SYSTEM_ACTOR) -> IssueRow:
        issue = await self.get_issue(issue_id)
        ensure_transition(issue.status, IssueStatus.RESOLVED)
        await self._issues.update(
            issue,
            status=IssueStatus.RESOLVED,
            is_ignored=False,
            resolved_by=actor.user_id,
            resolved_at=self._clock(),
            resolution_notes=notes,
        )
        await self._audit.append_for(actor, AuditEvent.ISSUE_RESOLVED, {"issue_id": issue_id, "notes": notes})
        logger.info("Issue %s resolved by %s", issue_id, actor.user_id)
        return issue

    async def create_ignore_rule_from_issue(
        self,
        issue_id: int,
        rule_type: str,
        pattern: str | None = None,
        description: str | None = None,
        expires_days: int | None = None,
        actor: Actor = SYSTEM_ACTOR,
    ) -> IgnoreRuleRow:
        """Promote an issue into a standing ignore rule, then ignore the issue."""
        issue = await self.get_issue(issue_id)

        if rule_type == RuleType.HASH:
            value, name = issue.issue_hash, f"Ignore hash: {issue.issue_hash[:8]}"
        elif rule_type == RuleType.FILE:
            if not issue.file_path:
                raise ValidationError("Issue has no file path to build a file rule from")
            value, name = issue.file_path, f"Ignore file: {basename(issue.file_path)}"
        elif rule_type == RuleType.IP:
            if not issue.ip_address:
                raise ValidationError("Issue has no IP address to build an ip rule from")
            value, name = issue.ip_address, f"Ignore IP: {issue.ip_address}"
        elif rule_type == RuleType.ISSUER:
            value, name = issue.issuer_name, f"Ignore issuer: {issue.issuer_name}"
        elif rule_type in (RuleType.PATTERN, RuleType.REGEX):
            value = pattern or issue.title
            name = f"Ignore {rule_type}: {value[:50]}"
        else:
            raise ValidationError(f"Unsupported rule_type '{rule_type}'")

        expires_at = self._clock() + timedelta(days=expires_days) if expires_days else None
        rule = await SuppressionEngine(self.session, self._clock).add_rule(
            rule_type,
            value,
            rule_name=name,
            issuer_name=None if rule_type == RuleType.ISSUER else issue.issuer_name,
            description=description or f"Auto-generated from issue #{issue.id}",
            expires_at=expires_at,
            actor=actor,
        )
        if issue.status != IssueStatus.IGNORED:
            await self.ignore_issue(issue_id, f"Ignored by rule: {rule.rule_name}", actor=actor)
        return rule

    async def cleanup(self, days: int | None = None) -> int:
        """Delete resolved and false-positive issues untouched for ``days``."""
        days = days if days is not None else self.settings.retention_days
        removed = await self._issues.delete_closed_before(self._clock() - timedelta(days=days))
        if removed:
            logger.info("Removed %d closed issues older than %d days", removed, days)
        return removed

    async def _change_status(
        self,
        issue_id: int,
        target: IssueStatus,
        actor: Actor,
        **fields: Any,
    ) -> IssueRow:
        issue = await self.get_issue(issue_id)
        current = issue.status
        ensure_transition(current, target)
        await self._issues.update(issue, status=target, **fields)
        await self._audit.append_for(
            actor,
            AuditEvent.ISSUE_STATUS_CHANGED,
            {"issue_id": issue_id, "from": current, "to": target},
        )
        return issue
