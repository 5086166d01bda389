"""Ignore-rule evaluation and administration.

Rules are evaluated before an issue row is touched. A rule whose regex does
not compile is treated as non-matching: suppression fails open so that a bad
rule can never silence detection for its whole scope.
"""

import logging
import re
from collections.abc import Callable
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from watchpost.db.base import utcnow
from watchpost.db.models.ignore_rule import IgnoreRuleRow
from watchpost.errors.exceptions import NotFoundError, ValidationError
from watchpost.models.common import SYSTEM_ACTOR, Actor
from watchpost.models.enums import AuditEvent, RuleType
from watchpost.repositories.audit_repo import AuditLogRepository
from watchpost.repositories.ignore_rule_repo import IgnoreRuleRepository
from watchpost.services.fingerprint import ExtractedFinding

logger = logging.getLogger(__name__)


@lru_cache(maxsize=256)
def _compile(pattern: str) -> re.Pattern:
    return re.compile(pattern, re.IGNORECASE)


def _text_fields(finding: ExtractedFinding) -> list[str]:
    return [value for value in (finding.title, finding.description, finding.file_path) if value]


def _in_scope(rule: IgnoreRuleRow, finding: ExtractedFinding) -> bool:
    if rule.issuer_name and rule.rule_type != RuleType.ISSUER and rule.issuer_name != finding.issuer_name:
        return False
    if rule.issue_type and rule.issue_type != finding.issue_type:
        return False
    return True


def rule_matches(rule: IgnoreRuleRow, finding: ExtractedFinding) -> bool:
    """Evaluate a single rule's predicate against a finding."""
    value = rule.rule_value
    rule_type = rule.rule_type

    if rule_type == RuleType.HASH:
        return value in (finding.issue_hash, finding.line_code_hash, finding.content_hash)
    if rule_type == RuleType.ISSUER:
        return value == finding.issuer_name
    if rule_type == RuleType.IP:
        return bool(finding.ip_address) and value == finding.ip_address
    if rule_type == RuleType.FILE:
        return bool(finding.file_path) and value in finding.file_path
    if rule_type == RuleType.PATTERN:
        return any(value in text for text in _text_fields(finding))
    if rule_type == RuleType.REGEX:
        try:
            compiled = _compile(value)
        except re.error as exc:
            logger.warning("Ignore rule %s has an invalid regex %r: %s", rule.id, value, exc)
            return False
        return any(compiled.search(text) for text in _text_fields(finding))

    logger.warning("Ignore rule %s has unknown rule_type %r", rule.id, rule_type)
    return False


def rule_to_dict(rule: IgnoreRuleRow) -> dict[str, Any]:
    return {
        "id": rule.id,
        "rule_name": rule.rule_name,
        "rule_type": rule.rule_type,
        "rule_value": rule.rule_value,
        "issuer_name": rule.issuer_name,
        "issue_type": rule.issue_type,
        "description": rule.description,
        "is_active": rule.is_active,
        "created_by": rule.created_by,
        "expires_at": rule.expires_at.isoformat() if rule.expires_at else None,
        "usage_count": rule.usage_count,
        "last_used_at": rule.last_used_at.isoformat() if rule.last_used_at else None,
        "created_at": rule.created_at.isoformat() if rule.created_at else None,
    }


class SuppressionEngine:
    """Evaluates active ignore rules and manages their lifecycle."""

    def __init__(self, session: AsyncSession, clock: Callable[[], datetime] = utcnow):
        self.session = session
        self._clock = clock
        self._rules = IgnoreRuleRepository(session)
        self._audit = AuditLogRepository(session)

    async def match(self, finding: ExtractedFinding) -> IgnoreRuleRow | None:
        """Return the first rule that suppresses the finding, recording its use."""
        now = self._clock()
        for rule in await self._rules.list_effective(now):
            if not _in_scope(rule, finding):
                continue
            if rule_matches(rule, finding):
                await self._rules.record_use(rule.id, now)
                logger.debug("Finding %s suppressed by rule %s (%s)", finding.issue_hash, rule.id, rule.rule_type)
                return rule
        return None

    async def should_suppress(self, finding: ExtractedFinding) -> bool:
        return await self.match(finding) is not None

    async def add_rule(
        self,
        rule_type: str,
        rule_value: str,
        rule_name: str | None = None,
        issuer_name: str | None = None,
        issue_type: str | None = None,
        description: str | None = None,
        expires_at: datetime | None = None,
        actor: Actor = SYSTEM_ACTOR,
    ) -> IgnoreRuleRow:
        try:
            rule_type = RuleType(rule_type)
        except ValueError:
            raise ValidationError(f"Unknown rule_type '{rule_type}'") from None
        if not rule_value or not rule_value.strip():
            raise ValidationError("rule_value must not be empty")
        if rule_type == RuleType.REGEX:
            try:
                re.compile(rule_value)
            except re.error as exc:
                raise ValidationError(f"Invalid regex: {exc}") from exc

        rule = await self._rules.create(
            rule_name=(rule_name or f"Ignore {rule_type}: {rule_value[:50]}")[:100],
            rule_type=rule_type,
            rule_value=rule_value,
            issuer_name=issuer_name,
            issue_type=issue_type,
            description=description,
            expires_at=expires_at,
            created_by=actor.user_id,
            is_active=True,
            usage_count=0,
        )
        await self._audit.append_for(
            actor,
            AuditEvent.RULE_CREATED,
            {"rule_id": rule.id, "rule_type": rule_type, "rule_value": rule_value},
        )
        logger.info("Ignore rule %s created (%s=%r)", rule.id, rule_type, rule_value)
        return rule

    async def get_rule(self, rule_id: int) -> IgnoreRuleRow:
        rule = await self._rules.get(rule_id)
        if not rule:
            raise NotFoundError("IgnoreRule", rule_id)
        return rule

    async def list_rules(
        self,
        rule_type: str | None = None,
        issuer_name: str | None = None,
        active_only: bool = False,
    ) -> list[IgnoreRuleRow]:
        return await self._rules.list_rules(rule_type=rule_type, issuer_name=issuer_name, active_only=active_only)

    async def deactivate_rule(self, rule_id: int, actor: Actor = SYSTEM_ACTOR) -> IgnoreRuleRow:
        rule = await self.get_rule(rule_id)
        await self._rules.update(rule, is_active=False)
        await self._audit.append_for(actor, AuditEvent.RULE_DEACTIVATED, {"rule_id": rule_id})
        return rule

    async def delete_rule(self, rule_id: int, actor: Actor = SYSTEM_ACTOR) -> None:
        rule = await self.get_rule(rule_id)
        await self._rules.delete(rule)
        await self._audit.append_for(actor, AuditEvent.RULE_DELETED, {"rule_id": rule_id})

    async def add_ignored_hash(
        self,
        value: str,
        issuer_name: str | None = None,
        reason: str | None = None,
        actor: Actor = SYSTEM_ACTOR,
    ) -> IgnoreRuleRow:
        """Issuer-scoped hash rule; returns the existing rule if already present."""
        existing = await self._rules.find_hash_rule(value, issuer_name)
        if existing:
            if not existing.is_active:
                await self._rules.update(existing, is_active=True)
            return existing
        return await self.add_rule(
            RuleType.HASH,
            value,
            rule_name=f"Ignored hash ({issuer_name or 'any'})",
            issuer_name=issuer_name,
            description=reason,
            actor=actor,
        )

    async def remove_ignored_hash(self, value: str, issuer_name: str | None = None) -> bool:
        existing = await self._rules.find_hash_rule(value, issuer_name)
        if not existing:
            return False
        await self._rules.delete(existing)
        return True

    async def deactivate_expired(self) -> int:
        return await self._rules.deactivate_expired(self._clock())

    async def delete_expired(self) -> int:
        return await self._rules.delete_expired(self._clock())

    async def deactivate_stale(self, days: int, min_usage: int = 1) -> int:
        """Deactivate rules with fewer than ``min_usage`` matches and no use in ``days``."""
        return await self._rules.deactivate_stale(self._clock() - timedelta(days=days), min_usage)
