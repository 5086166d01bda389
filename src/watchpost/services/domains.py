"""Redirect-target domain reputation: whitelist, pending review, rejected.

A domain is a member of at most one list at a time: the whitelist table, the
pending table with status ``pending``, or the rejected table. Pending rows
whose status is ``approved``/``rejected`` are kept as history markers only;
if such a domain is detected again after leaving the whitelist or the
rejected list, its pending row starts a fresh review cycle.

Only whitelisting suppresses. Rejected and unknown domains still produce
issues.
"""

import csv
import io
import json
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any
from urllib.parse import urlsplit

from sqlalchemy.ext.asyncio import AsyncSession

from watchpost.config import Settings, settings as default_settings
from watchpost.db.base import utcnow
from watchpost.db.models.domain import PendingDomainRow, RejectedDomainRow, WhitelistDomainRow
from watchpost.errors.exceptions import InvalidTransitionError, NotFoundError, ValidationError
from watchpost.models.common import SYSTEM_ACTOR, Actor
from watchpost.models.enums import AuditEvent, DomainStatus
from watchpost.repositories.audit_repo import AuditLogRepository
from watchpost.repositories.domain_repo import (
    PendingDomainRepository,
    RejectedDomainRepository,
    WhitelistDomainRepository,
)

logger = logging.getLogger(__name__)

_HOSTNAME = re.compile(
    r"^(?=.{1,253}$)[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?(?:\.[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?)*$",
    re.IGNORECASE,
)


@dataclass
class DomainCheck:
    """Outcome of checking one redirect target."""

    domain: str | None
    whitelisted: bool = False
    status: str | None = None


def _wildcard_matches(pattern: str, domain: str) -> bool:
    regex = re.escape(pattern).replace(r"\*", ".*")
    return re.fullmatch(regex, domain) is not None


def whitelist_to_dict(row: WhitelistDomainRow) -> dict[str, Any]:
    return {
        "domain": row.domain,
        "reason": row.reason,
        "added_by": row.added_by,
        "added_at": row.added_at.isoformat() if row.added_at else None,
        "usage_count": row.usage_count,
        "last_used": row.last_used.isoformat() if row.last_used else None,
    }


def pending_to_dict(row: PendingDomainRow) -> dict[str, Any]:
    return {
        "domain": row.domain,
        "status": row.status,
        "first_detected": row.first_detected.isoformat() if row.first_detected else None,
        "last_detected": row.last_detected.isoformat() if row.last_detected else None,
        "detection_count": row.detection_count,
        "contexts": row.contexts or [],
    }


def rejected_to_dict(row: RejectedDomainRow) -> dict[str, Any]:
    return {
        "domain": row.domain,
        "reject_reason": row.reject_reason,
        "rejected_by": row.rejected_by,
        "rejected_at": row.rejected_at.isoformat() if row.rejected_at else None,
        "first_detected": row.first_detected.isoformat() if row.first_detected else None,
        "last_detected": row.last_detected.isoformat() if row.last_detected else None,
        "detection_count": row.detection_count,
        "contexts": row.contexts or [],
    }


class DomainReputationService:
    def __init__(
        self,
        session: AsyncSession,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session = session
        self.settings = settings or default_settings
        self._clock = clock
        self._whitelist = WhitelistDomainRepository(session)
        self._pending = PendingDomainRepository(session)
        self._rejected = RejectedDomainRepository(session)
        self._audit = AuditLogRepository(session)

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    @staticmethod
    def extract_domain(url: str | None) -> str | None:
        """Lower-cased host of ``url``; bare hosts without a scheme are accepted."""
        if not url:
            return None
        candidate = url.strip()
        if "://" not in candidate and not candidate.startswith("//"):
            candidate = "//" + candidate
        try:
            host = urlsplit(candidate).hostname
        except ValueError:
            return None
        return host.lower() if host else None

    @staticmethod
    def is_valid_domain(domain: str) -> bool:
        """Hostname check; ``*`` is allowed as a wildcard label."""
        return bool(domain) and _HOSTNAME.match(domain.replace("*", "test")) is not None

    def is_external(self, url: str) -> bool:
        domain = self.extract_domain(url)
        return domain is not None and domain != self.extract_domain(self.settings.site_url)

    # ------------------------------------------------------------------
    # Detection path
    # ------------------------------------------------------------------

    async def is_whitelisted(self, domain: str) -> WhitelistDomainRow | None:
        """Whitelist row covering ``domain`` (exact, then ``*.example.com`` wildcards)."""
        row = await self._whitelist.get(domain)
        if row:
            return row
        for wildcard in await self._whitelist.list_wildcards():
            if _wildcard_matches(wildcard.domain, domain):
                return wildcard
        return None

    async def check_redirect(self, url: str, context: dict[str, Any] | None = None) -> DomainCheck:
        """Classify a redirect target and record the detection.

        Whitelisted targets bump the whitelist row's usage. Anything else is
        tracked for review (pending, or the rejected row's counters) and is
        NOT suppressed.
        """
        domain = self.extract_domain(url)
        if not domain:
            return DomainCheck(domain=None)

        now = self._clock()
        entry = {"redirect_url": url, "timestamp": now.isoformat(), **(context or {})}

        allowed = await self.is_whitelisted(domain)
        if allowed:
            await self._whitelist.record_use(allowed.domain, now)
            return DomainCheck(domain=domain, whitelisted=True, status=DomainStatus.APPROVED)

        rejected = await self._rejected.get(domain)
        if rejected:
            await self._rejected.record_detection(rejected, now, entry, self.settings.context_limit)
            return DomainCheck(domain=domain, status=DomainStatus.REJECTED)

        pending = await self._pending.get(domain)
        if pending is not None and pending.status != DomainStatus.PENDING:
            # marker left behind by an earlier approve/reject that has since been undone
            await self._pending.restart_cycle(pending, now, entry)
            logger.info("Domain %s re-entered pending review", domain)
        else:
            await self._pending.record_detection(domain, now, entry, self.settings.context_limit)
        return DomainCheck(domain=domain, status=DomainStatus.PENDING)

    # ------------------------------------------------------------------
    # Admin actions
    # ------------------------------------------------------------------

    async def add_to_whitelist(
        self,
        domain: str,
        reason: str | None = None,
        actor: Actor = SYSTEM_ACTOR,
    ) -> WhitelistDomainRow:
        domain = domain.strip().lower()
        if not self.is_valid_domain(domain):
            raise ValidationError(f"Invalid domain: {domain}")

        existing = await self._whitelist.get(domain)
        if existing:
            return existing

        now = self._clock()
        await self._rejected.remove(domain)
        if await self._pending.get(domain):
            await self._pending.mark(domain, DomainStatus.APPROVED, approved_by=actor.user_id, approved_at=now)
        row = await self._whitelist.create(
            domain=domain,
            reason=reason,
            added_by=actor.user_id,
            added_at=now,
            usage_count=0,
        )
        await self._audit.append_for(actor, AuditEvent.DOMAIN_WHITELISTED, {"domain": domain, "reason": reason})
        logger.info("Domain %s whitelisted by %s", domain, actor.user_id)
        return row

    async def remove_from_whitelist(self, domain: str, actor: Actor = SYSTEM_ACTOR) -> bool:
        removed = await self._whitelist.remove(domain)
        if removed:
            await self._audit.append_for(actor, AuditEvent.DOMAIN_UNWHITELISTED, {"domain": domain})
        return removed

    async def approve_pending_domain(
        self,
        domain: str,
        reason: str | None = None,
        actor: Actor = SYSTEM_ACTOR,
    ) -> WhitelistDomainRow:
        pending = await self._require_pending(domain)
        now = self._clock()
        if not await self._pending.settle(domain, DomainStatus.APPROVED, approved_by=actor.user_id, approved_at=now):
            raise InvalidTransitionError("domain", pending.status, DomainStatus.APPROVED)

        row = await self._whitelist.get(domain)
        if row is None:
            row = await self._whitelist.create(
                domain=domain,
                reason=reason,
                added_by=actor.user_id,
                added_at=now,
                usage_count=0,
            )
        await self._audit.append_for(actor, AuditEvent.DOMAIN_APPROVED, {"domain": domain, "reason": reason})
        logger.info("Pending domain %s approved by %s", domain, actor.user_id)
        return row

    async def reject_pending_domain(
        self,
        domain: str,
        reason: str | None = None,
        actor: Actor = SYSTEM_ACTOR,
    ) -> RejectedDomainRow:
        pending = await self._require_pending(domain)
        now = self._clock()
        if not await self._pending.settle(
            domain,
            DomainStatus.REJECTED,
            rejected_by=actor.user_id,
            rejected_at=now,
            reject_reason=reason,
        ):
            raise InvalidTransitionError("domain", pending.status, DomainStatus.REJECTED)

        row = await self._rejected.create(
            domain=domain,
            first_detected=pending.first_detected,
            last_detected=pending.last_detected,
            detection_count=pending.detection_count,
            contexts=list(pending.contexts or []),
            rejected_at=now,
            rejected_by=actor.user_id,
            reject_reason=reason,
        )
        await self._audit.append_for(actor, AuditEvent.DOMAIN_REJECTED, {"domain": domain, "reason": reason})
        logger.info("Pending domain %s rejected by %s", domain, actor.user_id)
        return row

    async def remove_from_rejected(self, domain: str, actor: Actor = SYSTEM_ACTOR) -> None:
        """Allow a rejected domain again; its next detection opens a new review."""
        if not await self._rejected.remove(domain):
            raise NotFoundError("RejectedDomain", domain)
        await self._audit.append_for(actor, AuditEvent.DOMAIN_ALLOWED_AGAIN, {"domain": domain})

    async def bulk_import(
        self,
        domains: list[str],
        reason: str | None = None,
        actor: Actor = SYSTEM_ACTOR,
    ) -> dict[str, Any]:
        results: dict[str, Any] = {"success": 0, "failed": 0, "duplicates": 0, "errors": []}
        for raw in domains:
            domain = raw.strip().lower()
            if not domain:
                continue
            if not self.is_valid_domain(domain):
                results["failed"] += 1
                results["errors"].append(f"Invalid domain: {domain}")
                continue
            if await self.is_whitelisted(domain):
                results["duplicates"] += 1
                continue
            await self.add_to_whitelist(domain, reason, actor=actor)
            results["success"] += 1
        return results

    async def export(self, format: str = "csv") -> str:
        rows = [whitelist_to_dict(row) for row in await self._whitelist.list_all()]
        if format == "json":
            return json.dumps(rows, indent=2)
        if format != "csv":
            raise ValidationError(f"Unsupported export format '{format}'")

        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(["Domain", "Reason", "Added By", "Added At", "Usage Count", "Last Used"])
        for row in rows:
            writer.writerow(
                [
                    row["domain"],
                    row["reason"] or "",
                    row["added_by"] or "Unknown",
                    row["added_at"] or "",
                    row["usage_count"],
                    row["last_used"] or "Never",
                ]
            )
        return buffer.getvalue()

    # ------------------------------------------------------------------
    # Listings and maintenance
    # ------------------------------------------------------------------

    async def list_whitelist(self) -> list[WhitelistDomainRow]:
        return await self._whitelist.list_all()

    async def list_pending(self, status: str | None = DomainStatus.PENDING) -> list[PendingDomainRow]:
        return await self._pending.list_by_status(status)

    async def list_rejected(self) -> list[RejectedDomainRow]:
        return await self._rejected.list_all()

    async def cleanup_old_pending(self, days: int | None = None) -> int:
        days = days if days is not None else self.settings.pending_domain_days
        return await self._pending.delete_stale(self._clock() - timedelta(days=days))

    async def get_stats(self) -> dict[str, int]:
        return {
            "whitelisted": await self._whitelist.count(),
            "pending": await self._pending.count(PendingDomainRow.status == DomainStatus.PENDING),
            "rejected": await self._rejected.count(),
            "whitelist_usage": await self._whitelist.total_usage(),
        }

    async def _require_pending(self, domain: str) -> PendingDomainRow:
        row = await self._pending.get(domain)
        if row is None:
            raise NotFoundError("PendingDomain", domain)
        return row
