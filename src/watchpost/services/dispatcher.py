"""Single entry point for findings from every issuer kind.

Each submitted finding passes, in this order, through the rate limiter,
the suppression rules, the redirect domain check, the deduplicating
upsert and the notification queue. The whole chain runs in one session
and commits once; any exception is logged and turned into a ``failed``
result so nothing reaches the host that published the finding.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from watchpost.config import Settings, settings as default_settings
from watchpost.db.base import utcnow
from watchpost.issuers.base import Issuer
from watchpost.issuers.registry import IssuerRegistry
from watchpost.logging_config import bind_finding_context, unbind_finding_context
from watchpost.models.enums import IssuerKind, SubmitOutcome
from watchpost.models.finding import RawFinding, parse_finding
from watchpost.notifications.queue import NotificationQueue
from watchpost.notifications.registry import ChannelRegistry
from watchpost.services.domains import DomainReputationService
from watchpost.services.fingerprint import extract
from watchpost.services.issue_service import IssueService
from watchpost.services.rate_limiter import RateLimiter
from watchpost.services.suppression import SuppressionEngine

logger = logging.getLogger(__name__)


@dataclass
class SubmitResult:
    outcome: SubmitOutcome
    issue_id: int | None = None
    issue_hash: str | None = None
    notifications: int = 0
    rule_id: int | None = None
    domain: str | None = None
    error: str | None = None


@dataclass
class ScanReport:
    issuers: int = 0
    findings: int = 0
    errors: int = 0
    outcomes: dict[str, int] = field(default_factory=dict)

    def add(self, result: SubmitResult) -> None:
        self.findings += 1
        self.outcomes[result.outcome] = self.outcomes.get(result.outcome, 0) + 1


class Dispatcher:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        issuers: IssuerRegistry,
        channels: ChannelRegistry,
        rate_limiter: RateLimiter,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self.issuers = issuers
        self.channels = channels
        self.rate_limiter = rate_limiter
        self.settings = settings or default_settings
        self._clock = clock

    async def submit(self, finding: RawFinding | dict[str, Any], issuer: Issuer | None = None) -> SubmitResult:
        """Run a finding through the pipeline. Never raises."""
        if isinstance(finding, dict):
            try:
                finding = parse_finding(finding, issuer_name=issuer.name if issuer else None)
            except PydanticValidationError as exc:
                logger.warning("Rejected malformed finding payload: %s", exc)
                return SubmitResult(outcome=SubmitOutcome.FAILED, error=str(exc))

        issuer = issuer or self.issuers.get(finding.issuer_name)
        bind_finding_context(finding.issuer_name, finding.issue_type)
        try:
            return await self._submit(finding, issuer)
        except Exception as exc:
            # a lost finding must be visible to operators
            logger.exception("Failed to record %s finding from %s", finding.kind, finding.issuer_name)
            return SubmitResult(outcome=SubmitOutcome.FAILED, error=f"{type(exc).__name__}: {exc}")
        finally:
            unbind_finding_context()

    async def handle(self, finding: RawFinding) -> SubmitResult:
        """Event bus subscriber."""
        return await self.submit(finding)

    async def _submit(self, finding: RawFinding, issuer: Issuer | None) -> SubmitResult:
        limit = self.rate_limiter.limit_for(finding.issuer_name, issuer)
        if not await self.rate_limiter.check(finding.issuer_name, limit):
            return SubmitResult(outcome=SubmitOutcome.THROTTLED)

        identity = issuer.fingerprint(finding) if issuer else None
        extracted = extract(finding, self.settings.backtrace_exclude_paths, identity)

        async with self._session_factory() as session:
            rule = await SuppressionEngine(session, self._clock).match(extracted)
            if rule is not None:
                await session.commit()
                return SubmitResult(
                    outcome=SubmitOutcome.SUPPRESSED,
                    issue_hash=extracted.issue_hash,
                    rule_id=rule.id,
                )

            domain = None
            target = finding.redirect_target
            if target:
                domains = DomainReputationService(session, self.settings, self._clock)
                if domains.is_external(target):
                    check = await domains.check_redirect(target, {"source": finding.issuer_name})
                    domain = check.domain
                    if check.whitelisted:
                        await session.commit()
                        logger.debug("Redirect to whitelisted domain %s dropped", domain)
                        return SubmitResult(
                            outcome=SubmitOutcome.WHITELISTED,
                            issue_hash=extracted.issue_hash,
                            domain=domain,
                        )

            recorded = await IssueService(session, self.settings, self._clock).record_issue(
                finding,
                identity,
                extracted=extracted,
                notify_on_redetection=bool(issuer and issuer.notify_on_redetection),
            )
            queued = []
            if recorded.should_notify:
                queue = NotificationQueue(session, self.channels, self.settings, self._clock)
                queued = await queue.enqueue_for_issue(recorded.issue)
            await session.commit()

        return SubmitResult(
            outcome=SubmitOutcome.CREATED if recorded.created else SubmitOutcome.UPDATED,
            issue_id=recorded.issue.id,
            issue_hash=recorded.issue.issue_hash,
            notifications=len(queued),
            domain=domain,
        )

    async def run_scans(self) -> ScanReport:
        """Call ``detect`` on every enabled scan and hybrid issuer, by priority.

        An issuer that raises is reported as a low-severity ``<issuer>_error``
        issue and the pass moves on to the next issuer.
        """
        report = ScanReport()
        for issuer in self.issuers.by_kind(IssuerKind.SCAN, IssuerKind.HYBRID):
            report.issuers += 1
            try:
                findings = await issuer.detect()
            except Exception as exc:
                logger.exception("Issuer %s failed during detect", issuer.name)
                report.errors += 1
                report.add(await self.submit(issuer.error_finding(exc), issuer))
                continue
            for finding in findings:
                report.add(await self.submit(finding, issuer))

        if report.findings:
            logger.info(
                "Scan pass over %d issuers: %d findings, %d errors, %s",
                report.issuers, report.findings, report.errors, report.outcomes,
            )
        return report
