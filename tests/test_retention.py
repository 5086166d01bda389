"""Tests for the retention pass."""

from datetime import timedelta

import pytest

from watchpost.db.base import utcnow
from watchpost.db.models import AuditLogRow, NotificationRow
from watchpost.models.finding import RawFinding
from watchpost.services.domains import DomainReputationService
from watchpost.services.issue_service import IssueService
from watchpost.services.retention import RetentionService
from watchpost.services.suppression import SuppressionEngine


@pytest.mark.asyncio
async def test_retention_pass_counts_every_step(db_session, session_factory, settings):
    long_ago = utcnow() - timedelta(days=400)
    issues = IssueService(db_session, settings)
    closed = (await issues.record_issue(RawFinding(issuer_name="x", message="old"))).issue
    open_issue = (await issues.record_issue(RawFinding(issuer_name="x", message="current"))).issue
    await issues.resolve_issue(closed.id)
    closed.updated_at = long_ago

    rules = SuppressionEngine(db_session)
    await rules.add_rule("ip", "10.0.0.1", expires_at=utcnow() - timedelta(days=1))
    stale = await rules.add_rule("ip", "10.0.0.2")
    stale.created_at = long_ago
    await rules.add_rule("ip", "10.0.0.3")

    domains = DomainReputationService(db_session, settings)
    await domains.check_redirect("https://once.example/")
    await domains.check_redirect("https://fresh.example/")
    [once] = [row for row in await domains.list_pending() if row.domain == "once.example"]
    once.first_detected = long_ago

    db_session.add(
        NotificationRow(
            channel_name="primary",
            issue_id=open_issue.id,
            message="old alert",
            status="sent",
            retry_count=0,
            max_retries=3,
            sent_at=long_ago,
        )
    )
    db_session.add(AuditLogRow(event_type="issue_resolved", user_id="1", ip_address="", created_at=long_ago))
    await db_session.commit()

    async with session_factory() as session:
        counts = await RetentionService(session, settings).run()

    assert counts == {
        "issues_deleted": 1,
        "rules_deactivated": 1,
        "rules_deleted": 1,
        "stale_rules_deactivated": 1,
        "pending_domains_deleted": 1,
        "notifications_purged": 1,
        "audit_entries_purged": 1,
    }


@pytest.mark.asyncio
async def test_retention_pass_on_empty_store(session_factory, settings):
    async with session_factory() as session:
        counts = await RetentionService(session, settings).run()
    assert set(counts.values()) == {0}


@pytest.mark.asyncio
async def test_pipeline_runs_retention(pipeline):
    counts = await pipeline.run_retention()
    assert counts["issues_deleted"] == 0
