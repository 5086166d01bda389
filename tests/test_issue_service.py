"""Tests for issue recording, deduplication and admin operations."""

from datetime import timedelta

import pytest
from sqlalchemy import select

from watchpost.db.base import as_utc
from watchpost.db.models import AuditLogRow, IgnoreRuleRow, IssueRow
from watchpost.errors.exceptions import InvalidTransitionError, NotFoundError, ValidationError
from watchpost.models.common import Actor
from watchpost.models.enums import IssueStatus
from watchpost.models.finding import CodeScanFinding, FailedLoginFinding, RawFinding
from watchpost.services.issue_service import IssueService

ADMIN = Actor(user_id="7", ip_address="10.0.0.1")


def _sqli(**overrides):
    data = {
        "issuer_name": "sqli",
        "issue_type": "sql_injection",
        "title": "SQL injection attempt",
        "ip_address": "203.0.113.9",
        "details": {"param": "id"},
    }
    data.update(overrides)
    return RawFinding(**data)


@pytest.fixture
def service(db_session, settings, clock):
    return IssueService(db_session, settings, clock)


@pytest.mark.asyncio
async def test_first_detection_inserts_new_issue(service, clock):
    result = await service.record_issue(_sqli())

    assert result.created
    assert result.should_notify
    issue = result.issue
    assert issue.status == IssueStatus.NEW
    assert issue.detection_count == 1
    assert as_utc(issue.first_detected) == clock.now
    assert as_utc(issue.last_detected) == clock.now
    assert issue.severity == "medium"
    assert issue.raw_data["issuer_name"] == "sqli"
    assert len(issue.issue_hash) == 32


@pytest.mark.asyncio
async def test_dedup_idempotence(service, clock):
    start = clock.now
    for _ in range(4):
        result = await service.record_issue(_sqli())
        clock.advance(minutes=5)

    rows = (await service.session.execute(select(IssueRow))).scalars().all()
    assert len(rows) == 1
    issue = rows[0]
    assert issue.detection_count == 4
    assert as_utc(issue.first_detected) == start
    assert as_utc(issue.last_detected) == start + timedelta(minutes=15)


@pytest.mark.asyncio
async def test_silent_redetection_does_not_notify(service):
    await service.record_issue(_sqli())
    again = await service.record_issue(_sqli())
    assert not again.created
    assert not again.unviewed
    assert not again.should_notify


@pytest.mark.asyncio
async def test_notify_on_redetection_opt_in(service):
    await service.record_issue(_sqli())
    again = await service.record_issue(_sqli(), notify_on_redetection=True)
    assert again.should_notify


@pytest.mark.asyncio
async def test_viewed_resets_on_redetection(service, clock):
    first = await service.record_issue(_sqli())
    await service.mark_viewed(first.issue.id, ADMIN)
    assert first.issue.viewed
    assert first.issue.viewed_by == "7"

    clock.advance(hours=1)
    again = await service.record_issue(_sqli())

    assert again.unviewed
    assert again.should_notify
    assert again.issue.viewed is False
    assert again.issue.viewed_by is None
    assert again.issue.viewed_at is None
    assert again.issue.detection_count == 2


@pytest.mark.asyncio
async def test_ignored_issue_stays_ignored_on_recurrence(service):
    first = await service.record_issue(_sqli())
    await service.ignore_issue(first.issue.id, "known scanner", ADMIN)

    again = await service.record_issue(_sqli())
    assert again.issue.status == IssueStatus.IGNORED
    assert again.issue.is_ignored
    assert again.issue.detection_count == 2
    assert not again.should_notify


@pytest.mark.asyncio
async def test_metadata_merges_on_redetection(service):
    await service.record_issue(_sqli(metadata={"first": 1}))
    again = await service.record_issue(_sqli(metadata={"second": 2}))
    assert again.issue.extra_data == {"first": 1, "second": 2, "kind": "generic"}


@pytest.mark.asyncio
async def test_ignore_unignore_and_resolve_are_audited(service, db_session):
    issue = (await service.record_issue(_sqli())).issue

    await service.ignore_issue(issue.id, "noise", ADMIN)
    assert issue.status == IssueStatus.IGNORED
    assert issue.ignored_by == "7"
    assert issue.ignore_reason == "noise"

    await service.unignore_issue(issue.id, ADMIN)
    assert issue.status == IssueStatus.NEW
    assert not issue.is_ignored
    assert issue.ignored_by is None

    await service.resolve_issue(issue.id, "patched", ADMIN)
    assert issue.status == IssueStatus.RESOLVED
    assert issue.resolution_notes == "patched"

    events = (await db_session.execute(select(AuditLogRow.event_type).order_by(AuditLogRow.id))).scalars().all()
    assert events == ["issue_ignored", "issue_unignored", "issue_resolved"]
    entry = (await db_session.execute(select(AuditLogRow))).scalars().first()
    assert entry.user_id == "7"
    assert entry.ip_address == "10.0.0.1"


@pytest.mark.asyncio
async def test_terminal_issue_rejects_transitions(service):
    issue = (await service.record_issue(_sqli())).issue
    await service.mark_false_positive(issue.id, "test traffic")

    with pytest.raises(InvalidTransitionError):
        await service.ignore_issue(issue.id)
    with pytest.raises(InvalidTransitionError):
        await service.start_investigation(issue.id)


@pytest.mark.asyncio
async def test_unknown_issue_raises_not_found(service):
    with pytest.raises(NotFoundError):
        await service.resolve_issue(999)


@pytest.mark.asyncio
async def test_get_issues_filters_and_paginates(service):
    for n in range(5):
        await service.record_issue(_sqli(ip_address=f"198.51.100.{n}", details={"n": n}))
    login = await service.record_issue(
        FailedLoginFinding(issuer_name="login", username="admin", ip_address="192.0.2.1", title="Failed login")
    )
    await service.ignore_issue(login.issue.id)

    page = await service.get_issues(per_page=2)
    assert page.total == 5
    assert page.pages == 3
    assert len(page.items) == 2
    assert page.current_page == 1

    everything = await service.get_issues(include_ignored=True, per_page=50)
    assert everything.total == 6

    ignored = await service.get_issues(status="ignored")
    assert [item["id"] for item in ignored.items] == [login.issue.id]

    searched = await service.get_issues(search="injection")
    assert searched.total == 5

    by_issuer = await service.get_issues(issuer_name="login", include_ignored=True)
    assert by_issuer.total == 1


@pytest.mark.asyncio
async def test_get_issues_rejects_bad_paging(service):
    with pytest.raises(ValidationError):
        await service.get_issues(page=0)


@pytest.mark.asyncio
async def test_get_stats(service):
    a = await service.record_issue(_sqli())
    await service.record_issue(CodeScanFinding(issuer_name="code", file_path="/x.php", title="eval() in upload"))
    await service.resolve_issue(a.issue.id)

    stats = await service.get_stats()
    assert stats["total_issues"] == 2
    assert stats["new_issues"] == 1
    assert stats["resolved_issues"] == 1
    assert stats["by_severity"] == {"medium": 1, "critical": 1}
    assert stats["by_issuer"] == {"sqli": 1, "code": 1}
    assert stats["issues_last_24h"] == 2
    assert stats["active_rules"] == 0


@pytest.mark.asyncio
async def test_create_ignore_rule_from_issue(service, db_session):
    issue = (
        await service.record_issue(_sqli(file_path="/wp-content/plugins/x/evil.php"))
    ).issue

    rule = await service.create_ignore_rule_from_issue(issue.id, "file", expires_days=7, actor=ADMIN)

    assert rule.rule_type == "file"
    assert rule.rule_value == "/wp-content/plugins/x/evil.php"
    assert rule.rule_name == "Ignore file: evil.php"
    assert rule.issuer_name == "sqli"
    assert rule.created_by == "7"
    assert rule.expires_at is not None
    assert issue.status == IssueStatus.IGNORED
    assert issue.ignore_reason == "Ignored by rule: Ignore file: evil.php"


@pytest.mark.asyncio
async def test_create_ignore_rule_requires_source_field(service, db_session):
    issue = (await service.record_issue(_sqli())).issue
    with pytest.raises(ValidationError):
        await service.create_ignore_rule_from_issue(issue.id, "file")
    rules = (await db_session.execute(select(IgnoreRuleRow))).scalars().all()
    assert rules == []


@pytest.mark.asyncio
async def test_issuer_rule_from_issue_is_not_issuer_scoped(service):
    issue = (await service.record_issue(_sqli())).issue
    rule = await service.create_ignore_rule_from_issue(issue.id, "issuer")
    assert rule.rule_value == "sqli"
    assert rule.issuer_name is None


@pytest.mark.asyncio
async def test_cleanup_removes_old_closed_issues(service, db_session, clock):
    old = (await service.record_issue(_sqli())).issue
    fresh = (await service.record_issue(_sqli(details={"other": True}))).issue
    still_open = (await service.record_issue(_sqli(details={"open": True}))).issue
    await service.resolve_issue(old.id)
    await service.resolve_issue(fresh.id)
    old.updated_at = clock.now - timedelta(days=120)
    still_open.updated_at = clock.now - timedelta(days=120)
    await db_session.flush()

    assert await service.cleanup(90) == 1
    remaining = (await db_session.execute(select(IssueRow.id))).scalars().all()
    assert sorted(remaining) == sorted([fresh.id, still_open.id])
