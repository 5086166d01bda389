"""Tests for ignore-rule evaluation."""

from datetime import timedelta

import pytest

from watchpost.db.base import utcnow
from watchpost.errors.exceptions import NotFoundError, ValidationError
from watchpost.models.finding import RawFinding
from watchpost.repositories.ignore_rule_repo import IgnoreRuleRepository
from watchpost.services.fingerprint import extract
from watchpost.services.suppression import SuppressionEngine, rule_matches, rule_to_dict


def _finding(**overrides):
    data = {
        "issuer_name": "upload",
        "issue_type": "malicious_upload",
        "title": "Suspicious upload detected",
        "file_path": "/var/www/wp-content/uploads/2024/shell.php",
        "ip_address": "198.51.100.7",
    }
    data.update(overrides)
    return extract(RawFinding(**data), [])


@pytest.fixture
def engine(db_session):
    return SuppressionEngine(db_session)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "rule_type,value",
    [
        ("file", "/wp-content/uploads/"),
        ("ip", "198.51.100.7"),
        ("issuer", "upload"),
        ("pattern", "Suspicious upload"),
        ("regex", r"shell\.php$"),
    ],
)
async def test_each_rule_type_suppresses(engine, rule_type, value):
    await engine.add_rule(rule_type, value)
    assert await engine.should_suppress(_finding())


@pytest.mark.asyncio
async def test_hash_rule_matches_issue_or_line_hash(engine):
    finding = _finding()
    await engine.add_rule("hash", finding.line_code_hash)
    assert await engine.should_suppress(finding)
    assert not await engine.should_suppress(_finding(title="Other upload"))


@pytest.mark.asyncio
async def test_non_matching_rules_do_not_suppress(engine):
    await engine.add_rule("ip", "203.0.113.1")
    await engine.add_rule("file", "/plugins/")
    await engine.add_rule("pattern", "suspicious upload")
    assert not await engine.should_suppress(_finding())


@pytest.mark.asyncio
async def test_regex_is_case_insensitive(engine):
    await engine.add_rule("regex", "SUSPICIOUS\\s+UPLOAD")
    assert await engine.should_suppress(_finding())


@pytest.mark.asyncio
async def test_invalid_regex_fails_open(engine, db_session):
    rule = await IgnoreRuleRepository(db_session).create(
        rule_name="broken",
        rule_type="regex",
        rule_value="([unclosed",
        is_active=True,
        usage_count=0,
    )
    assert not rule_matches(rule, _finding())
    assert not await engine.should_suppress(_finding())


@pytest.mark.asyncio
async def test_add_rule_rejects_bad_input(engine):
    with pytest.raises(ValidationError):
        await engine.add_rule("regex", "([unclosed")
    with pytest.raises(ValidationError):
        await engine.add_rule("wildcard", "x")
    with pytest.raises(ValidationError):
        await engine.add_rule("ip", "   ")


@pytest.mark.asyncio
async def test_expired_and_inactive_rules_are_skipped(engine):
    await engine.add_rule("ip", "198.51.100.7", expires_at=utcnow() - timedelta(hours=1))
    rule = await engine.add_rule("issuer", "upload")
    await engine.deactivate_rule(rule.id)
    assert not await engine.should_suppress(_finding())

    await engine.add_rule("file", "shell.php", expires_at=utcnow() + timedelta(days=1))
    assert await engine.should_suppress(_finding())


@pytest.mark.asyncio
async def test_issuer_scope_limits_rule(engine):
    await engine.add_rule("ip", "198.51.100.7", issuer_name="login")
    assert not await engine.should_suppress(_finding())
    assert await engine.should_suppress(_finding(issuer_name="login"))


@pytest.mark.asyncio
async def test_match_records_usage(engine, db_session):
    rule = await engine.add_rule("pattern", "upload")
    await engine.match(_finding())
    await engine.match(_finding())
    await db_session.refresh(rule)
    assert rule.usage_count == 2
    assert rule.last_used_at is not None


@pytest.mark.asyncio
async def test_cheaper_rule_types_win(engine):
    await engine.add_rule("regex", "upload")
    ip_rule = await engine.add_rule("ip", "198.51.100.7")
    matched = await engine.match(_finding())
    assert matched.id == ip_rule.id


@pytest.mark.asyncio
async def test_add_ignored_hash_is_idempotent(engine):
    first = await engine.add_ignored_hash("abc123", issuer_name="upload")
    await engine.deactivate_rule(first.id)
    second = await engine.add_ignored_hash("abc123", issuer_name="upload")
    assert second.id == first.id
    assert second.is_active
    assert await engine.remove_ignored_hash("abc123", issuer_name="upload")
    assert not await engine.remove_ignored_hash("abc123", issuer_name="upload")


@pytest.mark.asyncio
async def test_delete_rule(engine):
    rule = await engine.add_rule("ip", "10.0.0.1")
    await engine.delete_rule(rule.id)
    with pytest.raises(NotFoundError):
        await engine.get_rule(rule.id)


@pytest.mark.asyncio
async def test_expiry_maintenance(engine, db_session):
    expired = await engine.add_rule("ip", "10.0.0.1", expires_at=utcnow() - timedelta(days=1))
    await engine.add_rule("ip", "10.0.0.2")

    assert await engine.deactivate_expired() == 1
    await db_session.refresh(expired)
    assert not expired.is_active
    assert await engine.delete_expired() == 1
    assert len(await engine.list_rules()) == 1


@pytest.mark.asyncio
async def test_deactivate_stale_rules(engine, db_session):
    unused = await engine.add_rule("ip", "10.0.0.1")
    used = await engine.add_rule("pattern", "upload")
    await engine.match(_finding())
    unused.created_at = utcnow() - timedelta(days=120)
    used.created_at = utcnow() - timedelta(days=120)
    await db_session.flush()

    assert await engine.deactivate_stale(days=90) == 1
    await db_session.refresh(unused)
    await db_session.refresh(used)
    assert not unused.is_active
    assert used.is_active


@pytest.mark.asyncio
async def test_rule_to_dict(engine):
    rule = await engine.add_rule("ip", "10.0.0.1", description="office")
    data = rule_to_dict(rule)
    assert data["rule_type"] == "ip"
    assert data["rule_name"] == "Ignore ip: 10.0.0.1"
    assert data["description"] == "office"
    assert data["expires_at"] is None
