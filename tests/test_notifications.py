"""Tests for the notification queue, message rendering and channels."""

import asyncio
import json
from datetime import timedelta

import httpx
import pytest

from watchpost.db.base import utcnow
from watchpost.db.models import NotificationRow
from watchpost.models.enums import NotificationStatus
from watchpost.models.finding import RawFinding
from watchpost.notifications.channels.log import LogChannel
from watchpost.notifications.channels.slack import SlackChannel
from watchpost.notifications.channels.telegram import TelegramChannel, escape_markdown
from watchpost.notifications.formatter import build_message
from watchpost.notifications.queue import NotificationQueue, notification_to_dict
from watchpost.notifications.registry import ChannelRegistry, build_channels
from watchpost.repositories.notification_repo import NotificationRepository
from watchpost.services.issue_service import IssueService

from conftest import FakeChannel


async def _issue(session, settings, clock, **overrides):
    data = {"issuer_name": "upload", "title": "Backdoor uploaded", "file_path": "/uploads/x.php"}
    data.update(overrides)
    result = await IssueService(session, settings, clock).record_issue(RawFinding(**data))
    await session.commit()
    return result.issue


@pytest.fixture
def queue(db_session, channels, settings, clock):
    return NotificationQueue(db_session, channels, settings, clock)


def test_backoff_doubles_and_caps(settings):
    queue = NotificationQueue(None, ChannelRegistry(), settings)
    assert queue.backoff(0) == timedelta(0)
    assert queue.backoff(1) == timedelta(seconds=60)
    assert queue.backoff(2) == timedelta(seconds=120)
    assert queue.backoff(3) == timedelta(seconds=240)
    assert queue.backoff(20) == timedelta(seconds=3600)

    now = utcnow()
    cutoffs = queue.retry_cutoffs(now)
    assert cutoffs[0] == (1, now - timedelta(seconds=60))
    # the last entry is the first count whose delay reaches the cap
    assert cutoffs[-1] == (7, now - timedelta(seconds=3600))


def test_message_carries_issue_fields(settings):
    from watchpost.db.models import IssueRow

    issue = IssueRow(
        id=5,
        issue_hash="h" * 32,
        issuer_name="upload",
        issue_type="malicious_upload",
        severity="critical",
        title="Backdoor uploaded",
        description="eval() found in upload",
        file_path="/uploads/x.php",
        ip_address="192.0.2.4",
        detection_count=1,
    )
    message, context = build_message(issue, settings.site_url)
    assert message.startswith("🔴 Backdoor uploaded")
    assert "Severity: CRITICAL" in message
    assert "File: /uploads/x.php" in message
    assert "Site: https://mysite.test" in message
    assert message.endswith("Issue #5")
    assert context["issue_id"] == 5
    assert context["severity"] == "critical"


@pytest.mark.asyncio
async def test_enqueue_one_row_per_enabled_channel(queue, db_session, settings, clock, channels):
    issue = await _issue(db_session, settings, clock)
    channels.get("telegram").enabled = False

    rows = await queue.enqueue_for_issue(issue)
    assert [row.channel_name for row in rows] == ["primary"]
    assert rows[0].status == NotificationStatus.PENDING
    assert rows[0].max_retries == 3
    assert rows[0].context["issue_id"] == issue.id

    # an undelivered row already exists for this channel
    assert await queue.enqueue_for_issue(issue) == []


@pytest.mark.asyncio
async def test_successful_delivery_marks_rows_sent(queue, db_session, settings, clock, channels):
    issue = await _issue(db_session, settings, clock)
    await queue.enqueue_for_issue(issue)
    await db_session.commit()

    stats = await queue.process_pending()
    assert stats == {"processed": 2, "sent": 2, "retry": 0, "failed": 0, "skipped": 0}
    assert len(channels.get("primary").sent) == 1
    message, context = channels.get("telegram").sent[0]
    assert "Backdoor uploaded" in message
    assert context["issue_id"] == issue.id

    rows = await queue.list_for_issue(issue.id)
    assert {row.status for row in rows} == {NotificationStatus.SENT}
    assert all(row.sent_at is not None for row in rows)


@pytest.mark.asyncio
async def test_retry_with_backoff_until_failed(db_session, settings, clock, reader):
    channel = FakeChannel("primary", fail=True)
    queue = NotificationQueue(db_session, ChannelRegistry([channel]), settings, clock)
    issue = await _issue(db_session, settings, clock)
    await queue.enqueue_for_issue(issue)
    await db_session.commit()

    assert (await queue.process_pending())["retry"] == 1
    # not due again until the backoff has passed
    assert (await queue.process_pending())["processed"] == 0

    clock.advance(seconds=61)
    assert (await queue.process_pending())["retry"] == 1
    clock.advance(seconds=61)
    assert (await queue.process_pending())["processed"] == 0
    clock.advance(seconds=60)
    assert (await queue.process_pending())["failed"] == 1

    clock.advance(hours=2)
    assert (await queue.process_pending())["processed"] == 0
    assert channel.attempts == 3

    [row] = await reader.notifications(issue.id)
    assert row.status == NotificationStatus.FAILED
    assert row.retry_count == row.max_retries == 3
    assert row.error_message == "primary rejected the message"


@pytest.mark.asyncio
async def test_one_failing_channel_does_not_affect_another(db_session, settings, clock, reader):
    good = FakeChannel("primary")
    bad = FakeChannel("telegram", raises=True)
    queue = NotificationQueue(db_session, ChannelRegistry([good, bad]), settings, clock)
    issue = await _issue(db_session, settings, clock)
    await queue.enqueue_for_issue(issue)
    await db_session.commit()

    stats = await queue.process_pending()
    assert stats["sent"] == 1
    assert stats["retry"] == 1

    rows = {row.channel_name: row for row in await reader.notifications(issue.id)}
    assert rows["primary"].status == NotificationStatus.SENT
    assert rows["telegram"].status == NotificationStatus.RETRY
    assert rows["telegram"].error_message == "ConnectionError: telegram unreachable"


@pytest.mark.asyncio
async def test_sent_rows_are_never_modified(queue, db_session, settings, clock):
    issue = await _issue(db_session, settings, clock)
    [row, _] = await queue.enqueue_for_issue(issue)
    await db_session.commit()
    await queue.process_pending()

    assert not await queue._repo.mark_attempt_failed(
        row.id, 1, NotificationStatus.RETRY, clock(), "late failure"
    )
    assert not await queue._repo.mark_sent(row.id, clock())


@pytest.mark.asyncio
async def test_unregistered_channel_counts_as_failed_attempt(queue, db_session, settings, clock, channels, reader):
    issue = await _issue(db_session, settings, clock)
    await queue.enqueue_for_issue(issue)
    await db_session.commit()
    channels.unregister("telegram")

    stats = await queue.process_pending()
    assert stats["sent"] == 1
    assert stats["retry"] == 1
    rows = {row.channel_name: row for row in await reader.notifications(issue.id)}
    assert rows["telegram"].error_message == "Channel 'telegram' is not registered"


@pytest.mark.asyncio
async def test_notification_stats_and_purge(queue, db_session, settings, clock):
    issue = await _issue(db_session, settings, clock)
    await queue.enqueue_for_issue(issue)
    await db_session.commit()
    await queue.process_pending()

    stats = await queue.get_stats()
    assert stats["sent"] == 2
    assert stats["total"] == 2
    data = notification_to_dict((await queue.list_notifications(status="sent"))[0])
    assert data["status"] == "sent"

    assert await queue.purge_sent(30) == 0
    clock.advance(days=31)
    assert await queue.purge_sent(30) == 2


@pytest.mark.asyncio
async def test_backed_off_retries_do_not_hold_back_pending_rows(db_session, settings, clock):
    channel = FakeChannel("primary")
    queue = NotificationQueue(db_session, ChannelRegistry([channel]), settings, clock)
    issue = await _issue(db_session, settings, clock)
    # older rows past the first backoff step but still waiting out their own
    for _ in range(5):
        db_session.add(
            NotificationRow(
                channel_name="primary",
                issue_id=issue.id,
                message="older alert",
                status=NotificationStatus.RETRY,
                retry_count=3,
                max_retries=10,
                last_attempt=clock() - timedelta(seconds=100),
                created_at=clock() - timedelta(hours=1),
            )
        )
    db_session.add(
        NotificationRow(
            channel_name="primary",
            issue_id=issue.id,
            message="fresh alert",
            status=NotificationStatus.PENDING,
            retry_count=0,
            max_retries=3,
            created_at=clock(),
        )
    )
    await db_session.commit()

    stats = await queue.process_pending(limit=1)

    assert stats["sent"] == 1
    assert [message for message, _ in channel.sent] == ["fresh alert"]


@pytest.mark.asyncio
async def test_stale_row_cannot_be_claimed_twice(shared_pipeline, clock):
    result = await shared_pipeline.dispatcher.submit(RawFinding(issuer_name="upload", title="Backdoor uploaded"))
    factory = shared_pipeline.session_factory

    async with factory() as first, factory() as second:
        first_repo, second_repo = NotificationRepository(first), NotificationRepository(second)
        mine = (await first_repo.list_due([], limit=10))[0]
        theirs = (await second_repo.list_due([], limit=10))[0]
        assert mine.id == theirs.id
        assert mine.issue_id == result.issue_id

        assert await first_repo.claim(mine, clock())
        await first.commit()
        assert not await second_repo.claim(theirs, clock())
        await second.commit()


@pytest.mark.asyncio
async def test_overlapping_delivery_passes_send_each_row_once(shared_pipeline, shared_reader, channels):
    result = await shared_pipeline.dispatcher.submit(RawFinding(issuer_name="upload", title="Backdoor uploaded"))

    passes = await asyncio.gather(shared_pipeline.deliver(), shared_pipeline.deliver())

    assert sum(p["sent"] for p in passes) == 2
    assert len(channels.get("primary").sent) == 1
    assert len(channels.get("telegram").sent) == 1
    rows = await shared_reader.notifications(result.issue_id)
    assert {row.status for row in rows} == {NotificationStatus.SENT}


@pytest.mark.asyncio
async def test_overlapping_passes_count_each_failed_attempt_once(shared_pipeline, shared_reader, channels):
    both = [channels.get("primary"), channels.get("telegram")]
    for channel in both:
        channel.fail = True
    result = await shared_pipeline.dispatcher.submit(RawFinding(issuer_name="upload", title="Backdoor uploaded"))

    passes = await asyncio.gather(shared_pipeline.deliver(), shared_pipeline.deliver())

    assert sum(p["retry"] for p in passes) == 2
    assert [channel.attempts for channel in both] == [1, 1]
    rows = await shared_reader.notifications(result.issue_id)
    assert {row.retry_count for row in rows} == {1}
    assert {row.status for row in rows} == {NotificationStatus.RETRY}


def test_slack_blocks():
    blocks = SlackChannel.build_blocks(
        "body text",
        {"title": "Backdoor uploaded", "severity": "critical", "issuer_name": "upload", "issue_id": 9},
    )
    assert blocks[0]["type"] == "header"
    assert blocks[0]["text"]["text"].endswith("Backdoor uploaded")
    assert blocks[1]["text"]["text"] == "body text"
    fields = [f["text"] for f in blocks[2]["fields"]]
    assert fields == ["*Severity:* critical", "*Issuer:* upload"]
    assert blocks[3]["elements"][0]["text"] == "Issue #9"


@pytest.mark.asyncio
async def test_slack_send_posts_to_webhook():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, text="ok")

    channel = SlackChannel(
        {"webhook_url": "https://hooks.slack.test/T/B/X", "channel": "#alerts"},
        transport=httpx.MockTransport(handler),
    )
    assert await channel.send("hello", {"severity": "high", "title": "T"})
    payload = json.loads(requests[0].content)
    assert payload["channel"] == "#alerts"
    assert payload["text"] == "hello"
    assert str(requests[0].url) == "https://hooks.slack.test/T/B/X"


@pytest.mark.asyncio
async def test_slack_send_reports_http_errors():
    channel = SlackChannel(
        {"webhook_url": "https://hooks.slack.test/T/B/X"},
        transport=httpx.MockTransport(lambda request: httpx.Response(404, text="no_service")),
    )
    assert not await channel.send("hello")
    assert channel.last_error == "Slack returned HTTP 404: no_service"

    unconfigured = SlackChannel()
    assert not unconfigured.is_available()
    assert not await unconfigured.send("hello")


def test_telegram_escapes_markdown():
    assert escape_markdown("a_b*c.d!") == "a\\_b\\*c\\.d\\!"


@pytest.mark.asyncio
async def test_telegram_send():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"ok": True})

    channel = TelegramChannel(
        {"bot_token": "123:abc", "chat_id": "42"},
        transport=httpx.MockTransport(handler),
    )
    assert await channel.send("Issue #1.")
    assert requests[0].url.path == "/bot123:abc/sendMessage"
    payload = json.loads(requests[0].content)
    assert payload["chat_id"] == "42"
    assert payload["text"] == "Issue \\#1\\."
    assert payload["parse_mode"] == "MarkdownV2"


@pytest.mark.asyncio
async def test_telegram_send_reports_api_errors():
    channel = TelegramChannel(
        {"bot_token": "123:abc", "chat_id": "42"},
        transport=httpx.MockTransport(
            lambda request: httpx.Response(400, json={"ok": False, "description": "chat not found"})
        ),
    )
    assert not await channel.send("x")
    assert channel.last_error == "Telegram returned HTTP 400: chat not found"


@pytest.mark.asyncio
async def test_log_channel_writes_warning(caplog):
    channel = LogChannel({"logger_name": "watchpost.test_alerts"})
    with caplog.at_level("WARNING", logger="watchpost.test_alerts"):
        assert await channel.send("alert body", {"severity": "high"})
    assert "[HIGH] alert body" in caplog.text


def test_build_channels_skips_unknown(settings):
    settings.enabled_channels = ["log", "pager", "slack"]
    registry = build_channels(settings)
    assert registry.names() == ["log", "slack"]
    assert not registry.get("slack").is_available()
