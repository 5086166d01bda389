"""Shared test fixtures."""

from datetime import datetime, timedelta
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from watchpost.config import Settings
from watchpost.db.base import utcnow
from watchpost.db.engine import create_db_engine, create_session_factory, create_tables
from watchpost.db.models import (
    IgnoreRuleRow,
    IssueRow,
    NotificationRow,
    PendingDomainRow,
    RejectedDomainRow,
    WhitelistDomainRow,
)
from watchpost.issuers.registry import IssuerRegistry
from watchpost.notifications.channels.base import Channel
from watchpost.notifications.registry import ChannelRegistry
from watchpost.pipeline import Pipeline
from watchpost.services.rate_limiter import MemoryRateLimitStore, RateLimiter

API_KEY = "test-admin-key"


class FakeClock:
    """Settable clock passed wherever services accept ``clock``."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeChannel(Channel):
    """In-process channel; ``fail`` makes every send report a failure."""

    def __init__(self, name: str, fail: bool = False, raises: bool = False):
        self.name = name
        self.fail = fail
        self.raises = raises
        self.sent: list[tuple[str, dict[str, Any]]] = []
        self.attempts = 0
        super().__init__()

    async def send(self, message: str, context: dict[str, Any] | None = None) -> bool:
        self.attempts += 1
        if self.raises:
            raise ConnectionError(f"{self.name} unreachable")
        if self.fail:
            self.last_error = f"{self.name} rejected the message"
            return False
        self.sent.append((message, context or {}))
        return True


class DbReader:
    """Reads committed state through fresh sessions."""

    def __init__(self, session_factory):
        self._session_factory = session_factory

    async def _all(self, stmt):
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def _one(self, stmt):
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def issues(self) -> list[IssueRow]:
        return await self._all(select(IssueRow).order_by(IssueRow.id))

    async def issue(self, issue_id: int) -> IssueRow | None:
        return await self._one(select(IssueRow).where(IssueRow.id == issue_id))

    async def rule(self, rule_id: int) -> IgnoreRuleRow | None:
        return await self._one(select(IgnoreRuleRow).where(IgnoreRuleRow.id == rule_id))

    async def notifications(self, issue_id: int | None = None) -> list[NotificationRow]:
        stmt = select(NotificationRow).order_by(NotificationRow.id)
        if issue_id is not None:
            stmt = stmt.where(NotificationRow.issue_id == issue_id)
        return await self._all(stmt)

    async def pending(self, domain: str) -> PendingDomainRow | None:
        return await self._one(select(PendingDomainRow).where(PendingDomainRow.domain == domain))

    async def rejected(self, domain: str) -> RejectedDomainRow | None:
        return await self._one(select(RejectedDomainRow).where(RejectedDomainRow.domain == domain))

    async def whitelisted(self, domain: str) -> WhitelistDomainRow | None:
        return await self._one(select(WhitelistDomainRow).where(WhitelistDomainRow.domain == domain))


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        site_url="https://mysite.test",
        enabled_channels=[],
        issuers={},
        admin_api_key=API_KEY,
        local_mode=False,
        scheduler_enabled=False,
        json_logs=False,
    )


@pytest.fixture
def clock():
    # top of the current hour, so short advances stay in one rate limit bucket
    return FakeClock(utcnow().replace(minute=0, second=0, microsecond=0))


@pytest.fixture
async def db_engine():
    """Create an in-memory SQLite async engine for testing."""
    engine = create_db_engine("sqlite+aiosqlite:///")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest.fixture
async def db_session(session_factory):
    """Create a test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def reader(session_factory):
    return DbReader(session_factory)


@pytest.fixture
def channels():
    return ChannelRegistry([FakeChannel("primary"), FakeChannel("telegram")])


@pytest.fixture
def issuers():
    return IssuerRegistry()


@pytest.fixture
def pipeline(session_factory, settings, issuers, channels, clock):
    return Pipeline(
        session_factory,
        settings,
        issuers=issuers,
        channels=channels,
        rate_limiter=RateLimiter(MemoryRateLimitStore(), settings, clock),
        clock=clock,
    )


@pytest.fixture
def app(db_engine, session_factory, settings, pipeline):
    """Create a test application instance with in-memory DB."""
    from watchpost.main import create_app

    _app = create_app(settings)
    _app.state.db_engine = db_engine
    _app.state.db_session_factory = session_factory
    _app.state.redis = None
    _app.state.pipeline = pipeline
    return _app


@pytest.fixture
async def client(app):
    """Async HTTP test client authenticated with the admin key."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test", headers={"X-API-Key": API_KEY}) as ac:
        yield ac


@pytest.fixture
async def anon_client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
async def shared_engine(tmp_path):
    """File-backed SQLite, so concurrent sessions each get their own connection."""
    engine = create_db_engine(f"sqlite+aiosqlite:///{tmp_path / 'watchpost.db'}")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def shared_pipeline(shared_engine, settings, channels, clock):
    return Pipeline(
        create_session_factory(shared_engine),
        settings,
        issuers=IssuerRegistry(),
        channels=channels,
        rate_limiter=RateLimiter(MemoryRateLimitStore(), settings, clock),
        clock=clock,
    )


@pytest.fixture
def shared_reader(shared_pipeline):
    return DbReader(shared_pipeline.session_factory)
