"""Composition root: wires storage, issuers, channels and the rate limiter.

Nothing here is a singleton. Host glue builds one ``Pipeline`` and keeps it
for the life of the process; services that need a database session are
created per call from the session factory.
"""

import logging
from collections.abc import Callable
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from watchpost.config import Settings, settings as default_settings
from watchpost.db.base import utcnow
from watchpost.events.bus import EventBus
from watchpost.issuers.registry import IssuerRegistry, build_issuers
from watchpost.models.enums import IssuerKind
from watchpost.models.finding import RawFinding
from watchpost.notifications.queue import NotificationQueue
from watchpost.notifications.registry import ChannelRegistry, build_channels
from watchpost.services.dispatcher import Dispatcher, ScanReport
from watchpost.services.domains import DomainReputationService
from watchpost.services.issue_service import IssueService
from watchpost.services.rate_limiter import RateLimiter, build_rate_limiter
from watchpost.services.retention import RetentionService
from watchpost.services.suppression import SuppressionEngine

logger = logging.getLogger(__name__)


class Pipeline:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings | None = None,
        issuers: IssuerRegistry | None = None,
        channels: ChannelRegistry | None = None,
        rate_limiter: RateLimiter | None = None,
        event_bus: EventBus | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.settings = settings or default_settings
        self.issuers = issuers if issuers is not None else IssuerRegistry()
        self.channels = channels if channels is not None else ChannelRegistry()
        self.rate_limiter = rate_limiter or RateLimiter(settings=self.settings, clock=clock)
        self.event_bus = event_bus or EventBus()
        self._clock = clock

        self.dispatcher = Dispatcher(
            session_factory,
            self.issuers,
            self.channels,
            self.rate_limiter,
            self.settings,
            clock,
        )
        self.event_bus.subscribe(RawFinding, self.dispatcher.handle)
        for issuer in self.issuers.by_kind(IssuerKind.TRIGGER, IssuerKind.HYBRID):
            issuer.bind(self.event_bus)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        redis=None,
    ) -> "Pipeline":
        return cls(
            session_factory,
            settings,
            issuers=build_issuers(settings),
            channels=build_channels(settings),
            rate_limiter=build_rate_limiter(settings, session_factory, redis),
        )

    # per-session services

    def issue_service(self, session: AsyncSession) -> IssueService:
        return IssueService(session, self.settings, self._clock)

    def suppression(self, session: AsyncSession) -> SuppressionEngine:
        return SuppressionEngine(session, self._clock)

    def domains(self, session: AsyncSession) -> DomainReputationService:
        return DomainReputationService(session, self.settings, self._clock)

    def notifications(self, session: AsyncSession) -> NotificationQueue:
        return NotificationQueue(session, self.channels, self.settings, self._clock)

    # scheduled work

    async def run_scans(self) -> ScanReport:
        return await self.dispatcher.run_scans()

    async def deliver(self, limit: int | None = None) -> dict[str, int]:
        async with self.session_factory() as session:
            return await self.notifications(session).process_pending(limit)

    async def run_retention(self) -> dict[str, int]:
        async with self.session_factory() as session:
            return await RetentionService(session, self.settings, self._clock).run()
