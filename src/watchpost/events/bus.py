"""Typed in-process event bus for findings.

Handlers subscribe to a finding class and receive every published finding
that is an instance of it, so subscribing to ``RawFinding`` sees all kinds.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from watchpost.models.finding import RawFinding

logger = logging.getLogger(__name__)

FindingHandler = Callable[[RawFinding], Awaitable[Any]]


@dataclass
class Subscription:
    finding_type: type[RawFinding]
    handler: FindingHandler


class EventBus:
    def __init__(self) -> None:
        self._subscriptions: list[Subscription] = []

    def subscribe(self, finding_type: type[RawFinding], handler: FindingHandler) -> None:
        self._subscriptions.append(Subscription(finding_type, handler))

    def unsubscribe(self, handler: FindingHandler) -> None:
        self._subscriptions = [s for s in self._subscriptions if s.handler is not handler]

    def get_subscribers(self, finding: RawFinding) -> list[FindingHandler]:
        """Handlers for the finding, in subscription order."""
        return [s.handler for s in self._subscriptions if isinstance(finding, s.finding_type)]

    async def publish(self, finding: RawFinding) -> list[Any]:
        """Deliver a finding to its subscribers. Never raises.

        Returns the results of the handlers that completed.
        """
        results = []
        for handler in self.get_subscribers(finding):
            try:
                results.append(await handler(finding))
            except Exception:
                logger.exception(
                    "Finding handler %s failed for %s finding from %s",
                    getattr(handler, "__qualname__", handler),
                    finding.kind,
                    finding.issuer_name,
                )
        if not results:
            logger.debug("No subscriber handled %s finding from %s", finding.kind, finding.issuer_name)
        return results
