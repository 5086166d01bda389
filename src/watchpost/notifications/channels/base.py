"""Abstract base class for notification channels."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

import httpx


class Channel(ABC):
    """Delivers one rendered message to an external destination.

    ``send`` returns True on delivery and False otherwise, recording the
    reason in ``last_error``. Network calls are bounded by ``timeout`` so a
    stuck destination cannot stall a delivery pass.
    """

    name: str = "base"

    def __init__(
        self,
        config: dict[str, Any] | None = None,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.enabled = True
        self.config: dict[str, Any] = {}
        self.timeout = timeout
        self.last_error: str | None = None
        self._transport = transport
        self.configure(config or {})

    def configure(self, config: dict[str, Any]) -> None:
        self.config.update(config)
        if "enabled" in config:
            self.enabled = bool(config["enabled"])

    def is_configured(self) -> bool:
        """Whether the required credentials are present."""
        return True

    def is_available(self) -> bool:
        return self.enabled and self.is_configured()

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    @abstractmethod
    async def send(self, message: str, context: dict[str, Any] | None = None) -> bool:
        ...

    async def test_connection(self) -> bool:
        return await self.send("watchpost test message", {"test": True})

    def __repr__(self) -> str:
        return f"<{type(self).__name__} name={self.name!r} enabled={self.enabled}>"
