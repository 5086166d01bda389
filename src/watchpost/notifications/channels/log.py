"""Channel that writes alerts to the application log."""

import logging
from typing import Any

from watchpost.notifications.channels.base import Channel


class LogChannel(Channel):
    name = "log"

    def configure(self, config: dict[str, Any]) -> None:
        super().configure(config)
        self._logger = logging.getLogger(self.config.get("logger_name", "watchpost.alerts"))

    async def send(self, message: str, context: dict[str, Any] | None = None) -> bool:
        context = context or {}
        self._logger.warning(
            "[%s] %s",
            str(context.get("severity", "unknown")).upper(),
            message,
            extra={"issue_id": context.get("issue_id"), "issuer": context.get("issuer_name")},
        )
        return True
