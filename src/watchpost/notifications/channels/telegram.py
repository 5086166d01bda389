"""Telegram channel - Bot API ``sendMessage``."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from watchpost.notifications.channels.base import Channel

logger = logging.getLogger(__name__)

TELEGRAM_API = "https://api.telegram.org"

_MARKDOWN_SPECIAL = "_*[]()~`>#+-=|{}.!"


def escape_markdown(text: str) -> str:
    """Escape MarkdownV2 control characters."""
    return "".join(f"\\{char}" if char in _MARKDOWN_SPECIAL else char for char in text)


class TelegramChannel(Channel):
    name = "telegram"

    def is_configured(self) -> bool:
        return bool(self.config.get("bot_token")) and bool(self.config.get("chat_id"))

    async def send(self, message: str, context: dict[str, Any] | None = None) -> bool:
        if not self.is_configured():
            self.last_error = "Telegram bot token or chat id is not configured"
            return False

        api_base = self.config.get("api_base", TELEGRAM_API)
        url = f"{api_base}/bot{self.config['bot_token']}/sendMessage"
        payload = {
            "chat_id": self.config["chat_id"],
            "text": escape_markdown(message)[:4096],
            "parse_mode": "MarkdownV2",
            "disable_web_page_preview": True,
        }

        try:
            async with self._client() as client:
                response = await client.post(url, json=payload)
        except httpx.HTTPError as exc:
            self.last_error = f"Telegram request failed: {exc}"
            logger.warning("Telegram delivery failed: %s", exc)
            return False

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code == 200 and body.get("ok"):
            self.last_error = None
            return True
        description = body.get("description") or response.text[:200]
        self.last_error = f"Telegram returned HTTP {response.status_code}: {description}"
        logger.warning("Telegram delivery returned %s: %s", response.status_code, description)
        return False
