"""Slack channel - posts Block Kit messages to an incoming webhook."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from watchpost.notifications.channels.base import Channel

logger = logging.getLogger(__name__)

_SEVERITY_EMOJI: dict[str, str] = {
    "critical": "\U0001f534",  # 🔴
    "high": "\U0001f7e0",      # 🟠
    "medium": "\U0001f7e1",    # 🟡
    "low": "\U0001f7e2",       # 🟢
}


class SlackChannel(Channel):
    """Pushes alerts to Slack via an incoming webhook.

    Slack webhooks are pre-authenticated; the URL is the only credential.
    """

    name = "slack"

    def is_configured(self) -> bool:
        return bool(self.config.get("webhook_url"))

    @staticmethod
    def build_blocks(message: str, context: dict[str, Any]) -> list[dict]:
        severity = str(context.get("severity", "medium"))
        emoji = _SEVERITY_EMOJI.get(severity, "\u2753")  # ❓ fallback
        title = context.get("title") or "Security alert"

        blocks: list[dict] = [
            {
                "type": "header",
                "text": {"type": "plain_text", "text": f"{emoji} {title}"[:150]},
            },
            {
                "type": "section",
                "text": {"type": "mrkdwn", "text": message[:3000]},
            },
        ]

        fields = []
        for label, key in (
            ("Severity", "severity"),
            ("Issuer", "issuer_name"),
            ("Type", "issue_type"),
            ("Detections", "detection_count"),
        ):
            if context.get(key) is not None:
                fields.append({"type": "mrkdwn", "text": f"*{label}:* {context[key]}"})
        if fields:
            blocks.append({"type": "section", "fields": fields})

        if context.get("issue_id") is not None:
            blocks.append(
                {
                    "type": "context",
                    "elements": [{"type": "mrkdwn", "text": f"Issue #{context['issue_id']}"}],
                }
            )
        return blocks

    async def send(self, message: str, context: dict[str, Any] | None = None) -> bool:
        if not self.is_configured():
            self.last_error = "Slack webhook URL is not configured"
            return False

        payload: dict[str, Any] = {"text": message[:3000], "blocks": self.build_blocks(message, context or {})}
        if self.config.get("channel"):
            payload["channel"] = self.config["channel"]

        try:
            async with self._client() as client:
                response = await client.post(self.config["webhook_url"], json=payload)
        except httpx.HTTPError as exc:
            self.last_error = f"Slack request failed: {exc}"
            logger.warning("Slack delivery failed: %s", exc)
            return False

        if response.status_code == 200:
            self.last_error = None
            return True
        self.last_error = f"Slack returned HTTP {response.status_code}: {response.text[:200]}"
        logger.warning("Slack delivery returned %s", response.status_code)
        return False
