"""Configured notification channels."""

import logging

from watchpost.config import Settings
from watchpost.notifications.channels import AVAILABLE_CHANNELS, import_channel
from watchpost.notifications.channels.base import Channel

logger = logging.getLogger(__name__)


class ChannelRegistry:
    def __init__(self, channels: list[Channel] | None = None) -> None:
        self._channels: dict[str, Channel] = {}
        for channel in channels or []:
            self.register(channel)

    def register(self, channel: Channel) -> None:
        self._channels[channel.name] = channel

    def unregister(self, name: str) -> None:
        self._channels.pop(name, None)

    def get(self, name: str) -> Channel | None:
        return self._channels.get(name)

    def enabled(self) -> list[Channel]:
        """Channels that should receive new notifications."""
        return [c for c in self._channels.values() if c.enabled]

    def names(self) -> list[str]:
        return list(self._channels)

    def __len__(self) -> int:
        return len(self._channels)


def _channel_config(name: str, settings: Settings) -> dict:
    if name == "slack":
        return {"webhook_url": settings.slack_webhook_url, "channel": settings.slack_channel}
    if name == "telegram":
        return {"bot_token": settings.telegram_bot_token, "chat_id": settings.telegram_chat_id}
    if name == "log":
        return {"logger_name": settings.log_channel_logger}
    return {}


def build_channels(settings: Settings) -> ChannelRegistry:
    """Instantiate every channel named in ``settings.enabled_channels``."""
    registry = ChannelRegistry()
    for name in settings.enabled_channels:
        dotted_path = AVAILABLE_CHANNELS.get(name)
        if dotted_path is None:
            logger.warning("Unknown notification channel %r in configuration, skipping", name)
            continue
        channel_cls = import_channel(dotted_path)
        channel = channel_cls(_channel_config(name, settings), timeout=settings.channel_timeout_seconds)
        if not channel.is_configured():
            logger.warning("Channel %s is enabled but missing credentials", name)
        registry.register(channel)
    return registry
