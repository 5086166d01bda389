"""Channel registry - maps channel name -> lazy-import class path."""

AVAILABLE_CHANNELS: dict[str, str] = {
    "log": "watchpost.notifications.channels.log.LogChannel",
    "slack": "watchpost.notifications.channels.slack.SlackChannel",
    "telegram": "watchpost.notifications.channels.telegram.TelegramChannel",
}


def import_channel(dotted_path: str):
    """Import a channel class from its dotted module path."""
    import importlib

    module_path, class_name = dotted_path.rsplit(".", 1)
    module = importlib.import_module(module_path)
    return getattr(module, class_name)
