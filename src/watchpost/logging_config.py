"""structlog setup for the pipeline, the scheduler and the admin API.

Everything logs through stdlib ``logging.getLogger(__name__)``; structlog only
formats. Context bound with the helpers below (the finding being dispatched,
the admin request being served) is merged into every record emitted inside
that async context.
"""

import logging
import sys

import structlog

# Loggers that are chatty at INFO and say nothing useful about findings
_QUIET_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine", "uvicorn.access")


def _add_site(site_url: str | None):
    def processor(_logger, _method, event_dict):
        if site_url:
            event_dict.setdefault("site", site_url)
        return event_dict

    return processor


def configure_logging(settings) -> None:
    """Route the root logger through structlog.

    JSON lines when ``settings.json_logs`` is on and we are not in local mode,
    a colored console otherwise.
    """
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    json_output = settings.json_logs and not settings.local_mode

    pre_chain = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        _add_site(settings.site_url),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]
    renderer = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=pre_chain + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
            foreign_pre_chain=pre_chain,
        )
    )

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def bind_finding_context(issuer_name: str, issue_type: str | None = None) -> None:
    """Tag log records with the finding currently being dispatched."""
    structlog.contextvars.bind_contextvars(issuer=issuer_name)
    if issue_type:
        structlog.contextvars.bind_contextvars(issue_type=issue_type)


def unbind_finding_context() -> None:
    structlog.contextvars.unbind_contextvars("issuer", "issue_type")


def bind_request_context(trace_id: str, user_id: str | None = None) -> None:
    """Tag log records with the admin request's trace id."""
    structlog.contextvars.bind_contextvars(trace_id=trace_id)
    if user_id:
        structlog.contextvars.bind_contextvars(user_id=user_id)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()
