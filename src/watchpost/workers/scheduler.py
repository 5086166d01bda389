"""Background scheduler for scans, notification delivery and retention."""

import asyncio
import logging
import time

logger = logging.getLogger(__name__)

# Loop tick in seconds; each job runs when its own interval has elapsed
_POLL_INTERVAL = 5


def _jobs(pipeline) -> list[tuple[str, int, object]]:
    s = pipeline.settings
    return [
        ("scan", s.scan_interval_seconds, pipeline.run_scans),
        ("deliver", s.delivery_interval_seconds, pipeline.deliver),
        ("retention", s.retention_interval_seconds, pipeline.run_retention),
    ]


async def run_scheduler(pipeline, poll_interval: float = _POLL_INTERVAL) -> None:
    """Run each periodic job when it is due until cancelled.

    A failing job is logged and retried on its next interval; it never stops
    the loop or the other jobs.
    """
    jobs = _jobs(pipeline)
    last_run: dict[str, float] = {}
    logger.info(
        "Scheduler started (%s)",
        ", ".join(f"{name}={interval}s" for name, interval, _ in jobs),
    )

    while True:
        try:
            now = time.monotonic()
            for name, interval, job in jobs:
                if name in last_run and now - last_run[name] < interval:
                    continue
                last_run[name] = now
                try:
                    await job()
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    logger.exception("Scheduled job %s failed: %s", name, exc)
            await asyncio.sleep(poll_interval)

        except asyncio.CancelledError:
            logger.info("Scheduler stopped")
            break
