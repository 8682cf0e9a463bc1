"""Event status watcher process.

RUN:  python -m campus_hub.watcher

Boots one client context against CAMPUS_API_URL (restoring the persisted
session, if any) and re-evaluates every known event's lifecycle status
every STATUS_REFRESH_SECONDS.  Each transition is logged:

    Event 12 is now started: Event Started

Nothing is pushed when an event starts or ends; the status is a pure
function of the wall clock.  This loop is what turns that function into
something a dashboard or an alerting pipeline can follow.

The context stays subscribed to data-sync, so events created or deleted
from other contexts show up on the next tick.
"""

from __future__ import annotations

import asyncio
import logging

from campus_hub.context import ClientContext
from campus_hub.core.config import SETTINGS
from campus_hub.core.logging import setup_logging
from campus_hub.db.redis import lifespan_redis
from campus_hub.services.event_lifecycle import EventStatus, StatusPoller

logger = logging.getLogger("watcher")


def log_transition(event_id: int, old: EventStatus | None, new: EventStatus) -> None:
    if old is None:
        logger.info(
            "Event %s is %s: %s", event_id, new.status, new.status_text,
            extra={"event_id": event_id},
        )
        return
    logger.info(
        "Event %s is now %s: %s", event_id, new.status, new.status_text,
        extra={"event_id": event_id},
    )


async def run_watcher() -> None:
    async with lifespan_redis():
        context = await ClientContext.open()
        poller = StatusPoller(
            lambda: context.store.events,
            log_transition,
            interval_seconds=SETTINGS.status_refresh_seconds,
        )
        logger.info(
            "Watcher started: %d events, refreshing every %ss",
            len(context.store.events),
            SETTINGS.status_refresh_seconds,
        )
        poller.start()
        try:
            # Runs until cancelled (Ctrl+C / SIGTERM)
            await asyncio.Event().wait()
        finally:
            await poller.stop()
            await context.aclose()
            logger.info("Watcher stopped")


if __name__ == "__main__":
    setup_logging(SETTINGS.log_level, json_format=SETTINGS.json_logs)
    try:
        asyncio.run(run_watcher())
    except KeyboardInterrupt:
        pass
