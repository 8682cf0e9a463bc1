"""Event lifecycle: upcoming → started → ended, and what that permits.

THE RULE
---------
An event occupies the half-open interval [start, end) on the local wall
clock, where start and end are the event's date naively combined with
its start/end times (no timezone conversion):

    now <  start          upcoming   join/leave allowed
    start <= now < end    started    join/leave allowed
    now >= end            ended      join/leave refused

Details are viewable in every state, and can_join always equals
can_leave.  A zero-length event (start == end) goes straight from
upcoming to ended.

This module is the client-side gate for join/leave; the server must
still refuse late requests on its own.

WHY A POLLER
-------------
The result is a pure function of the wall clock, so nothing "happens"
when an event starts: no API push, no store mutation.  Anything that
displays a status has to re-evaluate on a timer.  StatusPoller does that
as a cancellable asyncio task, diffing against the last evaluation so
subscribers only hear about actual transitions.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Literal

from campus_hub.core.metrics import STATUS_TRANSITIONS
from campus_hub.models.event import Event

logger = logging.getLogger(__name__)

LifecycleStatus = Literal["upcoming", "started", "ended"]
EventAction = Literal["join", "leave", "view"]

_HOUR = timedelta(hours=1)
_MINUTE = timedelta(minutes=1)


@dataclass(frozen=True, slots=True)
class EventStatus:
    status: LifecycleStatus
    can_join: bool
    can_leave: bool
    can_view_details: bool
    status_text: str
    status_color: str  # presentation hint only


def combine(day: str, time_of_day: str) -> datetime:
    """Naive local datetime from ``YYYY-MM-DD`` and ``HH:MM[:SS]``."""
    return datetime.combine(date.fromisoformat(day), time.fromisoformat(time_of_day))


def format_time_remaining(start: datetime, now: datetime) -> str:
    remaining = start - now
    if remaining <= timedelta(0):
        return ""
    hours = remaining // _HOUR
    minutes = (remaining % _HOUR) // _MINUTE
    return f"{hours}h {minutes}m"


def _ended() -> EventStatus:
    return EventStatus(
        status="ended",
        can_join=False,
        can_leave=False,
        can_view_details=True,
        status_text="Event Ended",
        status_color="red",
    )


def get_event_status(event: Event, now: datetime | None = None) -> EventStatus:
    now = now or datetime.now()

    try:
        start = combine(event.date, event.start_time)
        end = combine(event.date, event.end_time)
    except ValueError:
        # An unparseable schedule compares false against any clock, i.e. ended
        logger.warning(
            "Event %s has an unparseable schedule date=%r start=%r end=%r",
            event.id,
            event.date,
            event.start_time,
            event.end_time,
            extra={"event_id": event.id},
        )
        return _ended()

    if now < start:
        return EventStatus(
            status="upcoming",
            can_join=True,
            can_leave=True,
            can_view_details=True,
            status_text=f"Upcoming {format_time_remaining(start, now)}",
            status_color="blue",
        )
    if now < end:
        return EventStatus(
            status="started",
            can_join=True,
            can_leave=True,
            can_view_details=True,
            status_text="Event Started",
            status_color="orange",
        )
    return _ended()


def is_action_permitted(
    event: Event, action: EventAction, now: datetime | None = None
) -> bool:
    status = get_event_status(event, now)
    if action == "join":
        return status.can_join
    if action == "leave":
        return status.can_leave
    return status.can_view_details


# ---------------------------------------------------------------------------
# Periodic re-evaluation
# ---------------------------------------------------------------------------

StatusChangeHandler = Callable[
    [int, EventStatus | None, EventStatus], Awaitable[None] | None
]


class StatusPoller:
    """Re-evaluates event statuses on a fixed interval.

    ``events_provider`` is called on every tick so the poller follows the
    store's current event list.  ``on_change(event_id, old, new)`` fires
    for every event whose status enum changed, and once per event on the
    first evaluation (``old`` is None).  The countdown text ticking down
    is not a change.  A handler that raises is logged and the status
    still counts as delivered.
    """

    def __init__(
        self,
        events_provider: Callable[[], Iterable[Event]],
        on_change: StatusChangeHandler,
        *,
        interval_seconds: float = 60.0,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._events_provider = events_provider
        self._on_change = on_change
        self._interval = interval_seconds
        self._clock = clock
        self._last: dict[int, EventStatus] = {}
        self._task: asyncio.Task[None] | None = None

    @property
    def snapshot(self) -> dict[int, EventStatus]:
        return dict(self._last)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def refresh(self) -> None:
        now = self._clock()
        seen: set[int] = set()
        for event in self._events_provider():
            new = get_event_status(event, now)
            seen.add(event.id)
            old = self._last.get(event.id)
            self._last[event.id] = new
            if old is not None and old.status == new.status:
                continue
            if old is not None:
                STATUS_TRANSITIONS.labels(status=new.status).inc()
                logger.info(
                    "Event %s went %s -> %s",
                    event.id,
                    old.status,
                    new.status,
                    extra={"event_id": event.id},
                )
            try:
                result = self._on_change(event.id, old, new)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception(
                    "Status change handler failed for event %s",
                    event.id,
                    extra={"event_id": event.id},
                )
        # Deleted events drop out of the snapshot
        for event_id in self._last.keys() - seen:
            del self._last[event_id]

    async def _run(self) -> None:
        while True:
            try:
                await self.refresh()
            except Exception:
                logger.exception("Status refresh failed")
            await asyncio.sleep(self._interval)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="event-status-poller")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
