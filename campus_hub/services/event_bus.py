"""Same-context signal bus.

Independent parts of one client context (the header showing the current
user, a dashboard, the membership store) react to auth and profile
changes without holding references to each other:

  profileUpdated   {"user": <camelCase user record>}
      The current user's record changed (follow, join, reload merge).

  loginSuccess     {"user": ..., "token": ...}
      A session started or was restored.  The store treats this as
      "reload authenticated data".

  logout           {}
      The session ended or the API answered 401.

This bus never crosses contexts; the data-sync broadcast channel does
that.  Handlers may be plain functions or coroutines.  A failing
handler is logged and does not stop delivery to the others.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

SignalHandler = Callable[[dict[str, Any]], Awaitable[None] | None]


class Signal(str, Enum):
    PROFILE_UPDATED = "profileUpdated"
    LOGIN_SUCCESS = "loginSuccess"
    LOGOUT = "logout"


class EventBus:
    def __init__(self) -> None:
        self._handlers: dict[Signal, list[SignalHandler]] = defaultdict(list)

    def subscribe(self, signal: Signal | str, handler: SignalHandler) -> None:
        self._handlers[Signal(signal)].append(handler)

    def unsubscribe(self, signal: Signal | str, handler: SignalHandler) -> None:
        handlers = self._handlers[Signal(signal)]
        if handler in handlers:
            handlers.remove(handler)

    async def emit(self, signal: Signal | str, payload: dict[str, Any] | None = None) -> None:
        signal = Signal(signal)
        payload = payload or {}
        logger.debug("Emitting %s", signal.value)

        # Copy so a handler may unsubscribe itself mid-delivery
        for handler in list(self._handlers[signal]):
            try:
                result = handler(payload)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("Handler for %s failed", signal.value)
