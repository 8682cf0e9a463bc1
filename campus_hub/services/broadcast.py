"""Cross-context ``data-sync`` broadcast channel.

COARSE INVALIDATION, NOT REPLICATION
--------------------------------------
When a context mutates data (follow, join, create event, ...) it posts

    {"type": "data-update", "action": "join-event", "eventId": 5}

to every other context on the ``data-sync`` channel.  Receivers ignore
the action-specific payload and simply reload their authenticated data
from the API.  No fine-grained merge, no version vectors: the API is the
source of truth and a full refetch is always correct.

DELIVERY RULES
---------------
  - A channel never receives its own messages.
  - Messages are copied on send; a receiver mutating its copy cannot
    affect the sender or other receivers.
  - Posting on a closed channel is an error.
  - ``messages()`` ends when the channel is closed.
  - No ordering guarantee across senders; no persistence for late joiners.

Two backends, selected the same way as session storage: an in-process
hub for tests and single-process use, Redis PUBLISH/SUBSCRIBE otherwise.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import uuid
from collections import defaultdict
from collections.abc import AsyncIterator
from typing import Any, Protocol, runtime_checkable

from campus_hub.core.metrics import BROADCAST_MESSAGES
from campus_hub.db.redis import redis_pool

logger = logging.getLogger(__name__)

DATA_SYNC_CHANNEL = "data-sync"
DATA_UPDATE = "data-update"


class ChannelClosedError(RuntimeError):
    pass


@runtime_checkable
class BroadcastChannel(Protocol):
    name: str

    async def post_message(self, message: dict[str, Any]) -> None: ...
    def messages(self) -> AsyncIterator[dict[str, Any]]: ...
    async def close(self) -> None: ...


class InMemoryBroadcastHub:
    """Routes messages between channels opened in this process."""

    def __init__(self) -> None:
        self._members: dict[str, list[InMemoryBroadcastChannel]] = defaultdict(list)

    def open(self, name: str = DATA_SYNC_CHANNEL) -> InMemoryBroadcastChannel:
        channel = InMemoryBroadcastChannel(self, name)
        self._members[name].append(channel)
        return channel

    def clear(self) -> None:
        self._members.clear()

    def _deliver(self, sender: InMemoryBroadcastChannel, message: dict[str, Any]) -> None:
        for member in self._members[sender.name]:
            if member is not sender:
                member._queue.put_nowait(copy.deepcopy(message))

    def _detach(self, channel: InMemoryBroadcastChannel) -> None:
        members = self._members[channel.name]
        if channel in members:
            members.remove(channel)


class InMemoryBroadcastChannel:
    def __init__(self, hub: InMemoryBroadcastHub, name: str) -> None:
        self.name = name
        self._hub = hub
        self._queue: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()
        self._closed = False

    async def post_message(self, message: dict[str, Any]) -> None:
        if self._closed:
            raise ChannelClosedError(f"channel {self.name!r} is closed")
        self._hub._deliver(self, message)
        BROADCAST_MESSAGES.labels(direction="sent").inc()

    async def messages(self) -> AsyncIterator[dict[str, Any]]:
        while True:
            message = await self._queue.get()
            if message is None:  # closed
                return
            BROADCAST_MESSAGES.labels(direction="received").inc()
            yield message

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._hub._detach(self)
        self._queue.put_nowait(None)


class RedisBroadcastChannel:
    """Redis pub/sub channel; reaches contexts in other processes."""

    _PREFIX = "broadcast:"

    def __init__(self, redis_client, name: str = DATA_SYNC_CHANNEL) -> None:
        self.name = name
        self._redis = redis_client
        self._origin = uuid.uuid4().hex
        self._pubsub = None
        self._closed = False

    @property
    def _channel(self) -> str:
        return f"{self._PREFIX}{self.name}"

    async def post_message(self, message: dict[str, Any]) -> None:
        if self._closed:
            raise ChannelClosedError(f"channel {self.name!r} is closed")
        await self._redis.publish(
            self._channel, json.dumps({"origin": self._origin, "message": message})
        )
        BROADCAST_MESSAGES.labels(direction="sent").inc()

    async def messages(self) -> AsyncIterator[dict[str, Any]]:
        self._pubsub = self._redis.pubsub()
        await self._pubsub.subscribe(self._channel)
        async for raw in self._pubsub.listen():
            if raw.get("type") != "message":
                continue
            try:
                envelope = json.loads(raw["data"])
            except (TypeError, ValueError):
                logger.warning("Dropping malformed broadcast: %r", raw["data"])
                continue
            if envelope.get("origin") == self._origin:
                continue
            BROADCAST_MESSAGES.labels(direction="received").inc()
            yield envelope.get("message") or {}

    async def close(self) -> None:
        self._closed = True
        if self._pubsub is not None:
            await self._pubsub.unsubscribe(self._channel)
            await self._pubsub.aclose()
            self._pubsub = None


# ---------------------------------------------------------------------------
# Module-level default hub + factory
# ---------------------------------------------------------------------------

default_broadcast_hub = InMemoryBroadcastHub()


def open_broadcast_channel(name: str = DATA_SYNC_CHANNEL) -> BroadcastChannel:
    if redis_pool is not None:
        return RedisBroadcastChannel(redis_pool, name)
    return default_broadcast_hub.open(name)


def data_update(action: str, **ids: Any) -> dict[str, Any]:
    """Build a ``data-update`` message; ``ids`` use camelCase keys (orgId, eventId)."""
    return {"type": DATA_UPDATE, "action": action, **ids}
