"""Durable session storage shared by every client context.

WHAT LIVES HERE
----------------
Two well-known keys:

  user   : the logged-in user's record, camelCase JSON
  token  : the opaque bearer token

Every store context reads them at startup to decide whether to load
authenticated data, and every mutation that touches the current user
writes ``user`` back.  This is the one shared mutable resource between
contexts.

CHANGE NOTIFICATIONS
---------------------
A write in one context must wake up the others, so each storage handle
exposes ``changes()``: an async iterator of StorageChange records for
writes made by OTHER handles.  A handle never sees its own writes,
matching how a browser only fires "storage" events in other tabs.

There is no lock and no merge: last write wins.  Readers reconcile by
reloading from the API (see MembershipStore.resync).

Writing the value a key already holds is a no-op and notifies nobody.
Contexts that reload on a change also write the merged user back; without
this rule two of them would wake each other up forever.

TWO BACKENDS
-------------
  InMemorySessionStorage: handles opened on the same InMemoryStorageArea
    share one dict; notifications go through per-handle asyncio queues.
    Good for tests and for several contexts inside one process.

  RedisSessionStorage: keys under ``session:`` plus a pub/sub channel
    for notifications.  Each handle tags what it publishes with a random
    origin id and drops its own messages on receipt.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from campus_hub.db.redis import redis_pool

logger = logging.getLogger(__name__)

USER_KEY = "user"
TOKEN_KEY = "token"


@dataclass(frozen=True, slots=True)
class StorageChange:
    key: str
    new_value: str | None  # None when the key was removed


@runtime_checkable
class SessionStorage(Protocol):
    async def get(self, key: str) -> str | None: ...
    async def set(self, key: str, value: str) -> None: ...
    async def remove(self, key: str) -> None: ...
    def changes(self) -> AsyncIterator[StorageChange]: ...
    async def close(self) -> None: ...


class InMemoryStorageArea:
    """Backing dict shared by every handle opened on it."""

    def __init__(self) -> None:
        self._store: dict[str, str] = {}
        self._handles: list[InMemorySessionStorage] = []

    def open(self) -> InMemorySessionStorage:
        handle = InMemorySessionStorage(self)
        self._handles.append(handle)
        return handle

    def clear(self) -> None:
        self._store.clear()

    def _notify(self, origin: InMemorySessionStorage, change: StorageChange) -> None:
        for handle in self._handles:
            if handle is not origin:
                handle._queue.put_nowait(change)

    def _detach(self, handle: InMemorySessionStorage) -> None:
        if handle in self._handles:
            self._handles.remove(handle)


class InMemorySessionStorage:
    def __init__(self, area: InMemoryStorageArea) -> None:
        self._area = area
        self._queue: asyncio.Queue[StorageChange | None] = asyncio.Queue()
        self._closed = False

    async def get(self, key: str) -> str | None:
        return self._area._store.get(key)

    async def set(self, key: str, value: str) -> None:
        if self._area._store.get(key) == value:
            return
        self._area._store[key] = value
        self._area._notify(self, StorageChange(key=key, new_value=value))

    async def remove(self, key: str) -> None:
        if self._area._store.pop(key, None) is not None:
            self._area._notify(self, StorageChange(key=key, new_value=None))

    async def changes(self) -> AsyncIterator[StorageChange]:
        while True:
            change = await self._queue.get()
            if change is None:  # closed
                return
            yield change

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._area._detach(self)
        self._queue.put_nowait(None)


class RedisSessionStorage:
    """Redis-backed session storage shared across processes."""

    _PREFIX = "session:"
    _CHANNEL = "session-events"

    def __init__(self, redis_client) -> None:
        self._redis = redis_client
        self._origin = uuid.uuid4().hex
        self._pubsub = None

    async def get(self, key: str) -> str | None:
        return await self._redis.get(f"{self._PREFIX}{key}")

    async def set(self, key: str, value: str) -> None:
        # SET ... GET returns the previous value in the same round trip
        previous = await self._redis.set(f"{self._PREFIX}{key}", value, get=True)
        if previous != value:
            await self._publish(key, value)

    async def remove(self, key: str) -> None:
        if await self._redis.delete(f"{self._PREFIX}{key}"):
            await self._publish(key, None)

    async def _publish(self, key: str, value: str | None) -> None:
        await self._redis.publish(
            self._CHANNEL,
            json.dumps({"origin": self._origin, "key": key, "newValue": value}),
        )

    async def changes(self) -> AsyncIterator[StorageChange]:
        self._pubsub = self._redis.pubsub()
        await self._pubsub.subscribe(self._CHANNEL)
        async for message in self._pubsub.listen():
            if message.get("type") != "message":
                continue
            try:
                data = json.loads(message["data"])
            except (TypeError, ValueError):
                logger.warning("Dropping malformed session event: %r", message["data"])
                continue
            if data.get("origin") == self._origin:
                continue
            yield StorageChange(key=data.get("key", ""), new_value=data.get("newValue"))

    async def close(self) -> None:
        if self._pubsub is not None:
            await self._pubsub.unsubscribe(self._CHANNEL)
            await self._pubsub.aclose()
            self._pubsub = None


# ---------------------------------------------------------------------------
# Module-level default area + factory
# ---------------------------------------------------------------------------
# Unlike a single cache singleton, every client context needs its own
# handle (so it can tell its own writes from everyone else's).

default_storage_area = InMemoryStorageArea()


def open_session_storage() -> SessionStorage:
    if redis_pool is not None:
        return RedisSessionStorage(redis_pool)
    return default_storage_area.open()
