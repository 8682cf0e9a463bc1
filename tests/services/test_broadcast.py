from __future__ import annotations

import asyncio

import pytest

from campus_hub.services.broadcast import (
    ChannelClosedError,
    InMemoryBroadcastHub,
    data_update,
    default_broadcast_hub,
    open_broadcast_channel,
)


def test_sender_never_receives_its_own_message() -> None:
    hub = InMemoryBroadcastHub()
    sender = hub.open()
    receiver = hub.open()

    asyncio.run(sender.post_message(data_update("follow", orgId=1)))

    assert sender._queue.empty()
    assert receiver._queue.get_nowait() == {
        "type": "data-update",
        "action": "follow",
        "orgId": 1,
    }


def test_receivers_get_independent_copies() -> None:
    hub = InMemoryBroadcastHub()
    sender, first, second = hub.open(), hub.open(), hub.open()
    message = {"type": "data-update", "action": "join-event", "ids": [1]}

    asyncio.run(sender.post_message(message))
    received = first._queue.get_nowait()
    received["ids"].append(2)

    assert second._queue.get_nowait()["ids"] == [1]
    assert message["ids"] == [1]


def test_channels_with_different_names_are_isolated() -> None:
    hub = InMemoryBroadcastHub()
    sender = hub.open("data-sync")
    other = hub.open("presence")

    asyncio.run(sender.post_message(data_update("follow")))
    assert other._queue.empty()


def test_post_after_close_raises() -> None:
    hub = InMemoryBroadcastHub()
    channel = hub.open()

    async def scenario() -> None:
        await channel.close()
        with pytest.raises(ChannelClosedError):
            await channel.post_message(data_update("follow"))

    asyncio.run(scenario())


def test_closed_channel_stops_receiving_and_ends_iteration() -> None:
    hub = InMemoryBroadcastHub()
    sender = hub.open()
    receiver = hub.open()

    async def scenario() -> list[dict]:
        await sender.post_message(data_update("follow", orgId=1))
        await receiver.close()
        await sender.post_message(data_update("follow", orgId=2))
        return [m async for m in receiver.messages()]

    assert asyncio.run(scenario()) == [data_update("follow", orgId=1)]


def test_open_broadcast_channel_uses_default_hub_without_redis() -> None:
    first = open_broadcast_channel()
    second = open_broadcast_channel()

    asyncio.run(first.post_message(data_update("delete-event", eventId=3)))
    assert second._queue.get_nowait()["eventId"] == 3
    assert len(default_broadcast_hub._members["data-sync"]) == 2
