"""One client context: the Python counterpart of a browser tab.

Each context owns its own storage handle, broadcast channel, signal bus,
API client, store and session.  Contexts opened in the same process with
no REDIS_URL share the in-memory storage area and broadcast hub, so two
``ClientContext.open()`` calls behave like two tabs of one browser.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from campus_hub.api.client import HttpApiClient
from campus_hub.core.config import SETTINGS, Settings
from campus_hub.services.broadcast import BroadcastChannel, open_broadcast_channel
from campus_hub.services.event_bus import EventBus
from campus_hub.services.membership_store import MembershipStore
from campus_hub.services.session import Session
from campus_hub.services.session_storage import SessionStorage, open_session_storage

logger = logging.getLogger(__name__)


@dataclass
class ClientContext:
    storage: SessionStorage
    bus: EventBus
    api: HttpApiClient
    channel: BroadcastChannel
    store: MembershipStore
    session: Session

    @classmethod
    async def open(
        cls,
        settings: Settings = SETTINGS,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> ClientContext:
        """Wire a context, restore any persisted session and start the store."""
        storage = open_session_storage()
        bus = EventBus()
        api = HttpApiClient(
            settings.api_base_url,
            storage,
            bus,
            timeout=settings.api_timeout_seconds,
            transport=transport,
        )
        channel = open_broadcast_channel()
        store = MembershipStore(api, storage, channel, bus)
        session = Session(api, storage, bus)

        context = cls(
            storage=storage, bus=bus, api=api, channel=channel, store=store, session=session
        )
        await session.restore()
        await store.start()
        logger.info("Client context started against %s", settings.api_base_url)
        return context

    async def aclose(self) -> None:
        # Store first: its listeners read from the channel and storage
        await self.store.close()
        await self.session.close()
        await self.storage.close()
        await self.api.aclose()
