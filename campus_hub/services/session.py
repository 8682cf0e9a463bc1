"""Session lifecycle: login, restore from storage, logout.

The session is the pair of persisted keys ``user`` and ``token``.  Both
or neither: a half-present pair (one key lost) is cleared on restore.

Signals emitted on the context bus:

  loginSuccess  after a login or a successful restore
  logout        after an explicit logout

The client emits ``logout`` itself on a 401, so Session also listens for
it and drops its cached user.  It listens for ``profileUpdated`` to keep
``current_user`` in step with the store's writes.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from pydantic import ValidationError

from campus_hub.api.client import ApiClient, ApiError
from campus_hub.api.schemas import dump_user, parse_user
from campus_hub.models.user import User
from campus_hub.services.event_bus import EventBus, Signal
from campus_hub.services.session_storage import TOKEN_KEY, USER_KEY, SessionStorage

logger = logging.getLogger(__name__)


class Session:
    def __init__(self, api: ApiClient, storage: SessionStorage, bus: EventBus) -> None:
        self._api = api
        self._storage = storage
        self._bus = bus
        self._user: User | None = None
        bus.subscribe(Signal.PROFILE_UPDATED, self._on_profile_updated)
        bus.subscribe(Signal.LOGOUT, self._on_logout)

    @property
    def current_user(self) -> User | None:
        return self._user

    @property
    def is_authenticated(self) -> bool:
        return self._user is not None

    async def token(self) -> str | None:
        return await self._storage.get(TOKEN_KEY)

    async def login(self, email: str, password: str) -> User:
        envelope = await self._api.login(email, password)
        if not envelope.success or not isinstance(envelope.user, dict):
            raise ApiError(envelope.message or "Failed to login")
        try:
            user = parse_user(envelope.user)
        except ValidationError as exc:
            raise ApiError("Failed to login") from exc

        if envelope.token:
            await self._storage.set(TOKEN_KEY, envelope.token)
        await self._establish(user, envelope.token)
        logger.info("Logged in", extra={"user_ref": str(user.object_id or user.id)})
        return user

    async def restore(self) -> User | None:
        """Rebuild the session from storage; returns the user or None."""
        raw_user = await self._storage.get(USER_KEY)
        token = await self._storage.get(TOKEN_KEY)

        if not raw_user or not token:
            if raw_user or token:
                logger.warning("Partial session found in storage, clearing it")
                await self._clear_storage()
            return None

        try:
            user = parse_user(json.loads(raw_user))
        except (ValueError, TypeError):
            logger.warning("Stored user record is corrupted, clearing session")
            await self._clear_storage()
            return None

        if user.role == "organization":
            # Approval status may have changed since the record was cached
            user = await self._refresh_profile(user)

        await self._establish(user, token)
        logger.info("Session restored", extra={"user_ref": str(user.object_id or user.id)})
        return user

    async def logout(self) -> None:
        await self._clear_storage()
        self._user = None
        await self._bus.emit(Signal.LOGOUT)

    async def close(self) -> None:
        self._bus.unsubscribe(Signal.PROFILE_UPDATED, self._on_profile_updated)
        self._bus.unsubscribe(Signal.LOGOUT, self._on_logout)

    async def _refresh_profile(self, cached: User) -> User:
        try:
            envelope = await self._api.get_profile()
        except ApiError as exc:
            logger.warning("Profile refresh failed, using stored record: %s", exc.message)
            return cached
        if not envelope.success or not isinstance(envelope.user, dict):
            return cached
        try:
            return parse_user(envelope.user)
        except ValidationError:
            logger.warning("Profile response did not parse, using stored record")
            return cached

    async def _establish(self, user: User, token: str | None) -> None:
        payload = dump_user(user)
        self._user = user
        await self._storage.set(USER_KEY, json.dumps(payload))
        await self._bus.emit(Signal.LOGIN_SUCCESS, {"user": payload, "token": token})

    async def _clear_storage(self) -> None:
        await self._storage.remove(USER_KEY)
        await self._storage.remove(TOKEN_KEY)

    def _on_profile_updated(self, payload: dict[str, Any]) -> None:
        record = payload.get("user")
        if not isinstance(record, dict):
            return
        try:
            self._user = parse_user(record)
        except ValidationError:
            logger.warning("Ignoring unparseable profileUpdated payload")

    def _on_logout(self, payload: dict[str, Any]) -> None:
        self._user = None
