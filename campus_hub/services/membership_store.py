"""In-memory membership store: organizations, events, users, approvals.

THREE VIEWS OF ONE RELATIONSHIP
---------------------------------
"Student S attends event E" is recorded three times:

  1. E.participants contains S.id          (authoritative)
  2. E.registered counts the participants  (denormalized)
  3. S.joined_events contains E.id         (secondary, may lag)

and "student S follows organization O" twice:

  1. S.followed_orgs contains O.id
  2. O.followers counts the followers      (denormalized)

Every mutation keeps all of them consistent for the data this context
holds.  Reads that have to pick one answer (is_user_joined_event) trust
``participants``: it is what the server confirmed, and the per-user list
is the one that drifts when several devices act at once.

PATCH ONLY AFTER THE SERVER CONFIRMS
--------------------------------------
Each mutation follows the same template:

  (a) call the API
  (b) failure or {success: false} → raise ApiError, change NOTHING
  (c) patch the local collections
  (d) if the current user's record changed → persist it and emit
      profileUpdated
  (e) broadcast {type: "data-update", action, ...} on data-sync

Because nothing is applied before (a) succeeds there is never anything
to roll back.  Counters move only when set membership actually changes,
so following twice adds exactly one follower.

RECONCILIATION
---------------
Other contexts change data behind our back.  Three triggers make this
store reload its authenticated data (current user + student roster):

  - loginSuccess on the local bus
  - a storage change to the persisted ``user`` from another context
  - any data-update message on the broadcast channel

Reloads are serialized by a lock.  Each trigger performs exactly one
reload, and two never overlap.  A failed reload is logged and still
counts as loaded; the next trigger tries again.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping, Sequence
from dataclasses import replace
from datetime import datetime
from typing import Any, TypeVar

from pydantic import ValidationError

from campus_hub.api.client import ApiClient, ApiError, ImageUpload
from campus_hub.api.schemas import (
    ApiEnvelope,
    EventPayload,
    OrganizationPayload,
    PendingApprovalPayload,
    dump_user,
    parse_user,
)
from campus_hub.core.metrics import DATA_RELOADS, STORE_MUTATIONS
from campus_hub.models.approval import PendingApproval, RejectionDetails
from campus_hub.models.event import Event
from campus_hub.models.organization import Organization
from campus_hub.models.user import User, UserRef
from campus_hub.services.broadcast import DATA_UPDATE, BroadcastChannel, data_update
from campus_hub.services.event_bus import EventBus, Signal
from campus_hub.services.event_lifecycle import (
    EventAction,
    EventStatus,
    get_event_status,
    is_action_permitted,
)
from campus_hub.services.session_storage import TOKEN_KEY, USER_KEY, SessionStorage

logger = logging.getLogger(__name__)

T = TypeVar("T")


class EventClosedError(Exception):
    """Join/leave attempted on an event that has already ended."""

    def __init__(self, event_id: int, action: str) -> None:
        super().__init__(f"Cannot {action} event {event_id}: the event has ended")
        self.event_id = event_id
        self.action = action


class UserIndex:
    """Resolves a UserRef (numeric ``id`` or string ``_id``) to a position.

    Both key spaces live in one dict of strings, so ``5``, ``"5"`` and
    ``"65f0c0ffee"`` all resolve without comparing fields ad hoc.
    """

    def __init__(self, users: Iterable[User] = ()) -> None:
        self._by_ref: dict[str, int] = {}
        self.rebuild(users)

    def rebuild(self, users: Iterable[User]) -> None:
        self._by_ref.clear()
        for position, user in enumerate(users):
            for ref in user.refs:
                # First record wins if two users collide on a ref
                self._by_ref.setdefault(ref, position)

    def position(self, ref: UserRef) -> int | None:
        return self._by_ref.get(str(ref))


def _parse_many(
    items: Iterable[Any], parse: Callable[[dict[str, Any]], T], kind: str
) -> list[T]:
    parsed: list[T] = []
    for item in items:
        try:
            parsed.append(parse(item))
        except (ValidationError, TypeError):
            logger.warning("Skipping malformed %s record: %r", kind, item)
    return parsed


def _merge_preferences(fresh: User, cached: User) -> User:
    """Server record wins, except presentation preferences cached locally."""
    return replace(
        fresh,
        profile_image=cached.profile_image or fresh.profile_image,
        bio=cached.bio or fresh.bio,
        interests=cached.interests or fresh.interests,
        year_of_study=cached.year_of_study or fresh.year_of_study,
        phone=cached.phone or fresh.phone,
        website=cached.website or fresh.website,
    )


def _same_person(candidate: User, current: User) -> bool:
    if current.object_id and candidate.object_id == current.object_id:
        return True
    return bool(current.id) and candidate.id == current.id


class MembershipStore:
    def __init__(
        self,
        api: ApiClient,
        storage: SessionStorage,
        channel: BroadcastChannel,
        bus: EventBus,
        *,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._api = api
        self._storage = storage
        self._channel = channel
        self._bus = bus
        self._clock = clock

        self._organizations: list[Organization] = []
        self._events: list[Event] = []
        self._users: list[User] = []
        self._pending_approvals: list[PendingApproval] = []
        self._user_index = UserIndex()

        self._auth_data_loaded = False
        self._reload_lock = asyncio.Lock()
        self._listeners: list[asyncio.Task[None]] = []

    # ------------------------------------------------------------------
    # Collections (copies; mutate through the operations below)
    # ------------------------------------------------------------------

    @property
    def organizations(self) -> list[Organization]:
        return list(self._organizations)

    @property
    def events(self) -> list[Event]:
        return list(self._events)

    @property
    def users(self) -> list[User]:
        return list(self._users)

    @property
    def pending_approvals(self) -> list[PendingApproval]:
        return list(self._pending_approvals)

    @property
    def auth_data_loaded(self) -> bool:
        return self._auth_data_loaded

    def replace_organizations(self, organizations: Iterable[Organization]) -> None:
        self._organizations = list(organizations)

    def replace_events(self, events: Iterable[Event]) -> None:
        self._events = list(events)

    def replace_users(self, users: Iterable[User]) -> None:
        self._users = list(users)
        self._user_index.rebuild(self._users)

    def replace_pending_approvals(self, approvals: Iterable[PendingApproval]) -> None:
        self._pending_approvals = list(approvals)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Load public data, then session data, then start listening."""
        await self.load_initial_data()
        self._bus.subscribe(Signal.LOGIN_SUCCESS, self._on_login_success)
        self._listeners = [
            asyncio.create_task(self._listen_broadcasts(), name="data-sync-listener"),
            asyncio.create_task(self._listen_storage(), name="storage-listener"),
        ]

    async def close(self) -> None:
        self._bus.unsubscribe(Signal.LOGIN_SUCCESS, self._on_login_success)
        for task in self._listeners:
            task.cancel()
        await asyncio.gather(*self._listeners, return_exceptions=True)
        self._listeners = []
        await self._channel.close()

    async def load_initial_data(self) -> None:
        try:
            envelope = await self._api.get_organizations()
            items = envelope.items()
            if envelope.success and items is not None:
                self.replace_organizations(
                    _parse_many(
                        items,
                        lambda d: OrganizationPayload.model_validate(d).to_model(),
                        "organization",
                    )
                )
        except ApiError:
            logger.exception("Error loading organizations")

        try:
            await self._refresh_events()
        except ApiError:
            logger.exception("Error loading events")

        if await self._has_session():
            logger.info("Session found, loading authenticated data")
            await self.load_authenticated_data(trigger="bootstrap")

    async def _refresh_events(self) -> None:
        envelope = await self._api.get_events()
        # Both {success, events} and {success, data} are in the wild
        items = envelope.items("events")
        if envelope.success and items is not None:
            self.replace_events(
                _parse_many(
                    items, lambda d: EventPayload.model_validate(d).to_model(), "event"
                )
            )

    # ------------------------------------------------------------------
    # Authenticated data + reconciliation
    # ------------------------------------------------------------------

    async def load_authenticated_data(self, *, trigger: str = "manual") -> None:
        """Load session data unless it is already loaded."""
        async with self._reload_lock:
            if self._auth_data_loaded:
                logger.debug("Authenticated data already loaded")
                return
            await self._load_authenticated_data(trigger)

    async def resync(self, trigger: str) -> None:
        """Discard the loaded flag and reload; one reload per call."""
        async with self._reload_lock:
            self._auth_data_loaded = False
            await self._load_authenticated_data(trigger)

    async def _load_authenticated_data(self, trigger: str) -> None:
        DATA_RELOADS.labels(trigger=trigger).inc()
        logger.info("Loading authenticated data", extra={"trigger": trigger})
        try:
            current = await self._read_session_user()
            role = current.role if current is not None else "student"
            if current is not None:
                self.replace_users([current])

            try:
                envelope: ApiEnvelope | None = await self._api.get_students()
            except ApiError as exc:
                logger.warning("Students request failed: %s", exc.message)
                envelope = None

            if envelope is not None and envelope.success and isinstance(envelope.data, list):
                students = _parse_many(envelope.data, parse_user, "student")
                if role == "student" and current is not None:
                    students = await self._merge_current_user(students, current)
                self.replace_users(students)
                logger.info("Loaded %d students", len(students), extra={"trigger": trigger})
            elif envelope is not None:
                logger.warning("Students failed to load: %s", envelope.message)

            if role == "admin":
                await self._load_pending_approvals()
        except Exception:
            # Still marked loaded below; the next trigger retries
            logger.exception("Error loading authenticated data", extra={"trigger": trigger})
        self._auth_data_loaded = True

    async def _merge_current_user(self, students: list[User], current: User) -> list[User]:
        merged_students: list[User] = []
        for student in students:
            if _same_person(student, current):
                merged = _merge_preferences(student, current)
                await self._commit_user(merged)
                merged_students.append(merged)
            else:
                merged_students.append(student)
        return merged_students

    async def _load_pending_approvals(self) -> None:
        try:
            envelope = await self._api.get_pending_approvals()
        except ApiError as exc:
            logger.warning("Pending approvals request failed: %s", exc.message)
            return
        items = envelope.items("pending_approvals")
        if envelope.success and items is not None:
            self.replace_pending_approvals(
                _parse_many(
                    items,
                    lambda d: PendingApprovalPayload.model_validate(d).to_model(),
                    "pending approval",
                )
            )

    async def _on_login_success(self, payload: dict[str, Any]) -> None:
        await self.resync("login")

    async def _listen_broadcasts(self) -> None:
        async for message in self._channel.messages():
            if message.get("type") != DATA_UPDATE:
                continue
            logger.info(
                "Cross-context update received",
                extra={"action": message.get("action"), "trigger": "broadcast"},
            )
            await self.resync("broadcast")

    async def _listen_storage(self) -> None:
        async for change in self._storage.changes():
            if change.key == USER_KEY and change.new_value:
                await self.resync("storage")

    # ------------------------------------------------------------------
    # Session helpers
    # ------------------------------------------------------------------

    async def _has_session(self) -> bool:
        return bool(await self._storage.get(USER_KEY)) and bool(
            await self._storage.get(TOKEN_KEY)
        )

    async def _read_session_user(self) -> User | None:
        raw = await self._storage.get(USER_KEY)
        if not raw:
            return None
        try:
            return parse_user(json.loads(raw))
        except (ValueError, TypeError):
            logger.warning("Could not parse persisted user record")
            return None

    async def _commit_user(self, user: User) -> None:
        payload = dump_user(user)
        await self._storage.set(USER_KEY, json.dumps(payload))
        await self._bus.emit(Signal.PROFILE_UPDATED, {"user": payload})

    # ------------------------------------------------------------------
    # Mutation plumbing
    # ------------------------------------------------------------------

    async def _call(
        self, action: str, call: Awaitable[ApiEnvelope], fallback: str, **context: Any
    ) -> ApiEnvelope:
        try:
            envelope = await call
        except ApiError as exc:
            STORE_MUTATIONS.labels(action=action, result="api_error").inc()
            logger.warning("%s failed: %s", action, exc.message, extra={"action": action, **context})
            raise
        if not envelope.success:
            STORE_MUTATIONS.labels(action=action, result="rejected").inc()
            message = envelope.message or fallback
            logger.warning("%s rejected: %s", action, message, extra={"action": action, **context})
            raise ApiError(message)
        STORE_MUTATIONS.labels(action=action, result="ok").inc()
        return envelope

    async def _broadcast(self, action: str, **ids: Any) -> None:
        await self._channel.post_message(data_update(action, **ids))

    def _ensure_open(self, event_id: int, action: EventAction) -> None:
        event = self.get_event_by_id(event_id)
        # Unknown locally: let the server decide
        if event is not None and not is_action_permitted(event, action, self._clock()):
            STORE_MUTATIONS.labels(action=f"{action}-event", result="closed").inc()
            raise EventClosedError(event_id, action)

    def _find_user(self, user_ref: UserRef) -> User | None:
        position = self._user_index.position(user_ref)
        return self._users[position] if position is not None else None

    def _put_user(self, user: User) -> None:
        position = self._user_index.position(user.refs[0])
        if position is None:
            return
        self._users[position] = user

    def _put_event(self, event: Event) -> bool:
        for position, existing in enumerate(self._events):
            if existing.id == event.id:
                self._events[position] = event
                return True
        return False

    def _put_organization(self, org: Organization) -> None:
        for position, existing in enumerate(self._organizations):
            if existing.id == org.id:
                self._organizations[position] = org
                return

    def _parse_event(self, data: Any, fallback: str) -> Event:
        if not isinstance(data, dict):
            raise ApiError(fallback)
        try:
            return EventPayload.model_validate(data).to_model()
        except ValidationError as exc:
            raise ApiError(fallback) from exc

    # ------------------------------------------------------------------
    # Follow / unfollow
    # ------------------------------------------------------------------

    async def follow_organization(self, user_ref: UserRef, org_id: int) -> None:
        await self._call(
            "follow",
            self._api.follow_organization(org_id),
            "Failed to follow organization",
            user_ref=str(user_ref),
            org_id=org_id,
        )

        user = self._find_user(user_ref)
        already_following = user is not None and org_id in user.followed_orgs
        if user is not None and not already_following:
            user = replace(user, followed_orgs=(*user.followed_orgs, org_id))
            self._put_user(user)
            await self._commit_user(user)

        if not already_following:
            org = self.get_organization_by_id(org_id)
            if org is not None:
                self._put_organization(replace(org, followers=org.followers + 1))

        logger.info(
            "Followed organization",
            extra={"action": "follow", "user_ref": str(user_ref), "org_id": org_id},
        )
        await self._broadcast("follow", orgId=org_id)

    async def unfollow_organization(self, user_ref: UserRef, org_id: int) -> None:
        await self._call(
            "unfollow",
            self._api.unfollow_organization(org_id),
            "Failed to unfollow organization",
            user_ref=str(user_ref),
            org_id=org_id,
        )

        user = self._find_user(user_ref)
        was_following = user is None or org_id in user.followed_orgs
        if user is not None and was_following:
            user = replace(
                user, followed_orgs=tuple(o for o in user.followed_orgs if o != org_id)
            )
            self._put_user(user)
            await self._commit_user(user)

        if was_following:
            org = self.get_organization_by_id(org_id)
            if org is not None:
                self._put_organization(replace(org, followers=max(0, org.followers - 1)))

        logger.info(
            "Unfollowed organization",
            extra={"action": "unfollow", "user_ref": str(user_ref), "org_id": org_id},
        )
        await self._broadcast("unfollow", orgId=org_id)

    # ------------------------------------------------------------------
    # Join / leave
    # ------------------------------------------------------------------

    async def join_event(self, user_ref: UserRef, event_id: int) -> None:
        self._ensure_open(event_id, "join")
        await self._call(
            "join-event",
            self._api.join_event(event_id),
            "Failed to join event",
            user_ref=str(user_ref),
            event_id=event_id,
        )

        user = self._find_user(user_ref)
        # Unresolvable caller still joined server-side; 0 keeps the patch going
        numeric_id = user.id if user is not None else 0

        if user is not None and event_id not in user.joined_events:
            user = replace(user, joined_events=(*user.joined_events, event_id))
            self._put_user(user)
            await self._commit_user(user)

        event = self.get_event_by_id(event_id)
        if event is not None and not event.has_participant(numeric_id):
            self._put_event(
                replace(
                    event,
                    participants=(*event.participants, numeric_id),
                    registered=event.registered + 1,
                )
            )

        logger.info(
            "Joined event",
            extra={"action": "join-event", "user_ref": str(user_ref), "event_id": event_id},
        )
        await self._broadcast("join-event", eventId=event_id)

    async def leave_event(self, user_ref: UserRef, event_id: int) -> None:
        self._ensure_open(event_id, "leave")
        await self._call(
            "leave-event",
            self._api.leave_event(event_id),
            "Failed to leave event",
            user_ref=str(user_ref),
            event_id=event_id,
        )

        user = self._find_user(user_ref)
        numeric_id = user.id if user is not None else 0

        if user is not None and event_id in user.joined_events:
            user = replace(
                user, joined_events=tuple(e for e in user.joined_events if e != event_id)
            )
            self._put_user(user)
            await self._commit_user(user)

        event = self.get_event_by_id(event_id)
        if event is not None and event.has_participant(numeric_id):
            self._put_event(
                replace(
                    event,
                    participants=tuple(p for p in event.participants if p != numeric_id),
                    registered=max(0, event.registered - 1),
                )
            )

        logger.info(
            "Left event",
            extra={"action": "leave-event", "user_ref": str(user_ref), "event_id": event_id},
        )
        await self._broadcast("leave-event", eventId=event_id)

    # ------------------------------------------------------------------
    # Event CRUD
    # ------------------------------------------------------------------

    async def create_event(
        self, data: Mapping[str, Any], images: Sequence[ImageUpload] = ()
    ) -> Event:
        envelope = await self._call(
            "create-event", self._api.create_event(data, images), "Failed to create event"
        )
        # registered/participants come from the server, never from us
        event = self._parse_event(envelope.data, "Failed to create event")
        self._events.append(event)
        logger.info(
            "Created event %s", event.id, extra={"action": "create-event", "event_id": event.id}
        )
        await self._broadcast("create-event", eventId=event.id)
        return event

    async def update_event(
        self,
        event_id: int,
        data: Mapping[str, Any],
        images: Sequence[ImageUpload] = (),
    ) -> Event:
        envelope = await self._call(
            "update-event",
            self._api.update_event(event_id, data, images),
            "Failed to update event",
            event_id=event_id,
        )
        event = self._parse_event(envelope.data, "Failed to update event")
        if not self._put_event(event):
            logger.warning(
                "Updated event %s is not in the local collection",
                event_id,
                extra={"event_id": event_id},
            )
        await self._broadcast("update-event", eventId=event_id)
        return event

    async def delete_event(self, event_id: int) -> None:
        await self._call(
            "delete-event",
            self._api.delete_event(event_id),
            "Failed to delete event",
            event_id=event_id,
        )
        self._events = [e for e in self._events if e.id != event_id]

        current = await self._read_session_user()
        # Roster swapped in one step; a reload may replace it during the commit
        users: list[User] = []
        session_user: User | None = None
        for user in self._users:
            if event_id in user.joined_events:
                user = replace(
                    user, joined_events=tuple(e for e in user.joined_events if e != event_id)
                )
                if current is not None and _same_person(user, current):
                    session_user = user
            users.append(user)
        self.replace_users(users)
        if session_user is not None:
            await self._commit_user(session_user)

        logger.info(
            "Deleted event %s", event_id, extra={"action": "delete-event", "event_id": event_id}
        )
        await self._broadcast("delete-event", eventId=event_id)

    # ------------------------------------------------------------------
    # Organizations & approvals
    # ------------------------------------------------------------------

    async def update_organization(
        self, org_id: int, data: Mapping[str, Any]
    ) -> Organization | None:
        envelope = await self._call(
            "update-organization",
            self._api.update_organization(org_id, data),
            "Failed to update organization",
            org_id=org_id,
        )
        server_org = envelope.organization or envelope.data

        org = self.get_organization_by_id(org_id)
        if org is not None and isinstance(server_org, dict):
            try:
                payload = OrganizationPayload.model_validate({**server_org, "id": org_id})
            except ValidationError:
                logger.warning("Unparseable organization in update response: %r", server_org)
            else:
                parsed = payload.to_model()
                changed = {name: getattr(parsed, name) for name in payload.model_fields_set}
                changed.pop("id", None)
                org = replace(org, **changed)
                self._put_organization(org)

        # orgName/orgType are denormalized onto events server-side
        try:
            await self._refresh_events()
        except ApiError:
            logger.exception("Error refreshing events after organization update")

        await self._broadcast("update-organization", orgId=org_id)
        return org

    async def approve_organization(self, approval_id: int) -> None:
        await self._call(
            "approve-organization",
            self._api.approve_organization(approval_id),
            "Failed to approve organization",
            approval_id=approval_id,
        )
        approval = next((a for a in self._pending_approvals if a.id == approval_id), None)
        if approval is not None and approval.org_id is not None:
            org = self.get_organization_by_id(approval.org_id)
            if org is not None:
                self._put_organization(replace(org, status="active"))

        self._pending_approvals = [
            replace(a, status="approved") if a.id == approval_id else a
            for a in self._pending_approvals
        ]
        await self._broadcast("approve-organization", approvalId=approval_id)

    async def reject_approval(
        self,
        approval_id: int,
        reason: str | None = None,
        *,
        allow_resubmission: bool = False,
        resubmission_deadline: str | None = None,
    ) -> None:
        await self._call(
            "reject-approval",
            self._api.reject_organization(
                approval_id, reason or "", allow_resubmission, resubmission_deadline
            ),
            "Failed to reject organization",
            approval_id=approval_id,
        )
        details = (
            RejectionDetails(
                reason=reason,
                allow_resubmission=allow_resubmission,
                resubmission_deadline=resubmission_deadline,
            )
            if reason
            else None
        )
        self._pending_approvals = [
            replace(a, status="rejected", rejection_details=details or a.rejection_details)
            if a.id == approval_id
            else a
            for a in self._pending_approvals
        ]
        await self._broadcast("reject-approval", approvalId=approval_id)

    # ------------------------------------------------------------------
    # Queries (total functions, never raise)
    # ------------------------------------------------------------------

    def get_organization_by_id(self, org_id: int | str) -> Organization | None:
        return next((o for o in self._organizations if str(o.id) == str(org_id)), None)

    def get_event_by_id(self, event_id: int | str) -> Event | None:
        return next((e for e in self._events if str(e.id) == str(event_id)), None)

    def get_user_by_id(self, user_ref: UserRef) -> User | None:
        return self._find_user(user_ref)

    def get_events_by_org_id(self, org_id: int) -> list[Event]:
        return [e for e in self._events if e.org_id == org_id]

    def get_event_status(
        self, event_id: int, now: datetime | None = None
    ) -> EventStatus | None:
        event = self.get_event_by_id(event_id)
        if event is None:
            return None
        return get_event_status(event, now or self._clock())

    def is_user_following_org(self, user_ref: UserRef, org_id: int) -> bool:
        user = self._find_user(user_ref)
        return user is not None and org_id in user.followed_orgs

    def is_user_joined_event(self, user_ref: UserRef, event_id: int) -> bool:
        user = self._find_user(user_ref)
        numeric_id = user.id if user is not None else 0
        event = self.get_event_by_id(event_id)
        in_participants = event is not None and event.has_participant(numeric_id)

        in_joined_events = user is not None and event_id in user.joined_events
        if in_joined_events != in_participants:
            logger.debug(
                "joined_events disagrees with participants for user=%s event=%s; "
                "using participants=%s",
                user_ref,
                event_id,
                in_participants,
                extra={"user_ref": str(user_ref), "event_id": event_id},
            )
        return in_participants
