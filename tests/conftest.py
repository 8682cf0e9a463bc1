from __future__ import annotations

import asyncio
import json
import sys
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

import pytest

from campus_hub.api.client import ApiError
from campus_hub.api.schemas import ApiEnvelope
from campus_hub.services.broadcast import InMemoryBroadcastChannel, default_broadcast_hub
from campus_hub.services.event_bus import EventBus
from campus_hub.services.membership_store import MembershipStore
from campus_hub.services.session_storage import (
    TOKEN_KEY,
    USER_KEY,
    InMemorySessionStorage,
    default_storage_area,
)

# Ensure repo root is on sys.path so `import campus_hub` works under pytest.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# 2025-03-10 09:00 local: event 10 is upcoming, 11 has ended, 12 is running
NOW = datetime(2025, 3, 10, 9, 0)

ORGANIZATIONS: list[dict[str, Any]] = [
    {"id": 1, "name": "Robotics Club", "type": "academic", "followers": 3, "members": 20},
    {"id": 2, "name": "Chess Society", "type": "recreational", "followers": 0},
]

EVENTS: list[dict[str, Any]] = [
    {
        "id": 10,
        "title": "Build Night",
        "date": "2025-03-10",
        "startTime": "10:00",
        "endTime": "12:00",
        "orgId": 1,
        "orgName": "Robotics Club",
        "registered": 1,
        "participants": [6],
    },
    {
        "id": 11,
        "title": "Winter Open",
        "date": "2025-03-01",
        "startTime": "13:00",
        "endTime": "17:00",
        "orgId": 2,
        "orgName": "Chess Society",
        "registered": 0,
        "participants": [],
    },
    {
        "id": 12,
        "title": "Morning Blitz",
        "date": "2025-03-10",
        "startTime": "08:30",
        "endTime": "09:30",
        "orgId": 2,
        "orgName": "Chess Society",
        "registered": 0,
        "participants": [],
    },
]

STUDENTS: list[dict[str, Any]] = [
    {
        "id": 5,
        "_id": "65f0c0ffee0005",
        "name": "Ada",
        "email": "ada@example.com",
        "role": "student",
        "followedOrgs": [],
        "joinedEvents": [],
    },
    {
        "id": 6,
        "_id": "65f0c0ffee0006",
        "name": "Grace",
        "email": "grace@example.com",
        "role": "student",
        "followedOrgs": [1],
        "joinedEvents": [10],
    },
]


@pytest.fixture(autouse=True)
def reset_storage_area() -> None:
    """Clear the shared in-memory session storage between tests."""
    default_storage_area._store.clear()
    default_storage_area._handles.clear()


@pytest.fixture(autouse=True)
def reset_broadcast_hub() -> None:
    """Drop channels left open by a previous test."""
    default_broadcast_hub.clear()


# ---------------------------------------------------------------------------
# Fake API
# ---------------------------------------------------------------------------


class FakeApiClient:
    """In-memory ApiClient with call recording and failure injection.

    ``fail[name]`` makes the named method fail: an ApiError instance is
    raised, a string becomes ``{success: false, message: <string>}``.
    """

    def __init__(self) -> None:
        self.organizations = [dict(o) for o in ORGANIZATIONS]
        self.events = [dict(e) for e in EVENTS]
        self.students = [dict(s) for s in STUDENTS]
        self.pending_approvals: list[dict[str, Any]] = []
        self.profile: dict[str, Any] | None = None
        self.login_response: dict[str, Any] | None = None
        self.calls: list[tuple[str, Any]] = []
        self.fail: dict[str, ApiError | str] = {}
        self.students_delay = 0.0
        self.students_in_flight = 0
        self.max_students_in_flight = 0
        self._next_event_id = 100
        # Student the fake server treats as the caller of membership endpoints
        self.acting_id = 5

    def count(self, name: str) -> int:
        return sum(1 for call, _ in self.calls if call == name)

    def _respond(self, name: str, args: Any = None, **body: Any) -> ApiEnvelope:
        self.calls.append((name, args))
        failure = self.fail.get(name)
        if isinstance(failure, ApiError):
            raise failure
        if failure is not None:
            return ApiEnvelope(success=False, message=failure)
        return ApiEnvelope.model_validate({"success": True, **body})

    async def get_organizations(self) -> ApiEnvelope:
        return self._respond("get_organizations", data=self.organizations)

    async def get_events(self) -> ApiEnvelope:
        return self._respond("get_events", events=self.events)

    async def get_students(self) -> ApiEnvelope:
        self.students_in_flight += 1
        self.max_students_in_flight = max(
            self.max_students_in_flight, self.students_in_flight
        )
        try:
            if self.students_delay:
                await asyncio.sleep(self.students_delay)
            return self._respond("get_students", data=self.students)
        finally:
            self.students_in_flight -= 1

    async def get_profile(self) -> ApiEnvelope:
        return self._respond("get_profile", user=self.profile)

    async def get_pending_approvals(self) -> ApiEnvelope:
        return self._respond("get_pending_approvals", pendingApprovals=self.pending_approvals)

    async def login(self, email: str, password: str) -> ApiEnvelope:
        return self._respond("login", email, **(self.login_response or {}))

    def _acting_student(self) -> dict[str, Any] | None:
        return next((s for s in self.students if s["id"] == self.acting_id), None)

    async def follow_organization(self, org_id: int) -> ApiEnvelope:
        envelope = self._respond("follow_organization", org_id)
        student = self._acting_student()
        if envelope.success and student is not None:
            if org_id not in student["followedOrgs"]:
                student["followedOrgs"] = [*student["followedOrgs"], org_id]
        return envelope

    async def unfollow_organization(self, org_id: int) -> ApiEnvelope:
        envelope = self._respond("unfollow_organization", org_id)
        student = self._acting_student()
        if envelope.success and student is not None:
            student["followedOrgs"] = [o for o in student["followedOrgs"] if o != org_id]
        return envelope

    async def join_event(self, event_id: int) -> ApiEnvelope:
        envelope = self._respond("join_event", event_id)
        student = self._acting_student()
        if envelope.success and student is not None:
            if event_id not in student["joinedEvents"]:
                student["joinedEvents"] = [*student["joinedEvents"], event_id]
        return envelope

    async def leave_event(self, event_id: int) -> ApiEnvelope:
        envelope = self._respond("leave_event", event_id)
        student = self._acting_student()
        if envelope.success and student is not None:
            student["joinedEvents"] = [e for e in student["joinedEvents"] if e != event_id]
        return envelope

    async def create_event(self, data, images=()) -> ApiEnvelope:
        event = {"id": self._next_event_id, "registered": 0, "participants": [], **data}
        self._next_event_id += 1
        return self._respond("create_event", (dict(data), len(images)), data=event)

    async def update_event(self, event_id, data, images=()) -> ApiEnvelope:
        current = next(e for e in self.events if e["id"] == event_id)
        return self._respond("update_event", event_id, data={**current, **data})

    async def delete_event(self, event_id: int) -> ApiEnvelope:
        return self._respond("delete_event", event_id)

    async def update_organization(self, org_id, data) -> ApiEnvelope:
        return self._respond("update_organization", org_id, organization={"id": org_id, **data})

    async def approve_organization(self, approval_id: int) -> ApiEnvelope:
        return self._respond("approve_organization", approval_id)

    async def reject_organization(
        self, approval_id, rejection_reason, allow_resubmission=False, resubmission_deadline=None
    ) -> ApiEnvelope:
        return self._respond(
            "reject_organization",
            (approval_id, rejection_reason, allow_resubmission, resubmission_deadline),
        )


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


@dataclass
class StoreHarness:
    store: MembershipStore
    storage: InMemorySessionStorage
    bus: EventBus
    channel: InMemoryBroadcastChannel


def build_store(api: FakeApiClient) -> StoreHarness:
    """A store wired to fresh handles on the shared in-memory area and hub."""
    storage = default_storage_area.open()
    channel = default_broadcast_hub.open()
    bus = EventBus()
    store = MembershipStore(api, storage, channel, bus, clock=lambda: NOW)
    return StoreHarness(store=store, storage=storage, bus=bus, channel=channel)


def persist_session(user: dict[str, Any], token: str = "test-token") -> None:
    """Write a session straight into the shared area (no notifications)."""
    default_storage_area._store[USER_KEY] = json.dumps(user)
    default_storage_area._store[TOKEN_KEY] = token


def stored_user() -> dict[str, Any] | None:
    raw = default_storage_area._store.get(USER_KEY)
    return json.loads(raw) if raw else None


async def settle(rounds: int = 50) -> None:
    """Let listener tasks drain their queues."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def api() -> FakeApiClient:
    return FakeApiClient()
