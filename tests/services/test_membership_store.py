from __future__ import annotations

import asyncio

import pytest

from campus_hub.api.client import ApiError
from campus_hub.models.user import User
from campus_hub.services.broadcast import default_broadcast_hub
from campus_hub.services.event_bus import Signal
from campus_hub.services.membership_store import EventClosedError, UserIndex
from tests.conftest import STUDENTS, FakeApiClient, build_store, persist_session, stored_user

ADA = STUDENTS[0]
GRACE = STUDENTS[1]


def run_as(api: FakeApiClient, user: dict | None, actions):
    """Start a store (with ``user`` as the session), run ``actions``, close it."""
    if user is not None:
        persist_session(user)

    async def scenario():
        harness = build_store(api)
        await harness.store.start()
        try:
            return await actions(harness)
        finally:
            await harness.store.close()

    return asyncio.run(scenario())


# ---- UserIndex ----


def test_user_index_resolves_numeric_and_object_ids() -> None:
    index = UserIndex([User(id=5, object_id="abc"), User(id=6)])
    assert index.position(5) == 0
    assert index.position("5") == 0
    assert index.position("abc") == 0
    assert index.position(6) == 1
    assert index.position("nobody") is None


# ---- follow / unfollow ----


def test_follow_twice_increments_followers_once(api: FakeApiClient) -> None:
    async def actions(h):
        await h.store.follow_organization(5, 1)
        await h.store.follow_organization(5, 1)
        return h.store.get_organization_by_id(1), h.store.get_user_by_id(5)

    org, user = run_as(api, ADA, actions)
    assert org.followers == 4
    assert user.followed_orgs == (1,)
    assert api.count("follow_organization") == 2


def test_follow_by_object_id_persists_user_and_emits_profile_updated(
    api: FakeApiClient,
) -> None:
    received: list[dict] = []

    async def actions(h):
        h.bus.subscribe(Signal.PROFILE_UPDATED, received.append)
        await h.store.follow_organization("65f0c0ffee0005", 2)
        return h.store.is_user_following_org(5, 2)

    assert run_as(api, ADA, actions) is True
    assert stored_user()["followedOrgs"] == [2]
    assert received[-1]["user"]["followedOrgs"] == [2]


def test_unfollow_decrements_followers(api: FakeApiClient) -> None:
    api.acting_id = 6

    async def actions(h):
        await h.store.unfollow_organization(6, 1)
        return h.store.get_organization_by_id(1), h.store.get_user_by_id(6)

    org, user = run_as(api, GRACE, actions)
    assert org.followers == 2
    assert user.followed_orgs == ()


def test_unfollow_floors_followers_at_zero(api: FakeApiClient) -> None:
    async def actions(h):
        await h.store.unfollow_organization("nobody", 2)
        return h.store.get_organization_by_id(2)

    org = run_as(api, ADA, actions)
    assert org.followers == 0


def test_unfollow_when_not_following_leaves_followers_alone(api: FakeApiClient) -> None:
    async def actions(h):
        await h.store.unfollow_organization(5, 1)
        return h.store.get_organization_by_id(1)

    assert run_as(api, ADA, actions).followers == 3


# ---- join / leave ----


def test_join_then_leave_round_trips_counts(api: FakeApiClient) -> None:
    async def actions(h):
        await h.store.join_event(5, 10)
        joined = h.store.get_event_by_id(10)
        was_joined = h.store.is_user_joined_event(5, 10)
        await h.store.leave_event(5, 10)
        return joined, was_joined, h.store.get_event_by_id(10), h.store.get_user_by_id(5)

    joined, was_joined, left, user = run_as(api, ADA, actions)
    assert joined.participants == (6, 5)
    assert joined.registered == 2
    assert was_joined is True
    assert left.participants == (6,)
    assert left.registered == 1
    assert user.joined_events == ()
    assert stored_user()["joinedEvents"] == []


def test_join_twice_registers_once(api: FakeApiClient) -> None:
    async def actions(h):
        await h.store.join_event(5, 10)
        await h.store.join_event(5, 10)
        return h.store.get_event_by_id(10)

    event = run_as(api, ADA, actions)
    assert event.registered == 2
    assert event.participants.count(5) == 1


def test_join_started_event_is_allowed(api: FakeApiClient) -> None:
    async def actions(h):
        await h.store.join_event(5, 12)
        return h.store.is_user_joined_event(5, 12)

    assert run_as(api, ADA, actions) is True


def test_join_unknown_user_records_participant_zero(api: FakeApiClient) -> None:
    async def actions(h):
        await h.store.join_event("ghost", 10)
        return h.store.get_event_by_id(10)

    event = run_as(api, ADA, actions)
    assert event.participants == (6, 0)
    assert event.registered == 2


@pytest.mark.parametrize("action", ["join_event", "leave_event"])
def test_ended_event_refuses_join_and_leave_without_calling_api(
    api: FakeApiClient, action: str
) -> None:
    async def actions(h):
        with pytest.raises(EventClosedError):
            await getattr(h.store, action)(5, 11)
        return h.store.get_event_by_id(11)

    event = run_as(api, ADA, actions)
    assert api.count(action) == 0
    assert event.participants == ()


# ---- failures apply nothing ----


def test_rejected_follow_raises_server_message_and_changes_nothing(
    api: FakeApiClient,
) -> None:
    api.fail["follow_organization"] = "Organization is suspended"

    async def actions(h):
        observer = default_broadcast_hub.open()
        with pytest.raises(ApiError, match="Organization is suspended"):
            await h.store.follow_organization(5, 1)
        return h.store.get_organization_by_id(1), h.store.get_user_by_id(5), observer

    org, user, observer = run_as(api, ADA, actions)
    assert org.followers == 3
    assert user.followed_orgs == ()
    assert observer._queue.empty()


def test_rejection_without_message_uses_fallback(api: FakeApiClient) -> None:
    api.fail["join_event"] = ""

    async def actions(h):
        with pytest.raises(ApiError, match="Failed to join event"):
            await h.store.join_event(5, 10)
        return h.store.get_event_by_id(10)

    assert run_as(api, ADA, actions).registered == 1


def test_network_failure_propagates(api: FakeApiClient) -> None:
    api.fail["leave_event"] = ApiError("Network error: connection refused")

    async def actions(h):
        with pytest.raises(ApiError, match="connection refused"):
            await h.store.leave_event(6, 10)
        return h.store.get_event_by_id(10)

    assert run_as(api, GRACE, actions).participants == (6,)


# ---- participants are authoritative ----


def test_is_user_joined_event_trusts_participants(api: FakeApiClient) -> None:
    api.students[1] = {**GRACE, "joinedEvents": [10, 12]}
    api.events[1] = {**api.events[1], "participants": [5], "registered": 1}

    async def actions(h):
        return (
            h.store.is_user_joined_event(6, 12),
            h.store.is_user_joined_event(5, 11),
        )

    stale_joined, missing_joined = run_as(api, ADA, actions)
    assert stale_joined is False
    assert missing_joined is True


# ---- event CRUD ----


def test_create_event_appends_server_copy_and_broadcasts(api: FakeApiClient) -> None:
    async def actions(h):
        observer = default_broadcast_hub.open()
        event = await h.store.create_event(
            {
                "title": "Demo Day",
                "date": "2025-03-20",
                "startTime": "14:00",
                "endTime": "16:00",
                "orgId": 1,
            }
        )
        return event, h.store.get_events_by_org_id(1), observer._queue.get_nowait()

    event, org_events, message = run_as(api, ADA, actions)
    assert event.id == 100
    assert event.registered == 0
    assert [e.id for e in org_events] == [10, 100]
    assert message == {"type": "data-update", "action": "create-event", "eventId": 100}


def test_create_event_sends_images(api: FakeApiClient) -> None:
    async def actions(h):
        await h.store.create_event(
            {"title": "Expo", "date": "2025-04-01", "startTime": "10:00", "endTime": "11:00"},
            [("poster.png", b"\x89PNG", "image/png")],
        )

    run_as(api, ADA, actions)
    assert api.calls[-1][0] == "create_event"
    assert api.calls[-1][1][1] == 1


def test_update_event_replaces_with_server_copy(api: FakeApiClient) -> None:
    async def actions(h):
        await h.store.update_event(10, {"title": "Build Night II"})
        return h.store.get_event_by_id(10)

    event = run_as(api, ADA, actions)
    assert event.title == "Build Night II"
    assert event.participants == (6,)


def test_delete_event_removes_it_from_every_user(api: FakeApiClient) -> None:
    async def actions(h):
        await h.store.delete_event(10)
        return h.store.get_event_by_id(10), h.store.get_user_by_id(6)

    event, grace = run_as(api, GRACE, actions)
    assert event is None
    assert grace.joined_events == ()
    assert stored_user()["joinedEvents"] == []


def test_delete_event_leaves_session_alone_when_untouched(api: FakeApiClient) -> None:
    async def actions(h):
        await h.store.delete_event(10)
        return h.store.get_user_by_id(6)

    grace = run_as(api, ADA, actions)
    assert grace.joined_events == ()
    assert stored_user()["name"] == "Ada"


def test_delete_event_survives_reload_during_profile_commit(api: FakeApiClient) -> None:
    api.students[0] = {**api.students[0], "joinedEvents": [10]}

    async def actions(h):
        reloads: list[asyncio.Task] = []

        async def on_profile_updated(payload) -> None:
            if reloads:
                return
            # Server now lists the roster in the opposite order
            api.students.reverse()
            reloads.append(asyncio.create_task(h.store.resync("broadcast")))
            await asyncio.sleep(0.02)

        h.bus.subscribe(Signal.PROFILE_UPDATED, on_profile_updated)
        await h.store.delete_event(10)
        await asyncio.gather(*reloads)
        return (
            len(reloads),
            [(u.id, u.name) for u in h.store.users],
            h.store.get_user_by_id(5),
            h.store.get_user_by_id(6),
        )

    reloads, roster, ada, grace = run_as(api, ADA, actions)
    assert reloads == 1
    assert sorted(roster) == [(5, "Ada"), (6, "Grace")]
    assert ada.name == "Ada"
    assert grace.name == "Grace"


# ---- organizations & approvals ----


def test_update_organization_merges_and_refetches_events(api: FakeApiClient) -> None:
    api.events[0] = {**api.events[0], "orgName": "Robotics Guild"}

    async def actions(h):
        org = await h.store.update_organization(1, {"name": "Robotics Guild"})
        return org, h.store.get_event_by_id(10)

    org, event = run_as(api, ADA, actions)
    assert org.name == "Robotics Guild"
    assert org.followers == 3
    assert event.org_name == "Robotics Guild"
    assert api.count("get_events") == 2


def test_update_organization_survives_event_refresh_failure(api: FakeApiClient) -> None:
    async def actions(h):
        api.fail["get_events"] = ApiError("Network error: timeout")
        return await h.store.update_organization(1, {"president": "Linus"})

    org = run_as(api, ADA, actions)
    assert org.president == "Linus"


ADMIN = {"id": 1, "_id": "65f0adm1n", "name": "Root", "role": "admin"}


def test_admin_loads_pending_approvals_and_approves(api: FakeApiClient) -> None:
    api.organizations[1] = {**api.organizations[1], "status": "pending"}
    api.pending_approvals = [
        {"id": 7, "type": "organization", "name": "Chess Society", "orgId": 2}
    ]

    async def actions(h):
        loaded = h.store.pending_approvals
        await h.store.approve_organization(7)
        return loaded, h.store.pending_approvals, h.store.get_organization_by_id(2)

    loaded, after, org = run_as(api, ADMIN, actions)
    assert [a.status for a in loaded] == ["pending"]
    assert after[0].status == "approved"
    assert org.status == "active"


def test_reject_approval_records_details(api: FakeApiClient) -> None:
    api.pending_approvals = [{"id": 7, "type": "organization", "name": "Chess Society"}]

    async def actions(h):
        await h.store.reject_approval(
            7,
            "Incomplete documents",
            allow_resubmission=True,
            resubmission_deadline="2025-04-01",
        )
        return h.store.pending_approvals[0]

    approval = run_as(api, ADMIN, actions)
    assert approval.status == "rejected"
    assert approval.rejection_details.reason == "Incomplete documents"
    assert approval.rejection_details.allow_resubmission is True
    assert api.calls[-1] == (
        "reject_organization",
        (7, "Incomplete documents", True, "2025-04-01"),
    )


# ---- queries ----


def test_queries_return_safe_defaults(api: FakeApiClient) -> None:
    async def actions(h):
        return h.store

    store = run_as(api, ADA, actions)
    assert store.get_user_by_id(404) is None
    assert store.get_event_by_id(999) is None
    assert store.get_event_status(999) is None
    assert store.is_user_following_org("nobody", 1) is False
    assert store.is_user_joined_event("nobody", 11) is False
    assert [e.id for e in store.get_events_by_org_id(2)] == [11, 12]
    assert store.get_user_by_id("65f0c0ffee0006").name == "Grace"


def test_get_event_status_uses_store_clock(api: FakeApiClient) -> None:
    async def actions(h):
        return [h.store.get_event_status(i).status for i in (10, 11, 12)]

    assert run_as(api, ADA, actions) == ["upcoming", "ended", "started"]


# ---- authenticated bootstrap ----


def test_no_session_skips_authenticated_data(api: FakeApiClient) -> None:
    async def actions(h):
        return h.store.auth_data_loaded, len(h.store.events)

    loaded, event_count = run_as(api, None, actions)
    assert loaded is False
    assert event_count == 3
    assert api.count("get_students") == 0


def test_student_reload_keeps_local_preferences(api: FakeApiClient) -> None:
    cached = {**ADA, "bio": "Loves robots", "profileImage": "ada.png", "followedOrgs": [2]}
    received: list[dict] = []
    persist_session(cached)

    async def scenario():
        h = build_store(api)
        h.bus.subscribe(Signal.PROFILE_UPDATED, received.append)
        await h.store.start()
        user = h.store.get_user_by_id(5)
        await h.store.close()
        return user

    user = asyncio.run(scenario())
    assert user.followed_orgs == ()
    assert user.bio == "Loves robots"
    assert user.profile_image == "ada.png"
    assert stored_user()["bio"] == "Loves robots"
    assert stored_user()["followedOrgs"] == []
    assert received and received[-1]["user"]["bio"] == "Loves robots"


def test_bootstrap_failure_still_marks_loaded(api: FakeApiClient) -> None:
    api.fail["get_students"] = ApiError("Network error: down")

    async def actions(h):
        return h.store.auth_data_loaded, h.store.users

    loaded, users = run_as(api, ADA, actions)
    assert loaded is True
    assert [u.id for u in users] == [5]


def test_load_authenticated_data_runs_once(api: FakeApiClient) -> None:
    async def actions(h):
        await h.store.load_authenticated_data()
        await h.store.load_authenticated_data()

    run_as(api, ADA, actions)
    assert api.count("get_students") == 1


def test_public_load_failure_is_logged_not_raised(api: FakeApiClient) -> None:
    api.fail["get_organizations"] = ApiError("Network error: down")

    async def actions(h):
        return h.store.organizations, h.store.events

    orgs, events = run_as(api, None, actions)
    assert orgs == []
    assert len(events) == 3
