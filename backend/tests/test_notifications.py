"""
Notification fan-out, dedup, grouping, read/archive state and preferences.
"""
from datetime import date, timedelta
from uuid import uuid4

import pytest
from pydantic import ValidationError
from sqlalchemy import select

from app.api.helpers import next_birthday
from app.models.models import NotificationV2, utcnow
from app.notifications.builder import create_notification
from app.notifications.fanout import notify_friends
from app.notifications.registry import get_config, parse_metadata, types_for_category
from app.realtime.manager import NotificationConnectionManager, manager
from conftest import add_item, create_wishlist, notifications_of


class TestFanOut:
    def test_wishlist_created_reaches_friends_only(self, alice, bob, make_member):
        stranger = make_member("Mallory")
        wishlist = create_wishlist(alice, "Xmas", "friends")

        received = notifications_of(bob)
        assert [n["type"] for n in received] == ["wishlist_created"]
        assert received[0]["title"] == "New Wishlist"
        assert received[0]["message"] == "Alice created a new wishlist: Xmas"
        assert received[0]["action_url"] == f"/friends/{alice.id}/wishlists/{wishlist['id']}"
        assert notifications_of(stranger) == []
        assert notifications_of(alice) == []

    def test_private_wishlist_notifies_nobody(self, alice, bob):
        create_wishlist(alice, "Secret", "private")
        assert notifications_of(bob) == []

    def test_item_added_notifications_are_grouped(self, alice, bob):
        wishlist = create_wishlist(alice)
        add_item(alice, wishlist["id"], "First")
        add_item(alice, wishlist["id"], "Second")

        added = [n for n in notifications_of(bob) if n["type"] == "item_added"]
        assert len(added) == 1
        assert added[0]["group_count"] == 2
        assert added[0]["metadata"]["item_title"] == "Second"
        assert added[0]["group_key"] == f"item_added_{wishlist['id']}"

    def test_read_group_starts_a_new_one(self, alice, bob):
        wishlist = create_wishlist(alice)
        add_item(alice, wishlist["id"], "First")
        first = [n for n in notifications_of(bob) if n["type"] == "item_added"][0]
        bob.client.post(f"/notifications/{first['id']}/read")

        add_item(alice, wishlist["id"], "Second")
        added = [n for n in notifications_of(bob) if n["type"] == "item_added"]
        assert len(added) == 2

    def test_friend_request_is_deduplicated(self, alice, make_member):
        dave = make_member("Dave")
        res = dave.client.post("/friends/requests", json={"addressee_id": alice.id})
        assert res.status_code == 201
        request_id = res.json()["request"]["id"]

        res = dave.client.post("/friends/requests", json={"addressee_id": alice.id})
        assert res.status_code == 409
        assert res.json()["error"] == "Friend request already pending"

        requests = [n for n in notifications_of(alice) if n["type"] == "friend_request_received"]
        assert len(requests) == 1
        assert requests[0]["metadata"]["friendship_id"] == request_id

        incoming = alice.client.get("/friends/requests").json()["incoming"]
        assert [r["from"]["id"] for r in incoming] == [dave.id]

        assert alice.client.post(f"/friends/requests/{request_id}/accept").status_code == 200
        accepted = [n for n in notifications_of(dave) if n["type"] == "friend_request_accepted"]
        assert len(accepted) == 1
        assert dave.id in [f["id"] for f in alice.client.get("/friends").json()]

    def test_declined_request_can_be_resent(self, alice, make_member):
        dave = make_member("Dave")
        request_id = dave.client.post("/friends/requests", json={"addressee_id": alice.id}).json()["request"]["id"]
        assert alice.client.post(f"/friends/requests/{request_id}/decline").status_code == 200

        res = alice.client.post("/friends/requests", json={"addressee_id": dave.id})
        assert res.status_code == 201
        assert res.json()["request"]["id"] == request_id
        assert dave.client.get("/friends/requests").json()["incoming"][0]["from"]["id"] == alice.id

    def test_disabled_category_is_skipped(self, alice, bob):
        res = bob.client.put("/notifications/preferences/wishlist_activity", json={"enabled": False})
        assert res.json() == {"success": True, "category_id": "wishlist_activity", "enabled": False}

        create_wishlist(alice)
        assert notifications_of(bob) == []


class TestNotificationState:
    def test_unread_count_and_read_all(self, alice, bob):
        create_wishlist(alice, "One")
        create_wishlist(alice, "Two")
        assert bob.client.get("/notifications/unread-count").json() == {"count": 2}

        res = bob.client.post("/notifications/read-all")
        assert res.json() == {"success": True, "count": 2}
        assert bob.client.get("/notifications/unread-count").json() == {"count": 0}

    def test_mark_unread(self, alice, bob):
        create_wishlist(alice)
        notification = notifications_of(bob)[0]
        bob.client.post(f"/notifications/{notification['id']}/read")
        assert notifications_of(bob)[0]["read_at"] is not None

        bob.client.post(f"/notifications/{notification['id']}/unread")
        assert notifications_of(bob)[0]["read_at"] is None

    def test_archive_and_unarchive(self, alice, bob):
        create_wishlist(alice)
        notification = notifications_of(bob)[0]
        assert notification["expires_at"] is not None

        bob.client.post(f"/notifications/{notification['id']}/archive")
        assert notifications_of(bob) == []
        archived = notifications_of(bob, "archived")
        assert [n["id"] for n in archived] == [notification["id"]]

        bob.client.post(f"/notifications/{notification['id']}/unarchive")
        restored = notifications_of(bob)
        assert restored[0]["status"] == "inbox"
        assert restored[0]["expires_at"] is None

    def test_archive_read(self, alice, bob):
        create_wishlist(alice, "One")
        create_wishlist(alice, "Two")
        first = notifications_of(bob)[-1]
        bob.client.post(f"/notifications/{first['id']}/read")

        assert bob.client.post("/notifications/archive-read").json() == {"success": True, "count": 1}
        assert len(notifications_of(bob)) == 1
        assert len(notifications_of(bob, "archived")) == 1

    def test_cannot_touch_someone_elses_notification(self, alice, bob, carol):
        create_wishlist(alice)
        notification = notifications_of(bob)[0]
        res = carol.client.post(f"/notifications/{notification['id']}/read")
        assert res.status_code == 404
        assert res.json()["error"] == "Notification not found"

    def test_preferences_are_listed_lazily(self, bob):
        prefs = bob.client.get("/notifications/preferences").json()
        assert [p["category_id"] for p in prefs] == [
            "social",
            "wishlist_activity",
            "gift_claims",
            "ownership_flags",
            "reminders",
            "collaboration",
        ]
        assert all(p["enabled"] for p in prefs)

    def test_unknown_preference_category(self, bob):
        res = bob.client.put("/notifications/preferences/spam", json={"enabled": False})
        assert res.status_code == 404
        assert res.json()["error"] == "Unknown notification category"


class TestBirthdays:
    def test_birthday_reminders_once_per_year(self, alice, bob):
        soon = utcnow().date() + timedelta(days=3)
        bob.client.put("/profile", json={"birthday": soon.replace(year=1992).isoformat()})

        res = alice.client.post("/notifications/birthday-reminders")
        assert res.json() == {"success": True, "count": 1}
        res = alice.client.post("/notifications/birthday-reminders")
        assert res.json() == {"success": True, "count": 0}

        reminders = [n for n in notifications_of(alice) if n["type"] == "birthday_reminder"]
        assert reminders[0]["message"] == "Bob's birthday is in 3 days"

    def test_upcoming_birthdays_on_dashboard(self, alice, bob, carol):
        today = utcnow().date()
        bob.client.put("/profile", json={"birthday": (today + timedelta(days=10)).replace(year=1996).isoformat()})
        carol.client.put("/profile", json={"birthday": (today + timedelta(days=2)).replace(year=1988).isoformat()})

        upcoming = alice.client.get("/dashboard/birthdays").json()
        assert [b["display_name"] for b in upcoming] == ["Carol", "Bob"]
        assert upcoming[0]["days_until"] == 2

    def test_next_birthday_wraps_and_handles_leap_day(self):
        assert next_birthday(date(1990, 1, 5), date(2026, 12, 30)) == (date(2027, 1, 5), 6)
        assert next_birthday(date(1990, 12, 30), date(2026, 12, 30)) == (date(2026, 12, 30), 0)
        assert next_birthday(date(1992, 2, 29), date(2027, 2, 1)) == (date(2027, 2, 28), 27)


class TestRegistry:
    def test_metadata_is_validated(self):
        with pytest.raises(ValidationError):
            parse_metadata("friend_request_received", {"requester_name": "Bob"})

    def test_builder_rejects_bad_metadata(self):
        with pytest.raises(ValidationError):
            create_notification("wishlist_created", {"wishlist_id": "not-a-uuid"})

    def test_type_config(self):
        config = get_config("friend_request_accepted")
        assert config.category_id == "social"
        assert config.auto_archive_after_days == 7

    def test_types_for_category(self):
        assert types_for_category("social") == ["friend_request_received", "friend_request_accepted"]
        assert "collaborator_left" in types_for_category("collaboration")
        assert types_for_category("nope") == []


def _accepted_meta(accepter) -> dict:
    return {"friendship_id": str(uuid4()), "accepter_id": accepter.id, "accepter_name": accepter.display_name}


class FakeSocket:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: list[dict] = []

    async def send_json(self, message):
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(message)


@pytest.mark.anyio
class TestBuilder:
    async def test_send_without_recipients(self, alice, db_session):
        result = await create_notification("friend_request_accepted", _accepted_meta(alice)).send(db_session)
        assert result == {"success": False, "count": 0, "error": "No user IDs provided"}

    async def test_overrides_are_stored(self, alice, bob, db_session):
        result = await (
            create_notification("friend_request_accepted", _accepted_meta(alice))
            .to(bob.id)
            .with_group_key("custom-group")
            .with_priority(1)
            .with_action_url("/somewhere")
            .send(db_session)
        )
        assert result == {"success": True, "count": 1}

        rows = (await db_session.execute(select(NotificationV2).where(NotificationV2.user_id == bob.id))).scalars().all()
        assert len(rows) == 1
        assert rows[0].group_key == "custom-group"
        assert rows[0].priority == 1
        assert rows[0].action_url == "/somewhere"

    async def test_notify_friends(self, alice, bob, carol, db_session):
        result = await notify_friends(db_session, alice.id, "friend_request_accepted", _accepted_meta(alice))
        assert result == {"success": True, "count": 2}

        recipients = (
            await db_session.execute(
                select(NotificationV2.user_id).where(NotificationV2.type == "friend_request_accepted")
            )
        ).scalars().all()
        assert sorted(recipients) == sorted([bob.id, carol.id])

    async def test_friendless_user_gets_nothing(self, make_member, db_session):
        loner = make_member("Loner")
        result = await notify_friends(db_session, loner.id, "friend_request_accepted", _accepted_meta(loner))
        assert result == {"success": True, "count": 0}

    async def test_pushes_to_open_sockets(self, alice, bob, db_session):
        socket = FakeSocket()
        await manager.connect(bob.id, socket)
        try:
            assert manager.is_connected(bob.id)
            await create_notification("friend_request_accepted", _accepted_meta(alice)).to(bob.id).send(db_session)
        finally:
            manager.disconnect(bob.id, socket)

        assert not manager.is_connected(bob.id)
        assert len(socket.sent) == 1
        assert socket.sent[0]["type"] == "notification"
        assert socket.sent[0]["notification"]["type"] == "friend_request_accepted"


@pytest.mark.anyio
async def test_dead_sockets_are_dropped():
    connections = NotificationConnectionManager()
    healthy, dead = FakeSocket(), FakeSocket(fail=True)
    await connections.connect("u1", healthy)
    await connections.connect("u1", dead)

    assert await connections.send_to_user("u1", {"type": "ping"}) == 1
    assert connections.is_connected("u1")
    assert await connections.send_to_user("u1", {"type": "ping"}) == 1
    assert healthy.sent == [{"type": "ping"}, {"type": "ping"}]
    assert await connections.send_to_user("nobody", {"type": "ping"}) == 0
