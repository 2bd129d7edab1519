"""
Wishlists: CRUD, privacy, archiving, items, collaborators and the dashboard.
"""
from datetime import datetime

import anyio
from fastapi.testclient import TestClient
from sqlalchemy import update

from app.main import app
from app.models.models import WishlistItem
from conftest import add_item, create_wishlist


class TestWishlistCrud:
    def test_create_and_list(self, alice):
        wishlist = create_wishlist(alice, "Birthday", "friends")
        assert wishlist["name"] == "Birthday"
        assert wishlist["privacy"] == "friends"
        assert wishlist["is_archived"] is False

        listed = alice.client.get("/wishlists").json()
        assert [w["id"] for w in listed] == [wishlist["id"]]
        assert listed[0]["item_count"] == 0
        assert listed[0]["is_collaborator"] is False

    def test_create_requires_name(self, alice):
        res = alice.client.post("/wishlists", json={"name": "   "})
        assert res.status_code == 422
        assert res.json()["error"] == "Name is required"

    def test_create_rejects_unknown_privacy(self, alice):
        res = alice.client.post("/wishlists", json={"name": "Xmas", "privacy": "everyone"})
        assert res.status_code == 422
        assert res.json()["error"] == "Invalid privacy setting"

    def test_create_unauthenticated(self):
        res = TestClient(app).post("/wishlists", json={"name": "Xmas"})
        assert res.status_code == 401

    def test_update_and_delete(self, alice):
        wishlist = create_wishlist(alice)
        res = alice.client.put(
            f"/wishlists/{wishlist['id']}",
            json={"name": "Wedding", "description": "  ", "privacy": "private"},
        )
        assert res.status_code == 200
        updated = res.json()["wishlist"]
        assert updated["name"] == "Wedding"
        assert updated["description"] is None
        assert updated["privacy"] == "private"

        add_item(alice, wishlist["id"])
        assert alice.client.delete(f"/wishlists/{wishlist['id']}").status_code == 200
        assert alice.client.get(f"/wishlists/{wishlist['id']}").status_code == 404

    def test_only_owner_can_edit(self, alice, bob):
        wishlist = create_wishlist(alice)
        res = bob.client.put(f"/wishlists/{wishlist['id']}", json={"name": "Mine now"})
        assert res.status_code == 403
        assert res.json()["error"] == "Not authorized"
        assert bob.client.delete(f"/wishlists/{wishlist['id']}").status_code == 403


class TestPrivacy:
    def test_friend_sees_friends_wishlist(self, alice, bob):
        wishlist = create_wishlist(alice, privacy="friends")
        res = bob.client.get(f"/wishlists/{wishlist['id']}")
        assert res.status_code == 200
        assert res.json()["owner"]["id"] == alice.id
        assert res.json()["is_owner"] is False

    def test_private_wishlist_hidden_from_friends(self, alice, bob):
        wishlist = create_wishlist(alice, privacy="private")
        res = bob.client.get(f"/wishlists/{wishlist['id']}")
        assert res.status_code == 404
        assert res.json()["error"] == "Wishlist not found"

    def test_stranger_cannot_see_friends_wishlist(self, alice, make_member):
        stranger = make_member("Mallory")
        wishlist = create_wishlist(alice, privacy="friends")
        assert stranger.client.get(f"/wishlists/{wishlist['id']}").status_code == 404

    def test_selected_friends(self, alice, bob, carol):
        wishlist = create_wishlist(alice, privacy="selected_friends")
        res = alice.client.put(f"/wishlists/{wishlist['id']}/selected-friends", json={"friend_ids": [bob.id]})
        assert res.status_code == 200
        assert res.json() == {"success": True, "count": 1}

        assert bob.client.get(f"/wishlists/{wishlist['id']}").status_code == 200
        assert carol.client.get(f"/wishlists/{wishlist['id']}").status_code == 404

        selectable = alice.client.get(f"/wishlists/{wishlist['id']}/selected-friends").json()
        assert {f["display_name"]: f["is_selected"] for f in selectable} == {"Bob": True, "Carol": False}
        assert alice.client.get(f"/wishlists/{wishlist['id']}/selected-friends/count").json() == {"count": 1}

    def test_selected_friends_requires_privacy(self, alice, bob):
        wishlist = create_wishlist(alice, privacy="friends")
        res = alice.client.put(f"/wishlists/{wishlist['id']}/selected-friends", json={"friend_ids": [bob.id]})
        assert res.status_code == 400
        assert res.json()["error"] == "Wishlist privacy must be set to 'selected_friends'"

    def test_selected_friends_must_be_friends(self, alice, make_member):
        stranger = make_member("Mallory")
        wishlist = create_wishlist(alice, privacy="selected_friends")
        res = alice.client.put(f"/wishlists/{wishlist['id']}/selected-friends", json={"friend_ids": [stranger.id]})
        assert res.status_code == 400
        assert res.json()["error"] == "Some selected users are not your friends"

    def test_leaving_selected_friends_clears_selection(self, alice, bob):
        wishlist = create_wishlist(alice, privacy="selected_friends")
        alice.client.put(f"/wishlists/{wishlist['id']}/selected-friends", json={"friend_ids": [bob.id]})
        alice.client.put(f"/wishlists/{wishlist['id']}", json={"name": "Birthday", "privacy": "friends"})
        alice.client.put(f"/wishlists/{wishlist['id']}", json={"name": "Birthday", "privacy": "selected_friends"})

        assert alice.client.get(f"/wishlists/{wishlist['id']}/selected-friends/count").json() == {"count": 0}
        assert bob.client.get(f"/wishlists/{wishlist['id']}").status_code == 404


class TestArchive:
    def test_archive_hides_from_friends_and_keeps_items(self, alice, bob):
        wishlist = create_wishlist(alice)
        add_item(alice, wishlist["id"], "Book")

        res = alice.client.post(f"/wishlists/{wishlist['id']}/archive")
        assert res.status_code == 200

        assert alice.client.get("/wishlists").json() == []
        archived = alice.client.get("/wishlists", params={"archived": "true"}).json()
        assert [w["id"] for w in archived] == [wishlist["id"]]
        assert archived[0]["item_count"] == 1

        assert bob.client.get(f"/wishlists/{wishlist['id']}").status_code == 404
        assert bob.client.get("/dashboard/feed").json()["items"] == []
        assert bob.client.get(f"/friends/{alice.id}/wishlists").json() == []

        owner_view = alice.client.get(f"/wishlists/{wishlist['id']}").json()
        assert [i["title"] for i in owner_view["items"]] == ["Book"]

    def test_archive_twice_and_unarchive(self, alice):
        wishlist = create_wishlist(alice)
        alice.client.post(f"/wishlists/{wishlist['id']}/archive")
        res = alice.client.post(f"/wishlists/{wishlist['id']}/archive")
        assert res.status_code == 400
        assert res.json()["error"] == "Wishlist is already archived"

        assert alice.client.post(f"/wishlists/{wishlist['id']}/unarchive").status_code == 200
        res = alice.client.post(f"/wishlists/{wishlist['id']}/unarchive")
        assert res.status_code == 400
        assert res.json()["error"] == "Wishlist is not archived"
        assert [w["id"] for w in alice.client.get("/wishlists").json()] == [wishlist["id"]]


class TestItems:
    def test_add_update_delete_item(self, alice):
        wishlist = create_wishlist(alice)
        item = add_item(alice, wishlist["id"], "Headphones", "199,99")
        assert item["price"] == "199,99"
        assert item["is_purchased"] is False

        res = alice.client.put(
            f"/wishlists/{wishlist['id']}/items/{item['id']}",
            json={"title": "Wireless headphones", "price": "150"},
        )
        assert res.status_code == 200
        assert res.json()["item"]["title"] == "Wireless headphones"

        res = alice.client.post(f"/wishlists/{wishlist['id']}/items/{item['id']}/purchased", json={"purchased": True})
        assert res.json() == {"success": True, "is_purchased": True}

        assert alice.client.delete(f"/wishlists/{wishlist['id']}/items/{item['id']}").status_code == 200
        assert alice.client.get(f"/wishlists/{wishlist['id']}").json()["items"] == []

    def test_item_validation(self, alice):
        wishlist = create_wishlist(alice)
        res = alice.client.post(f"/wishlists/{wishlist['id']}/items", json={"url": "", "title": "Thing"})
        assert res.status_code == 422
        assert res.json()["error"] == "URL is required"

        res = alice.client.post(
            f"/wishlists/{wishlist['id']}/items",
            json={"url": "https://shop.example.com", "title": "Thing", "price": "cheap"},
        )
        assert res.status_code == 422
        assert res.json()["error"] == "Price must be a number"

        for price in ("NaN", "Infinity", "-inf", "-5"):
            res = alice.client.post(
                f"/wishlists/{wishlist['id']}/items",
                json={"url": "https://shop.example.com", "title": "Thing", "price": price},
            )
            assert res.status_code == 422, price
            assert res.json()["error"] == "Price must be a number"

    def test_friend_cannot_add_items(self, alice, bob):
        wishlist = create_wishlist(alice)
        res = bob.client.post(
            f"/wishlists/{wishlist['id']}/items",
            json={"url": "https://shop.example.com", "title": "Sneaky"},
        )
        assert res.status_code == 403

    def test_received_fulfils_claims(self, alice, bob):
        wishlist = create_wishlist(alice)
        item = add_item(alice, wishlist["id"])
        assert bob.client.post(f"/wishlists/{wishlist['id']}/items/{item['id']}/claim").status_code == 201

        res = alice.client.post(f"/wishlists/{wishlist['id']}/items/{item['id']}/received", json={"received": True})
        assert res.status_code == 200
        fulfilled = res.json()["fulfilled_claims"]
        assert len(fulfilled) == 1
        assert fulfilled[0]["claim_type"] == "solo"
        assert fulfilled[0]["claimer_ids"] == [bob.id]

        history = bob.client.get("/claims/history").json()
        assert history["total_fulfilled"] == 1
        assert history["total_active"] == 0


class TestCollaborators:
    def test_collaborator_can_edit_and_leave(self, alice, bob):
        wishlist = create_wishlist(alice)
        res = alice.client.post(f"/wishlists/{wishlist['id']}/collaborators", json={"friend_id": bob.id})
        assert res.status_code == 201

        assert alice.client.get(f"/wishlists/{wishlist['id']}").json()["is_joint"] is True
        bob_lists = bob.client.get("/wishlists").json()
        assert [(w["id"], w["is_collaborator"]) for w in bob_lists] == [(wishlist["id"], True)]

        add_item(bob, wishlist["id"], "Tent")
        collaborators = alice.client.get(f"/wishlists/{wishlist['id']}/collaborators").json()
        assert [c["user"]["id"] for c in collaborators] == [bob.id]

        assert bob.client.post(f"/wishlists/{wishlist['id']}/leave").status_code == 200
        assert alice.client.get(f"/wishlists/{wishlist['id']}").json()["is_joint"] is False
        left = [n for n in alice.client.get("/notifications").json() if n["type"] == "collaborator_left"]
        assert len(left) == 1

    def test_collaborator_errors(self, alice, bob, make_member):
        stranger = make_member("Mallory")
        wishlist = create_wishlist(alice)

        res = alice.client.post(f"/wishlists/{wishlist['id']}/collaborators", json={"friend_id": alice.id})
        assert res.status_code == 400
        res = alice.client.post(f"/wishlists/{wishlist['id']}/collaborators", json={"friend_id": stranger.id})
        assert res.json()["error"] == "Can only add friends as collaborators"

        alice.client.post(f"/wishlists/{wishlist['id']}/collaborators", json={"friend_id": bob.id})
        res = alice.client.post(f"/wishlists/{wishlist['id']}/collaborators", json={"friend_id": bob.id})
        assert res.status_code == 409
        assert res.json()["error"] == "This friend is already a collaborator"

        res = alice.client.post(f"/wishlists/{wishlist['id']}/leave")
        assert res.status_code == 400
        assert res.json()["error"] == "Primary owner cannot leave. Transfer ownership or delete the wishlist."

    def test_convert_to_joint(self, alice, bob, carol):
        wishlist = create_wishlist(alice)
        res = alice.client.post(f"/wishlists/{wishlist['id']}/convert-to-joint", json={"friend_ids": []})
        assert res.status_code == 400
        assert res.json()["error"] == "Must add at least one collaborator"

        res = alice.client.post(
            f"/wishlists/{wishlist['id']}/convert-to-joint",
            json={"friend_ids": [bob.id, carol.id]},
        )
        assert res.json() == {"success": True, "count": 2}
        invited = [n for n in bob.client.get("/notifications").json() if n["type"] == "collaborator_invited"]
        assert len(invited) == 1
        assert invited[0]["metadata"]["wishlist_id"] == wishlist["id"]

    def test_collaborator_cannot_claim(self, alice, bob):
        wishlist = create_wishlist(alice)
        item = add_item(alice, wishlist["id"])
        alice.client.post(f"/wishlists/{wishlist['id']}/collaborators", json={"friend_id": bob.id})

        res = bob.client.post(f"/wishlists/{wishlist['id']}/items/{item['id']}/claim")
        assert res.status_code == 403
        assert bob.client.get(f"/wishlists/{wishlist['id']}/claims").json() == []


class TestDashboard:
    def test_feed_shows_friends_items_newest_first(self, alice, bob):
        wishlist = create_wishlist(alice)
        for title in ("One", "Two", "Three"):
            add_item(alice, wishlist["id"], title)

        page = bob.client.get("/dashboard/feed", params={"limit": 2}).json()
        assert [i["title"] for i in page["items"]] == ["Three", "Two"]
        assert page["has_more"] is True
        assert page["items"][0]["owner"]["id"] == alice.id

        rest = bob.client.get("/dashboard/feed", params={"limit": 2, "cursor": page["next_cursor"]}).json()
        assert [i["title"] for i in rest["items"]] == ["One"]
        assert rest["has_more"] is False
        assert rest["next_cursor"] is None

    def test_feed_pages_through_items_sharing_a_timestamp(self, alice, bob, sync_db_override):
        wishlist = create_wishlist(alice)
        titles = ["One", "Two", "Three", "Four", "Five"]
        for title in titles:
            add_item(alice, wishlist["id"], title)

        async def _same_timestamp():
            async with sync_db_override() as session:
                await session.execute(update(WishlistItem).values(created_at=datetime(2026, 1, 1, 12, 0)))
                await session.commit()

        anyio.run(_same_timestamp)

        seen, cursor = [], None
        for _ in range(len(titles) + 1):
            params = {"limit": 2, **({"cursor": cursor} if cursor else {})}
            page = bob.client.get("/dashboard/feed", params=params).json()
            seen += [i["title"] for i in page["items"]]
            if not page["has_more"]:
                break
            cursor = page["next_cursor"]
        assert sorted(seen) == sorted(titles)

    def test_feed_rejects_bad_cursor(self, alice, bob):
        res = bob.client.get("/dashboard/feed", params={"cursor": "yesterday"})
        assert res.status_code == 400
        assert res.json()["error"] == "Invalid cursor"

    def test_feed_skips_private_wishlists(self, alice, bob):
        wishlist = create_wishlist(alice, privacy="private")
        add_item(alice, wishlist["id"])
        assert bob.client.get("/dashboard/feed").json()["items"] == []

    def test_stats(self, alice, bob):
        wishlist = create_wishlist(alice)
        item = add_item(alice, wishlist["id"])
        add_item(alice, wishlist["id"], "Scarf")
        bob.client.post(f"/wishlists/{wishlist['id']}/items/{item['id']}/claim")

        assert alice.client.get("/dashboard/stats").json() == {
            "total_wishlists": 1,
            "total_items": 2,
            "friends_count": 1,
            "claimed_items_count": 0,
        }
        assert bob.client.get("/dashboard/stats").json()["claimed_items_count"] == 1

    def test_wishlists_preview(self, alice):
        for name in ("A", "B", "C", "D"):
            create_wishlist(alice, name)
        preview = alice.client.get("/dashboard/wishlists-preview").json()
        assert len(preview) == 3

    def test_friend_wishlists_item_counts(self, alice, bob):
        wishlist = create_wishlist(alice)
        item = add_item(alice, wishlist["id"])
        add_item(alice, wishlist["id"], "Scarf")
        alice.client.post(f"/wishlists/{wishlist['id']}/items/{item['id']}/purchased", json={"purchased": True})

        lists = bob.client.get(f"/friends/{alice.id}/wishlists").json()
        assert lists[0]["item_count"] == 1
        assert lists[0]["is_current_user_collaborator"] is False
