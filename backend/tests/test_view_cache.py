"""
Per-user view cache and the sliding-window rate limiter.
"""
import pytest
from fastapi.testclient import TestClient

from app.core.config import settings
from app.core.rate_limit import InMemoryRateLimiter, limiter
from app.core.view_cache import ViewCache, view_cache
from app.main import app
from conftest import add_item, create_wishlist


@pytest.mark.anyio
class TestViewCache:
    async def test_memory_fallback_round_trip(self):
        cache = ViewCache(redis_dsn="", enabled=True, memory_fallback=True)
        assert await cache.get("u1", "dashboard_stats") is None
        assert await cache.set("u1", "dashboard_stats", {"total_wishlists": 3}) is True
        assert await cache.get("u1", "dashboard_stats") == {"total_wishlists": 3}

        stats = cache.get_stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["memory_entries"] == 1

    async def test_invalidate_users_drops_every_view(self):
        cache = ViewCache(redis_dsn="", enabled=True, memory_fallback=True)
        await cache.set("u1", "dashboard_stats", {"a": 1})
        await cache.set("u1", "wishlists_active", [])
        await cache.set("u2", "dashboard_stats", {"a": 2})

        assert await cache.invalidate_users("u1") == 2
        assert await cache.get("u1", "wishlists_active") is None
        assert await cache.get("u2", "dashboard_stats") == {"a": 2}

    async def test_disabled_cache_stores_nothing(self):
        cache = ViewCache(redis_dsn="", enabled=False, memory_fallback=True)
        assert await cache.set("u1", "dashboard_stats", {"a": 1}) is False
        assert await cache.get("u1", "dashboard_stats") is None

    async def test_no_fallback_under_tests(self):
        cache = ViewCache(redis_dsn="", enabled=True)
        assert await cache.set("u1", "dashboard_stats", {"a": 1}) is False
        assert cache.get_stats()["memory_fallback"] is False


class TestRateLimiter:
    def test_sliding_window(self):
        rl = InMemoryRateLimiter()
        assert rl.hit("login:ip:1", 2, 60) == (True, 0)
        assert rl.hit("login:ip:1", 2, 60) == (True, 0)
        allowed, retry_after = rl.hit("login:ip:1", 2, 60)
        assert allowed is False
        assert 1 <= retry_after <= 61
        assert rl.hit("login:ip:2", 2, 60) == (True, 0)

        rl.reset()
        assert rl.hit("login:ip:1", 2, 60) == (True, 0)

    def test_eviction_keeps_table_bounded(self):
        rl = InMemoryRateLimiter(max_entries=5)
        for i in range(100):
            rl.hit(f"k{i}", 5, 60)
        assert len(rl._windows) <= 5

    def test_login_is_limited(self):
        settings.rate_limit_enabled = True
        previous = settings.rate_limit_login_requests
        settings.rate_limit_login_requests = 2
        limiter.reset()
        try:
            client = TestClient(app)
            payload = {"email": "nobody@giftify.app", "password": "wrong-pass"}
            assert client.post("/auth/login", json=payload).status_code == 400
            assert client.post("/auth/login", json=payload).status_code == 400
            res = client.post("/auth/login", json=payload)
            assert res.status_code == 429
            assert int(res.headers["Retry-After"]) >= 1
            assert res.json()["error"].startswith("Too many attempts")
        finally:
            settings.rate_limit_enabled = False
            settings.rate_limit_login_requests = previous
            limiter.reset()


@pytest.fixture
def cached_views(monkeypatch):
    monkeypatch.setattr(view_cache, "_allow_memory_fallback", True)
    view_cache._memory.clear()
    yield view_cache
    view_cache._memory.clear()


def _stats(member) -> dict:
    res = member.client.get("/dashboard/stats")
    assert res.status_code == 200, res.text
    return res.json()


class TestStatsInvalidation:
    def test_invite_signup_refreshes_inviter(self, alice, make_member, cached_views):
        assert _stats(alice)["friends_count"] == 0
        make_member("Dave", friend_of=alice)
        assert _stats(alice)["friends_count"] == 1

    def test_deleting_item_refreshes_claimer(self, alice, bob, cached_views):
        wishlist = create_wishlist(alice)
        item = add_item(alice, wishlist["id"])
        bob.client.post(f"/wishlists/{wishlist['id']}/items/{item['id']}/claim")
        assert _stats(bob)["claimed_items_count"] == 1

        alice.client.delete(f"/wishlists/{wishlist['id']}/items/{item['id']}")
        assert _stats(bob)["claimed_items_count"] == 0

    def test_deleting_wishlist_refreshes_claimers(self, alice, bob, carol, cached_views):
        wishlist = create_wishlist(alice)
        solo = add_item(alice, wishlist["id"], "Scarf")
        shared = add_item(alice, wishlist["id"], "Bike")
        bob.client.post(f"/wishlists/{wishlist['id']}/items/{solo['id']}/claim")
        carol.client.post(
            f"/wishlists/{wishlist['id']}/items/{shared['id']}/split-claims", json={"target_participants": 3}
        )
        assert _stats(bob)["claimed_items_count"] == 1
        assert _stats(carol)["claimed_items_count"] == 1

        assert alice.client.delete(f"/wishlists/{wishlist['id']}").status_code == 200
        assert _stats(bob)["claimed_items_count"] == 0
        assert _stats(carol)["claimed_items_count"] == 0
