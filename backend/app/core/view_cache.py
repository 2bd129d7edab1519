import asyncio
import json
import logging
import os
import time
from typing import Any

import redis.asyncio as redis

from app.core.config import settings


logger = logging.getLogger("giftify.view_cache")

# Views cached per user; every mutation that can change one of them
# invalidates the whole set for the affected users.
VIEW_NAMES = ("dashboard_stats", "wishlists_active", "wishlists_archived")


class ViewCache:
    """Per-user JSON view cache backed by redis with an in-process fallback."""

    def __init__(
        self,
        redis_dsn: str | None = None,
        ttl: int | None = None,
        enabled: bool | None = None,
        memory_fallback: bool | None = None,
    ) -> None:
        if memory_fallback is None:
            is_testing = (os.getenv("TESTING") or "").strip().lower() in {"1", "true", "yes"}
            memory_fallback = not is_testing
        self._allow_memory_fallback = memory_fallback
        self._redis_dsn = settings.redis_dsn if redis_dsn is None else redis_dsn
        self._ttl = ttl or settings.view_cache_ttl_seconds
        self._enabled = settings.view_cache_enabled if enabled is None else enabled
        self._redis: redis.Redis | None = None
        self._connect_lock = asyncio.Lock()
        self._cooldown_until = 0.0
        self._connect_failures = 0
        self._memory: dict[str, tuple[float, str]] = {}
        self._memory_max = 1000
        self._hits = 0
        self._misses = 0
        self._errors = 0

    @staticmethod
    def _key(user_id: str, view: str) -> str:
        return f"giftify:view:{user_id}:{view}"

    def _mark_redis_failed(self, exc: Exception) -> None:
        self._redis = None
        self._connect_failures += 1
        cooldown = min(60.0, 2.0 ** min(self._connect_failures, 6))
        self._cooldown_until = time.monotonic() + cooldown
        logger.warning(
            "ViewCache redis unavailable failures=%s cooldown_s=%.0f error=%s",
            self._connect_failures,
            cooldown,
            exc,
        )

    async def _get_redis(self) -> redis.Redis | None:
        if not self._redis_dsn or not self._redis_dsn.strip():
            return None
        if self._redis is not None:
            return self._redis
        if time.monotonic() < self._cooldown_until:
            return None
        async with self._connect_lock:
            if self._redis is not None or time.monotonic() < self._cooldown_until:
                return self._redis
            try:
                client = redis.from_url(
                    self._redis_dsn,
                    encoding="utf-8",
                    decode_responses=True,
                    socket_connect_timeout=2,
                    socket_timeout=2,
                )
                await client.ping()
                self._redis = client
                self._connect_failures = 0
                logger.info("ViewCache connected redis=%s", self._redis_dsn)
            except (redis.RedisError, OSError) as exc:
                self._mark_redis_failed(exc)
        return self._redis

    def _mem_get(self, key: str) -> str | None:
        entry = self._memory.get(key)
        if entry is None:
            return None
        expires_at, payload = entry
        if expires_at <= time.monotonic():
            self._memory.pop(key, None)
            return None
        return payload

    def _mem_set(self, key: str, payload: str) -> None:
        now = time.monotonic()
        self._memory[key] = (now + self._ttl, payload)
        if len(self._memory) <= self._memory_max:
            return
        for stale in [k for k, (exp, _) in self._memory.items() if exp <= now]:
            self._memory.pop(stale, None)
        overflow = len(self._memory) - self._memory_max
        for k in list(self._memory)[:max(0, overflow)]:
            self._memory.pop(k, None)

    async def get(self, user_id: str, view: str) -> Any | None:
        if not self._enabled:
            return None
        key = self._key(user_id, view)
        try:
            client = await self._get_redis()
            if client is None:
                data = self._mem_get(key) if self._allow_memory_fallback else None
            else:
                data = await client.get(key)
        except redis.RedisError as exc:
            self._errors += 1
            self._mark_redis_failed(exc)
            return None
        if data is None:
            self._misses += 1
            return None
        self._hits += 1
        return json.loads(data)

    async def set(self, user_id: str, view: str, payload: Any) -> bool:
        if not self._enabled:
            return False
        key = self._key(user_id, view)
        value = json.dumps(payload, ensure_ascii=False, default=str)
        try:
            client = await self._get_redis()
            if client is None:
                if not self._allow_memory_fallback:
                    return False
                self._mem_set(key, value)
                return True
            await client.setex(key, self._ttl, value)
            return True
        except redis.RedisError as exc:
            self._errors += 1
            self._mark_redis_failed(exc)
            return False

    async def invalidate_users(self, *user_ids: str) -> int:
        keys = [self._key(user_id, view) for user_id in set(user_ids) if user_id for view in VIEW_NAMES]
        if not keys:
            return 0
        deleted = sum(1 for key in keys if self._memory.pop(key, None) is not None)
        try:
            client = await self._get_redis()
            if client is not None:
                deleted += int(await client.delete(*keys))
        except redis.RedisError as exc:
            self._errors += 1
            self._mark_redis_failed(exc)
        return deleted

    def get_stats(self) -> dict[str, Any]:
        total = self._hits + self._misses
        return {
            "hits": self._hits,
            "misses": self._misses,
            "errors": self._errors,
            "hit_rate": round(self._hits / total * 100, 2) if total else 0,
            "redis_connected": self._redis is not None,
            "memory_fallback": self._allow_memory_fallback,
            "memory_entries": len(self._memory),
        }


view_cache = ViewCache()


async def invalidate_views(*user_ids: str) -> None:
    """Drop cached views for the given users; failures are only logged."""
    try:
        await view_cache.invalidate_users(*user_ids)
    except Exception:
        logger.exception("Failed to invalidate views users=%s", user_ids)
