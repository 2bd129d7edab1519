"""
Redis cache for scraped link metadata.
Pasting the same product link twice should not hit the shop twice.
"""

import hashlib
import json
import logging
import os
import re
from typing import Any

import redis.asyncio as redis

from app.core.config import settings

logger = logging.getLogger("giftify.parse_cache")

_TRACKING_PARAMS = ("utm_source", "utm_medium", "utm_campaign", "utm_term", "utm_content", "ref", "fbclid", "gclid")


class ParseCache:
    """Redis-backed cache of link metadata keyed by normalized URL."""

    def __init__(self, redis_dsn: str | None = None, default_ttl: int | None = None):
        self._redis_dsn = settings.redis_dsn if redis_dsn is None else redis_dsn
        self._default_ttl = default_ttl or settings.link_metadata_cache_ttl_seconds
        self._redis: redis.Redis | None = None
        self._disabled = (os.getenv("TESTING") or "").strip().lower() in {"1", "true", "yes"}
        self._hits = 0
        self._misses = 0

    async def _get_redis(self) -> redis.Redis | None:
        if self._disabled or not self._redis_dsn:
            return None
        if self._redis is None:
            try:
                client = redis.from_url(self._redis_dsn, encoding="utf-8", decode_responses=True)
                await client.ping()
                self._redis = client
                logger.info("ParseCache connected redis=%s", self._redis_dsn)
            except (redis.RedisError, OSError) as e:
                logger.warning("ParseCache redis unavailable, caching disabled: %s", e)
                self._disabled = True
        return self._redis

    @staticmethod
    def normalize_url(url: str) -> str:
        url = url.rstrip("/")
        for param in _TRACKING_PARAMS:
            url = re.sub(rf"([?&]){param}=[^&]*&?", r"\1", url)
        return re.sub(r"[?&]+$", "", url)

    def _key(self, url: str) -> str:
        digest = hashlib.md5(self.normalize_url(url).encode()).hexdigest()
        return f"parse:{digest}"

    async def get(self, url: str) -> dict[str, Any] | None:
        try:
            client = await self._get_redis()
            if client is None:
                return None
            data = await client.get(self._key(url))
        except redis.RedisError as e:
            logger.warning("ParseCache get failed url=%s error=%s", url[:80], e)
            return None
        if data is None:
            self._misses += 1
            return None
        self._hits += 1
        return json.loads(data)

    async def set(self, url: str, data: dict[str, Any], ttl: int | None = None) -> bool:
        try:
            client = await self._get_redis()
            if client is None:
                return False
            await client.setex(self._key(url), ttl or self._default_ttl, json.dumps(data, ensure_ascii=False))
            return True
        except redis.RedisError as e:
            logger.warning("ParseCache set failed url=%s error=%s", url[:80], e)
            return False

    def get_stats(self) -> dict[str, Any]:
        total = self._hits + self._misses
        return {
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round(self._hits / total * 100, 2) if total else 0,
            "enabled": self._redis is not None,
        }


parse_cache = ParseCache()
