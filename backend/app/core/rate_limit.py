"""Sliding-window rate limiting for the unauthenticated entry points.

Signup, login and invite-code validation are the only endpoints a stranger
can hit repeatedly, so they are the only ones guarded.
"""

from collections import deque
from dataclasses import dataclass, field
import logging
import time

from fastapi import HTTPException, Request, status

from app.core.config import settings


logger = logging.getLogger("giftify.rate_limit")

MAX_ENTRIES = 10000
CLEANUP_INTERVAL = 100


@dataclass
class _Window:
    hits: deque[float] = field(default_factory=deque)
    last_access: float = field(default_factory=time.monotonic)


class InMemoryRateLimiter:
    """Per-key sliding window kept in process memory."""

    def __init__(self, max_entries: int = MAX_ENTRIES):
        self._windows: dict[str, _Window] = {}
        self._max_entries = max_entries
        self._checks = 0

    def _prune(self, max_age_seconds: float) -> None:
        cutoff = time.monotonic() - max_age_seconds
        stale = [key for key, window in self._windows.items() if window.last_access < cutoff]
        for key in stale:
            del self._windows[key]

        overflow = len(self._windows) - self._max_entries
        if overflow > 0:
            oldest = sorted(self._windows, key=lambda key: self._windows[key].last_access)
            for key in oldest[:overflow]:
                del self._windows[key]
            logger.warning("Rate limit table over capacity, evicted %d entries", overflow)

    def hit(self, key: str, max_requests: int, window_seconds: int) -> tuple[bool, int]:
        """Record a request for ``key``.

        Returns ``(allowed, retry_after_seconds)``.
        """
        now = time.monotonic()
        window = self._windows.setdefault(key, _Window())
        window.last_access = now

        while window.hits and window.hits[0] <= now - window_seconds:
            window.hits.popleft()

        if len(window.hits) >= max_requests:
            retry_after = int(window.hits[0] + window_seconds - now) + 1
            return False, max(1, retry_after)

        window.hits.append(now)
        self._checks += 1
        if self._checks % CLEANUP_INTERVAL == 0:
            self._prune(window_seconds * 2)
        return True, 0

    def reset(self) -> None:
        self._windows.clear()
        self._checks = 0


limiter = InMemoryRateLimiter()


def get_client_identifier(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return f"ip:{forwarded.split(',')[0].strip()}"
    if request.client:
        return f"ip:{request.client.host}"
    return f"ua:{request.headers.get('User-Agent', '')}"


def check_rate_limit(
    request: Request,
    scope: str,
    max_requests: int | None = None,
    window_seconds: int | None = None,
) -> None:
    """Raise 429 when the caller exceeded the allowance for ``scope``."""
    if not settings.rate_limit_enabled:
        return

    client_id = get_client_identifier(request)
    allowed, retry_after = limiter.hit(
        f"{scope}:{client_id}",
        max_requests or settings.rate_limit_requests,
        window_seconds or settings.rate_limit_window_seconds,
    )
    if not allowed:
        logger.warning("Rate limit exceeded scope=%s client=%s retry_after=%ds", scope, client_id, retry_after)
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=f"Too many attempts. Try again in {retry_after} seconds.",
            headers={"Retry-After": str(retry_after)},
        )
