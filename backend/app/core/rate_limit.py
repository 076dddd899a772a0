"""Sliding-window rate limiting for anonymous reservation endpoints."""

import time
from dataclasses import dataclass, field
import logging

from fastapi import HTTPException, Request, status

from app.core.audit import audit_rate_limit_exceeded
from app.core.config import settings


logger = logging.getLogger("giftregistry.rate_limit")

MAX_ENTRIES = 10000
CLEANUP_INTERVAL = 100


@dataclass
class RateLimitEntry:
    timestamps: list[float] = field(default_factory=list)
    last_access: float = field(default_factory=time.time)


class InMemoryRateLimiter:
    """Per-process limiter. Each key keeps the timestamps seen inside its window."""

    def __init__(self):
        self._entries: dict[str, RateLimitEntry] = {}
        self._request_count = 0

    def _drop_expired(self, entry: RateLimitEntry, window_seconds: int, now: float) -> None:
        cutoff = now - window_seconds
        entry.timestamps = [ts for ts in entry.timestamps if ts > cutoff]

    def _evict(self, max_age_seconds: int) -> None:
        cutoff = time.time() - max_age_seconds
        stale_keys = [
            key for key, entry in self._entries.items()
            if entry.last_access < cutoff and not entry.timestamps
        ]
        for key in stale_keys:
            del self._entries[key]

        if len(self._entries) > MAX_ENTRIES:
            oldest = sorted(self._entries.items(), key=lambda item: item[1].last_access)
            overflow = len(self._entries) - MAX_ENTRIES + 100
            for key, _ in oldest[:overflow]:
                del self._entries[key]
            logger.warning("Rate limit entries exceeded %d, evicted %d oldest", MAX_ENTRIES, overflow)
        elif stale_keys:
            logger.debug("Evicted %d stale rate limit entries", len(stale_keys))

    def is_allowed(self, key: str, max_requests: int, window_seconds: int) -> tuple[bool, int]:
        """
        Returns:
            tuple[bool, int]: (is_allowed, retry_after_seconds)
        """
        now = time.time()
        entry = self._entries.setdefault(key, RateLimitEntry())
        entry.last_access = now
        self._drop_expired(entry, window_seconds, now)

        if len(entry.timestamps) >= max_requests:
            retry_after = int(min(entry.timestamps) + window_seconds - now) + 1
            return False, max(1, retry_after)

        entry.timestamps.append(now)
        self._request_count += 1
        if self._request_count % CLEANUP_INTERVAL == 0:
            self._evict(window_seconds * 2)
        return True, 0

    def reset(self, key: str | None = None) -> None:
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)

    def get_stats(self) -> dict:
        return {
            "total_entries": len(self._entries),
            "total_requests_tracked": self._request_count,
            "max_entries": MAX_ENTRIES,
        }


limiter = InMemoryRateLimiter()


def get_client_identifier(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return f"ip:{forwarded.split(',')[0].strip()}"
    if request.client:
        return f"ip:{request.client.host}"
    return f"ua:{hash(request.headers.get('User-Agent', ''))}"


def check_rate_limit(
    request: Request,
    max_requests: int | None = None,
    window_seconds: int | None = None,
    key_suffix: str = "",
) -> None:
    """
    Imperative rate limit check.

    Raises HTTPException(429) with a Retry-After header when exceeded.
    """
    if not settings.rate_limit_enabled:
        return

    client_id = get_client_identifier(request)
    key = f"{client_id}:{key_suffix or request.url.path}"
    allowed, retry_after = limiter.is_allowed(
        key,
        max_requests or settings.rate_limit_requests,
        window_seconds or settings.rate_limit_window_seconds,
    )
    if allowed:
        return

    logger.warning(
        "Rate limit exceeded for %s on %s, retry_after=%ds",
        client_id,
        request.url.path,
        retry_after,
    )
    audit_rate_limit_exceeded(request, request.url.path, retry_after)
    raise HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail=f"Rate limit exceeded. Try again in {retry_after} seconds.",
        headers={"Retry-After": str(retry_after)},
    )
