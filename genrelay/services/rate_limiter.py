"""
Fixed-window rate limits per (identity, action).
- chat and search are independent classes: exhausting one never blocks the other.
- Increment-and-check is one counter store operation, so concurrent requests
  cannot both slip past the limit.
- Store failure policy is explicit: settings.rate_limit_fail_open.
"""
import enum
import logging
import math
import time
from dataclasses import dataclass

from genrelay.core.counter_store import CounterStore, CounterStoreError

logger = logging.getLogger(__name__)


class RateLimitAction(str, enum.Enum):
    CHAT = "chat"
    SEARCH = "search"


@dataclass(frozen=True)
class RateLimitSpec:
    max_requests: int
    window_seconds: int = 60


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after: float = 0.0  # seconds until the window resets; 0 when allowed
    reset_at: float = 0.0  # unix seconds

    def headers(self) -> dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(math.ceil(self.reset_at)),
        }
        if not self.allowed:
            headers["Retry-After"] = str(math.ceil(self.retry_after))
        return headers


def rate_limit_key(action: RateLimitAction, user_id: str | None = None, client_ip: str | None = None) -> str:
    """rl:{action}:user:{id}, or rl:{action}:ip:{addr} for anonymous callers."""
    if user_id:
        return f"rl:{action.value}:user:{user_id}"
    return f"rl:{action.value}:ip:{client_ip or 'unknown'}"


class RateLimiter:
    def __init__(self, store: CounterStore, *, fail_open: bool = False):
        self._store = store
        self._fail_open = fail_open

    async def check(self, key: str, spec: RateLimitSpec) -> RateLimitDecision:
        """Record one attempt and say whether it fits in the current window."""
        window_ms = spec.window_seconds * 1000
        try:
            counted = await self._store.incr_window(key, window_ms)
        except CounterStoreError as e:
            if self._fail_open:
                logger.error("Rate limit store unavailable, allowing %s (fail-open): %s", key, e)
                return RateLimitDecision(
                    allowed=True,
                    limit=spec.max_requests,
                    remaining=spec.max_requests,
                    reset_at=time.time() + spec.window_seconds,
                )
            logger.error("Rate limit store unavailable, denying %s (fail-closed): %s", key, e)
            return RateLimitDecision(
                allowed=False,
                limit=spec.max_requests,
                remaining=0,
                retry_after=float(spec.window_seconds),
                reset_at=time.time() + spec.window_seconds,
            )

        ttl_seconds = counted.ttl_ms / 1000.0
        allowed = counted.count <= spec.max_requests
        return RateLimitDecision(
            allowed=allowed,
            limit=spec.max_requests,
            remaining=max(0, spec.max_requests - counted.count),
            retry_after=0.0 if allowed else ttl_seconds,
            reset_at=time.time() + ttl_seconds,
        )
