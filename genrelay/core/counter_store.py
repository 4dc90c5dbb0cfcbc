"""
Shared counter store for rate limits and plan quotas.

Every mutation is one atomic operation: a Lua script on Redis, or a critical
section under a single asyncio.Lock for the in-process store. Callers never
read-then-write.

Quota accounting uses pairs of keys:
- usage key: durable counter for the period (daily message count, monthly spend).
  Only ever incremented; a new period means a new key.
- hold key: amounts reserved by admitted requests that have not settled yet.
  Expires on its own so a crashed worker cannot leak holds forever.
"""
import asyncio
import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


class CounterStoreError(Exception):
    """The counter store could not be reached or rejected the operation."""


@dataclass(frozen=True)
class WindowCount:
    count: int
    ttl_ms: int


@dataclass(frozen=True)
class Claim:
    """One usage/hold pair to reserve against. limit=None means unlimited (held, never checked)."""
    usage_key: str
    hold_key: str
    amount: float
    limit: float | None
    usage_ttl_seconds: int


@dataclass(frozen=True)
class ReserveResult:
    allowed: bool
    failed_index: int | None = None
    used: float = 0.0
    held: float = 0.0


class CounterStore:
    """Interface shared by the Redis and memory stores."""

    name = "base"

    async def incr_window(self, key: str, window_ms: int) -> WindowCount:
        raise NotImplementedError

    async def reserve(self, claims: Sequence[Claim], hold_ttl_ms: int) -> ReserveResult:
        raise NotImplementedError

    async def settle(self, claims: Sequence[Claim], actuals: Sequence[float]) -> None:
        raise NotImplementedError

    async def release(self, claims: Sequence[Claim]) -> None:
        await self.settle(claims, [0.0] * len(claims))

    async def get(self, key: str) -> float:
        raise NotImplementedError

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


# ---------- Redis ----------

_WINDOW_SCRIPT = """
local count = redis.call("INCR", KEYS[1])
local ttl = redis.call("PTTL", KEYS[1])
if ttl < 0 then
  redis.call("PEXPIRE", KEYS[1], ARGV[1])
  ttl = tonumber(ARGV[1])
end
return {count, ttl}
"""

# KEYS: usage_1, hold_1, usage_2, hold_2, ...
# ARGV: hold_ttl_ms, amount_1, limit_1, amount_2, limit_2, ...  (limit < 0 = unlimited)
_RESERVE_SCRIPT = """
local hold_ttl = tonumber(ARGV[1])
local n = #KEYS / 2
for i = 1, n do
  local limit = tonumber(ARGV[2 * i + 1])
  if limit >= 0 then
    local used = tonumber(redis.call("GET", KEYS[2 * i - 1]) or "0")
    local held = tonumber(redis.call("GET", KEYS[2 * i]) or "0")
    local amount = tonumber(ARGV[2 * i])
    if used + held + amount > limit then
      return {0, i, tostring(used), tostring(held)}
    end
  end
end
for i = 1, n do
  redis.call("INCRBYFLOAT", KEYS[2 * i], ARGV[2 * i])
  redis.call("PEXPIRE", KEYS[2 * i], hold_ttl)
end
return {1, 0, "0", "0"}
"""

# KEYS: usage_1, hold_1, ...
# ARGV: reserved_1, actual_1, usage_ttl_1, reserved_2, ...
_SETTLE_SCRIPT = """
local n = #KEYS / 2
for i = 1, n do
  local base = 3 * (i - 1)
  local reserved = tonumber(ARGV[base + 1])
  local actual = tonumber(ARGV[base + 2])
  local ttl = tonumber(ARGV[base + 3])
  local held = tonumber(redis.call("GET", KEYS[2 * i]) or "0")
  local remaining = held - reserved
  if remaining > 0 then
    redis.call("SET", KEYS[2 * i], tostring(remaining), "KEEPTTL")
  else
    redis.call("DEL", KEYS[2 * i])
  end
  if actual > 0 then
    redis.call("INCRBYFLOAT", KEYS[2 * i - 1], actual)
    if redis.call("TTL", KEYS[2 * i - 1]) < 0 then
      redis.call("EXPIRE", KEYS[2 * i - 1], ttl)
    end
  end
end
return n
"""


def _pair_keys(claims: Sequence[Claim]) -> list[str]:
    keys: list[str] = []
    for c in claims:
        keys.extend([c.usage_key, c.hold_key])
    return keys


class RedisCounterStore(CounterStore):
    """Counter store on an async Redis client. One script call per atomic operation."""

    name = "redis"

    def __init__(self, redis_client: Any, key_prefix: str = "genrelay:"):
        self._redis = redis_client
        self._prefix = key_prefix
        self._window = redis_client.register_script(_WINDOW_SCRIPT)
        self._reserve = redis_client.register_script(_RESERVE_SCRIPT)
        self._settle = redis_client.register_script(_SETTLE_SCRIPT)

    def _k(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def incr_window(self, key: str, window_ms: int) -> WindowCount:
        try:
            count, ttl = await self._window(keys=[self._k(key)], args=[window_ms])
        except RedisError as e:
            raise CounterStoreError(str(e)) from e
        return WindowCount(count=int(count), ttl_ms=max(0, int(ttl)))

    async def reserve(self, claims: Sequence[Claim], hold_ttl_ms: int) -> ReserveResult:
        if not claims:
            return ReserveResult(allowed=True)
        args: list[Any] = [hold_ttl_ms]
        for c in claims:
            args.extend([c.amount, -1 if c.limit is None else c.limit])
        try:
            ok, index, used, held = await self._reserve(
                keys=[self._k(k) for k in _pair_keys(claims)], args=args
            )
        except RedisError as e:
            raise CounterStoreError(str(e)) from e
        if int(ok) == 1:
            return ReserveResult(allowed=True)
        return ReserveResult(
            allowed=False,
            failed_index=int(index) - 1,
            used=float(used),
            held=float(held),
        )

    async def settle(self, claims: Sequence[Claim], actuals: Sequence[float]) -> None:
        if not claims:
            return
        args: list[Any] = []
        for c, actual in zip(claims, actuals):
            args.extend([c.amount, actual, c.usage_ttl_seconds])
        try:
            await self._settle(keys=[self._k(k) for k in _pair_keys(claims)], args=args)
        except RedisError as e:
            raise CounterStoreError(str(e)) from e

    async def get(self, key: str) -> float:
        try:
            raw = await self._redis.get(self._k(key))
        except RedisError as e:
            raise CounterStoreError(str(e)) from e
        if raw is None:
            return 0.0
        try:
            return float(raw)
        except ValueError:
            return 0.0

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except RedisError as e:
            logger.warning("Redis ping failed: %s", e)
            return False

    async def close(self) -> None:
        try:
            await self._redis.aclose()
        except RedisError as e:
            logger.warning("Redis close error: %s", e)


# ---------- In-process memory ----------


class MemoryCounterStore(CounterStore):
    """
    Single-process counter store. Correct for one worker only: counters are not
    shared between processes. Uses a monotonic clock for expiry.
    """

    name = "memory"

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._values: dict[str, tuple[float, float | None]] = {}
        self._lock = asyncio.Lock()

    def _read(self, key: str, now: float) -> float:
        entry = self._values.get(key)
        if entry is None:
            return 0.0
        value, expires_at = entry
        if expires_at is not None and now >= expires_at:
            del self._values[key]
            return 0.0
        return value

    def _expiry(self, key: str) -> float | None:
        entry = self._values.get(key)
        return entry[1] if entry else None

    async def incr_window(self, key: str, window_ms: int) -> WindowCount:
        async with self._lock:
            now = self._clock()
            count = self._read(key, now) + 1
            expires_at = self._expiry(key) if key in self._values else None
            if expires_at is None:
                expires_at = now + window_ms / 1000.0
            self._values[key] = (count, expires_at)
            return WindowCount(count=int(count), ttl_ms=max(0, int((expires_at - now) * 1000)))

    async def reserve(self, claims: Sequence[Claim], hold_ttl_ms: int) -> ReserveResult:
        async with self._lock:
            now = self._clock()
            for i, c in enumerate(claims):
                if c.limit is None:
                    continue
                used = self._read(c.usage_key, now)
                held = self._read(c.hold_key, now)
                if used + held + c.amount > c.limit:
                    return ReserveResult(allowed=False, failed_index=i, used=used, held=held)
            for c in claims:
                held = self._read(c.hold_key, now)
                self._values[c.hold_key] = (held + c.amount, now + hold_ttl_ms / 1000.0)
            return ReserveResult(allowed=True)

    async def settle(self, claims: Sequence[Claim], actuals: Sequence[float]) -> None:
        async with self._lock:
            now = self._clock()
            for c, actual in zip(claims, actuals):
                held = self._read(c.hold_key, now)
                remaining = held - c.amount
                if remaining > 0:
                    self._values[c.hold_key] = (remaining, self._expiry(c.hold_key))
                else:
                    self._values.pop(c.hold_key, None)
                if actual > 0:
                    used = self._read(c.usage_key, now)
                    expires_at = self._expiry(c.usage_key) if c.usage_key in self._values else None
                    if expires_at is None:
                        expires_at = now + c.usage_ttl_seconds
                    self._values[c.usage_key] = (used + actual, expires_at)

    async def get(self, key: str) -> float:
        async with self._lock:
            return self._read(key, self._clock())
