"""Fixed-window rate limiter."""
import asyncio

from genrelay.core.counter_store import CounterStore, CounterStoreError, MemoryCounterStore
from genrelay.services.rate_limiter import RateLimitAction, RateLimiter, RateLimitSpec, rate_limit_key

from conftest import FakeClock


class BrokenStore(CounterStore):
    async def incr_window(self, key, window_ms):
        raise CounterStoreError("connection refused")


class TestRateLimiter:
    def test_allows_up_to_limit_then_denies_with_retry_after(self):
        clock = FakeClock()
        limiter = RateLimiter(MemoryCounterStore(clock=clock))
        spec = RateLimitSpec(max_requests=2, window_seconds=60)

        async def run():
            results = [await limiter.check("rl:chat:user:u1", spec) for _ in range(2)]
            clock.advance(1)
            results.append(await limiter.check("rl:chat:user:u1", spec))
            return results

        first, second, third = asyncio.run(run())
        assert first.allowed and second.allowed
        assert second.remaining == 0
        assert not third.allowed
        assert 0 <= third.retry_after < 60
        headers = third.headers()
        assert headers["Retry-After"] == "59"
        assert headers["X-RateLimit-Limit"] == "2"
        assert headers["X-RateLimit-Remaining"] == "0"

    def test_window_reset_allows_again(self):
        clock = FakeClock()
        limiter = RateLimiter(MemoryCounterStore(clock=clock))
        spec = RateLimitSpec(max_requests=1, window_seconds=60)

        async def run():
            await limiter.check("k", spec)
            denied = await limiter.check("k", spec)
            clock.advance(60)
            return denied, await limiter.check("k", spec)

        denied, allowed = asyncio.run(run())
        assert not denied.allowed
        assert allowed.allowed

    def test_concurrent_checks_never_exceed_limit(self):
        limiter = RateLimiter(MemoryCounterStore())
        spec = RateLimitSpec(max_requests=3)

        async def run():
            return await asyncio.gather(*[limiter.check("k", spec) for _ in range(10)])

        results = asyncio.run(run())
        assert sum(r.allowed for r in results) == 3

    def test_store_failure_fails_closed_by_default(self):
        decision = asyncio.run(RateLimiter(BrokenStore()).check("k", RateLimitSpec(max_requests=5)))
        assert not decision.allowed
        assert decision.retry_after == 60

    def test_store_failure_fail_open(self):
        decision = asyncio.run(
            RateLimiter(BrokenStore(), fail_open=True).check("k", RateLimitSpec(max_requests=5))
        )
        assert decision.allowed
        assert "Retry-After" not in decision.headers()

    def test_keys(self):
        assert rate_limit_key(RateLimitAction.CHAT, "u1") == "rl:chat:user:u1"
        assert rate_limit_key(RateLimitAction.SEARCH, None, "10.0.0.1") == "rl:search:ip:10.0.0.1"
