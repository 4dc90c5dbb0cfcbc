"""Memory counter store: windows, reservations and settlement."""
import asyncio

from genrelay.core.counter_store import Claim, MemoryCounterStore

from conftest import FakeClock


def _claim(limit, amount=1.0, key="quota:chat:u1:2026-10-19"):
    return Claim(usage_key=key, hold_key=f"hold:{key}", amount=amount, limit=limit, usage_ttl_seconds=3600)


class TestWindow:
    def test_counts_within_window_then_resets(self):
        clock = FakeClock()
        store = MemoryCounterStore(clock=clock)

        async def run():
            first = await store.incr_window("rl:chat:user:u1", 60_000)
            clock.advance(10)
            second = await store.incr_window("rl:chat:user:u1", 60_000)
            clock.advance(51)
            third = await store.incr_window("rl:chat:user:u1", 60_000)
            return first, second, third

        first, second, third = asyncio.run(run())
        assert (first.count, first.ttl_ms) == (1, 60_000)
        assert (second.count, second.ttl_ms) == (2, 50_000)
        assert (third.count, third.ttl_ms) == (1, 60_000)

    def test_keys_are_independent(self):
        store = MemoryCounterStore(clock=FakeClock())

        async def run():
            await store.incr_window("rl:chat:user:u1", 60_000)
            return await store.incr_window("rl:search:user:u1", 60_000)

        assert asyncio.run(run()).count == 1


class TestReservations:
    def test_reserve_counts_holds_against_limit(self):
        store = MemoryCounterStore(clock=FakeClock())
        claim = _claim(limit=2)

        async def run():
            a = await store.reserve([claim], 60_000)
            b = await store.reserve([claim], 60_000)
            c = await store.reserve([claim], 60_000)
            return a, b, c

        a, b, c = asyncio.run(run())
        assert a.allowed and b.allowed
        assert not c.allowed
        assert c.failed_index == 0
        assert c.held == 2

    def test_all_or_nothing(self):
        store = MemoryCounterStore(clock=FakeClock())
        count = _claim(limit=10)
        spend = _claim(limit=0.5, amount=0.6, key="spend:u1:2026-10")

        async def run():
            result = await store.reserve([count, spend], 60_000)
            return result, await store.get(count.hold_key)

        result, held = asyncio.run(run())
        assert not result.allowed
        assert result.failed_index == 1
        assert held == 0

    def test_settle_moves_hold_to_usage_with_actual_amount(self):
        store = MemoryCounterStore(clock=FakeClock())
        spend = _claim(limit=1.0, amount=0.2, key="spend:u1:2026-10")

        async def run():
            await store.reserve([spend], 60_000)
            await store.settle([spend], [0.05])
            return await store.get(spend.usage_key), await store.get(spend.hold_key)

        used, held = asyncio.run(run())
        assert used == 0.05
        assert held == 0

    def test_release_records_no_usage(self):
        store = MemoryCounterStore(clock=FakeClock())
        claim = _claim(limit=1)

        async def run():
            await store.reserve([claim], 60_000)
            await store.release([claim])
            again = await store.reserve([claim], 60_000)
            return await store.get(claim.usage_key), again

        used, again = asyncio.run(run())
        assert used == 0
        assert again.allowed

    def test_abandoned_hold_expires(self):
        clock = FakeClock()
        store = MemoryCounterStore(clock=clock)
        claim = _claim(limit=1)

        async def run():
            await store.reserve([claim], 1_000)
            blocked = await store.reserve([claim], 1_000)
            clock.advance(2)
            return blocked, await store.reserve([claim], 1_000)

        blocked, after = asyncio.run(run())
        assert not blocked.allowed
        assert after.allowed

    def test_unlimited_claim_is_never_refused(self):
        store = MemoryCounterStore(clock=FakeClock())
        claim = _claim(limit=None)

        async def run():
            return [await store.reserve([claim], 60_000) for _ in range(50)]

        assert all(r.allowed for r in asyncio.run(run()))
