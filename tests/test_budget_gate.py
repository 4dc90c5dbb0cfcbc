"""Plan/budget gate: denial reasons, reservations, concurrency."""
import asyncio
from datetime import datetime, timezone

from genrelay.core.counter_store import MemoryCounterStore
from genrelay.services.budget_gate import BudgetAction, BudgetGate, DenialReason
from genrelay.services.model_catalog import DEFAULT_MODELS
from genrelay.services.plans import PLAN_LIMITS, Identity, PlanLimits

FLASH = DEFAULT_MODELS["seed-1-6-flash"]
GROK = DEFAULT_MODELS["grok-4"]


def _gate(plans=None, store=None):
    return BudgetGate(
        store or MemoryCounterStore(),
        plans or PLAN_LIMITS,
        now=lambda: datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc),
    )


class TestDenialReasons:
    def test_model_not_on_plan(self):
        decision = asyncio.run(_gate().authorize(Identity("u1", "free"), BudgetAction.CHAT, GROK, 0.001))
        assert not decision.allowed
        assert decision.reason_code is DenialReason.PLAN_FORBIDS_MODEL
        assert decision.plan_id == "free"

    def test_action_not_on_plan(self):
        plans = {**PLAN_LIMITS, "free": PlanLimits(messages_per_day=30, searches_per_day=0)}
        decision = asyncio.run(_gate(plans).authorize(Identity("u1", "free"), BudgetAction.SEARCH))
        assert decision.reason_code is DenialReason.PLAN_FORBIDS_ACTION

    def test_quota_exhausted(self):
        plans = {**PLAN_LIMITS, "free": PlanLimits(messages_per_day=1, searches_per_day=1)}
        gate = _gate(plans)

        async def run():
            first = await gate.authorize(Identity("u1", "free"), BudgetAction.CHAT, FLASH, 0.0001)
            await gate.commit(first.reservation, 0.0001)
            return await gate.authorize(Identity("u1", "free"), BudgetAction.CHAT, FLASH, 0.0001)

        decision = asyncio.run(run())
        assert decision.reason_code is DenialReason.QUOTA_EXHAUSTED
        assert decision.used == 1

    def test_budget_ceiling(self):
        plans = {**PLAN_LIMITS, "free": PlanLimits(messages_per_day=100, searches_per_day=1, monthly_budget_usd=0.01)}
        gate = _gate(plans)

        async def run():
            first = await gate.authorize(Identity("u1", "free"), BudgetAction.CHAT, FLASH, 0.004)
            await gate.commit(first.reservation, 0.009)
            return await gate.authorize(Identity("u1", "free"), BudgetAction.CHAT, FLASH, 0.004)

        decision = asyncio.run(run())
        assert decision.reason_code is DenialReason.BUDGET_CEILING
        assert decision.limit == 0.01

    def test_unknown_plan_is_treated_as_free(self):
        decision = asyncio.run(_gate().authorize(Identity("u1", "gold"), BudgetAction.CHAT, GROK, 0.0))
        assert decision.plan_id == "free"
        assert decision.reason_code is DenialReason.PLAN_FORBIDS_MODEL

    def test_admin_is_unlimited(self):
        gate = _gate()

        async def run():
            return [
                await gate.authorize(Identity("root", "admin"), BudgetAction.CHAT, GROK, 5.0)
                for _ in range(50)
            ]

        assert all(d.allowed for d in asyncio.run(run()))


class TestReservations:
    def test_concurrent_requests_cannot_both_take_last_slot(self):
        plans = {**PLAN_LIMITS, "free": PlanLimits(messages_per_day=1, searches_per_day=1, allowed_models=("seed-1-6-flash",))}
        gate = _gate(plans)

        async def run():
            return await asyncio.gather(*[
                gate.authorize(Identity("u1", "free"), BudgetAction.CHAT, FLASH, 0.0001)
                for _ in range(5)
            ])

        decisions = asyncio.run(run())
        assert sum(d.allowed for d in decisions) == 1
        assert {d.reason_code for d in decisions if not d.allowed} == {DenialReason.QUOTA_EXHAUSTED}

    def test_release_frees_the_slot_without_usage(self):
        plans = {**PLAN_LIMITS, "free": PlanLimits(messages_per_day=1, searches_per_day=1)}
        gate = _gate(plans)

        async def run():
            first = await gate.authorize(Identity("u1", "free"), BudgetAction.CHAT, FLASH, 0.0001)
            await gate.release(first.reservation)
            second = await gate.authorize(Identity("u1", "free"), BudgetAction.CHAT, FLASH, 0.0001)
            return second, await gate.usage(Identity("u1", "free"))

        second, usage = asyncio.run(run())
        assert second.allowed
        assert usage["actions"]["chat"]["used"] == 0

    def test_commit_is_applied_once(self):
        gate = _gate()

        async def run():
            decision = await gate.authorize(Identity("u1", "pro"), BudgetAction.CHAT, GROK, 0.01)
            await gate.commit(decision.reservation, 0.02)
            await gate.commit(decision.reservation, 0.02)
            await gate.release(decision.reservation)
            return await gate.usage(Identity("u1", "pro"))

        usage = asyncio.run(run())
        assert usage["plan_id"] == "pro"
        assert usage["actions"]["chat"] == {"used": 1, "limit": 200, "remaining": 199}
        assert usage["actions"]["search"] == {"used": 0, "limit": 50, "remaining": 50}

    def test_usage_never_reports_money(self):
        usage = asyncio.run(_gate().usage(Identity("u1", "free")))
        assert "spend" not in str(usage)
        assert "cost" not in str(usage)
