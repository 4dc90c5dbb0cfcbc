"""
Plan/budget gate.

authorize() decides whether an action may start and, if so, takes an
all-or-nothing hold on the identity's daily count and monthly spend. Holds are
not usage: commit() turns a hold into durable usage with the *actual* cost once
the action has finished, and release() drops it when the action never
completes. Because the check and the hold are one store operation, two
concurrent requests cannot both pass a quota that only has room for one.
"""
import enum
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone

from genrelay.core.counter_store import Claim, CounterStore
from genrelay.services.model_catalog import ModelDefinition
from genrelay.services.plans import Identity, PlanLimits, FREE_PLAN

logger = logging.getLogger(__name__)

DAILY_TTL_SECONDS = 2 * 24 * 3600
MONTHLY_TTL_SECONDS = 40 * 24 * 3600


class BudgetAction(str, enum.Enum):
    CHAT = "chat"
    SEARCH = "search"


class DenialReason(str, enum.Enum):
    PLAN_FORBIDS_MODEL = "plan_forbids_model"
    PLAN_FORBIDS_ACTION = "plan_forbids_action"
    QUOTA_EXHAUSTED = "quota_exhausted"
    BUDGET_CEILING = "budget_ceiling"


_ACTION_NOUNS = {BudgetAction.CHAT: "messages", BudgetAction.SEARCH: "web searches"}


@dataclass
class Reservation:
    user_id: str
    plan_id: str
    action: BudgetAction
    claims: tuple[Claim, ...]
    estimated_cost: float = 0.0
    settled: bool = field(default=False)


@dataclass(frozen=True)
class BudgetDecision:
    allowed: bool
    plan_id: str
    reason_code: DenialReason | None = None
    reason: str | None = None
    limit: float | None = None
    used: float | None = None
    reservation: Reservation | None = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class BudgetGate:
    def __init__(
        self,
        store: CounterStore,
        plans: Mapping[str, PlanLimits],
        *,
        hold_ttl_seconds: int = 600,
        now: Callable[[], datetime] = _utc_now,
    ):
        self._store = store
        self._plans = plans
        self._hold_ttl_ms = hold_ttl_seconds * 1000
        self._now = now

    @property
    def plans(self) -> Mapping[str, PlanLimits]:
        return self._plans

    def plan(self, plan_id: str) -> PlanLimits:
        return self._plans.get(plan_id) or self._plans[FREE_PLAN]

    def _daily_limit(self, plan: PlanLimits, action: BudgetAction) -> int | None:
        if action is BudgetAction.SEARCH:
            return plan.searches_per_day
        return plan.messages_per_day

    def _count_claim(self, user_id: str, action: BudgetAction, limit: int | None) -> Claim:
        day = self._now().strftime("%Y-%m-%d")
        key = f"quota:{action.value}:{user_id}:{day}"
        return Claim(
            usage_key=key,
            hold_key=f"hold:{key}",
            amount=1,
            limit=limit,
            usage_ttl_seconds=DAILY_TTL_SECONDS,
        )

    def _spend_claim(self, user_id: str, amount: float, ceiling: float | None) -> Claim:
        month = self._now().strftime("%Y-%m")
        key = f"spend:{user_id}:{month}"
        return Claim(
            usage_key=key,
            hold_key=f"hold:{key}",
            amount=max(0.0, amount),
            limit=ceiling,
            usage_ttl_seconds=MONTHLY_TTL_SECONDS,
        )

    async def authorize(
        self,
        identity: Identity,
        action: BudgetAction,
        model: ModelDefinition | None = None,
        estimated_cost: float = 0.0,
    ) -> BudgetDecision:
        """
        Checks in order: plan permits the action/model, daily quota, monthly
        ceiling. On success the returned decision carries a Reservation that
        the caller must later commit() or release().
        Raises CounterStoreError if the store is unreachable.
        """
        plan_id = identity.plan_id if identity.plan_id in self._plans else FREE_PLAN
        plan = self.plan(plan_id)
        daily_limit = self._daily_limit(plan, action)

        if daily_limit == 0:
            return BudgetDecision(
                allowed=False,
                plan_id=plan_id,
                reason_code=DenialReason.PLAN_FORBIDS_ACTION,
                reason=f"Your plan does not include {_ACTION_NOUNS[action]}. Please upgrade to use it.",
                limit=0,
                used=0,
            )
        if model is not None and plan.allowed_models and model.key not in plan.allowed_models:
            return BudgetDecision(
                allowed=False,
                plan_id=plan_id,
                reason_code=DenialReason.PLAN_FORBIDS_MODEL,
                reason="This model requires a higher plan. Please upgrade to use it.",
            )

        claims = [self._count_claim(identity.user_id, action, daily_limit)]
        if action is BudgetAction.CHAT:
            claims.append(self._spend_claim(identity.user_id, estimated_cost, plan.monthly_budget_usd))

        result = await self._store.reserve(claims, self._hold_ttl_ms)
        if not result.allowed:
            failed = claims[result.failed_index or 0]
            if result.failed_index == 0:
                return BudgetDecision(
                    allowed=False,
                    plan_id=plan_id,
                    reason_code=DenialReason.QUOTA_EXHAUSTED,
                    reason=(
                        f"You have used all {daily_limit} {_ACTION_NOUNS[action]} for today. "
                        "Upgrade your plan or try again tomorrow."
                    ),
                    limit=failed.limit,
                    used=result.used + result.held,
                )
            return BudgetDecision(
                allowed=False,
                plan_id=plan_id,
                reason_code=DenialReason.BUDGET_CEILING,
                reason="Your plan's monthly usage budget has been reached. Please upgrade to continue.",
                limit=failed.limit,
                used=result.used + result.held,
            )

        return BudgetDecision(
            allowed=True,
            plan_id=plan_id,
            limit=daily_limit,
            reservation=Reservation(
                user_id=identity.user_id,
                plan_id=plan_id,
                action=action,
                claims=tuple(claims),
                estimated_cost=estimated_cost,
            ),
        )

    async def commit(self, reservation: Reservation, actual_cost: float) -> None:
        """Settle a reservation: count one use and add the actual cost to spend."""
        if reservation.settled:
            logger.warning(
                "Reservation already settled (user=%s action=%s); ignoring commit",
                reservation.user_id, reservation.action.value,
            )
            return
        reservation.settled = True
        actuals = [1.0] + [max(0.0, actual_cost)] * (len(reservation.claims) - 1)
        await self._store.settle(reservation.claims, actuals)

    async def release(self, reservation: Reservation) -> None:
        """Drop the hold without recording usage (action never completed)."""
        if reservation.settled:
            return
        reservation.settled = True
        await self._store.release(reservation.claims)

    async def usage(self, identity: Identity) -> dict:
        """Per-action used/limit for today. Counts only; spend is internal."""
        plan_id = identity.plan_id if identity.plan_id in self._plans else FREE_PLAN
        plan = self.plan(plan_id)
        out: dict = {"plan_id": plan_id, "actions": {}}
        for action in BudgetAction:
            claim = self._count_claim(identity.user_id, action, self._daily_limit(plan, action))
            used = int(await self._store.get(claim.usage_key))
            limit = claim.limit
            out["actions"][action.value] = {
                "used": used,
                "limit": limit,
                "remaining": None if limit is None else max(0, int(limit) - used),
            }
        return out
