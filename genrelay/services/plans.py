"""
Plan tiers: which models and how much of each action an identity may use.

Daily counts: None = unlimited, 0 = not included in the plan.
monthly_budget_usd: hard ceiling on internal spend; None = no ceiling.
chat_per_minute / search_per_minute override the default rate limits.
"""
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import desc
from sqlalchemy.orm import Session

from genrelay.config import Settings
from genrelay.models.subscription import Subscription, SubscriptionStatus
from genrelay.models.user import User, UserRole
from genrelay.services.rate_limiter import RateLimitAction, RateLimitSpec

FREE_PLAN = "free"
ADMIN_PLAN = "admin"

FREE_MODELS = ("seed-1-6-flash",)
STARTER_MODELS = ("seed-1-6-flash", "deepseek-v3-2", "glm-4", "gemini-2-0-flash")


@dataclass(frozen=True)
class PlanLimits:
    messages_per_day: int | None
    searches_per_day: int | None
    allowed_models: tuple[str, ...] = ()  # empty = all models
    monthly_budget_usd: float | None = None
    chat_per_minute: int | None = None
    search_per_minute: int | None = None


@dataclass(frozen=True)
class Identity:
    """The authenticated caller as the admission layer sees it."""
    user_id: str
    plan_id: str


PLAN_LIMITS: dict[str, PlanLimits] = {
    "free": PlanLimits(
        messages_per_day=30,
        searches_per_day=3,
        allowed_models=FREE_MODELS,
        monthly_budget_usd=0.30,
        chat_per_minute=20,
        search_per_minute=5,
    ),
    "starter": PlanLimits(
        messages_per_day=100,
        searches_per_day=20,
        allowed_models=STARTER_MODELS,
        monthly_budget_usd=3.00,
        chat_per_minute=60,
        search_per_minute=20,
    ),
    "pro": PlanLimits(messages_per_day=200, searches_per_day=50, monthly_budget_usd=7.50),
    "premium": PlanLimits(messages_per_day=400, searches_per_day=100, monthly_budget_usd=12.00),
    # Internal: admins bypass quotas and ceilings
    ADMIN_PLAN: PlanLimits(
        messages_per_day=None,
        searches_per_day=None,
        chat_per_minute=500,
        search_per_minute=500,
    ),
}


def resolve_plan_id(db: Session, user: User, plans: Mapping[str, PlanLimits]) -> str:
    """
    Plan for a user: admins get the admin plan; otherwise the newest active
    subscription that has not expired. Anything else is the free plan.
    """
    if user.role == UserRole.ADMIN.value and ADMIN_PLAN in plans:
        return ADMIN_PLAN
    sub = (
        db.query(Subscription)
        .filter(
            Subscription.user_id == user.id,
            Subscription.status == SubscriptionStatus.ACTIVE.value,
        )
        .order_by(desc(Subscription.created_at))
        .first()
    )
    if sub is None:
        return FREE_PLAN
    if sub.current_period_end is not None and sub.current_period_end < datetime.utcnow():
        return FREE_PLAN
    if sub.plan_id not in plans:
        return FREE_PLAN
    return sub.plan_id


def rate_limit_spec(plan: PlanLimits, action: RateLimitAction, settings: Settings) -> RateLimitSpec:
    if action is RateLimitAction.SEARCH:
        per_minute = plan.search_per_minute or settings.rate_search_per_minute
    else:
        per_minute = plan.chat_per_minute or settings.rate_chat_per_minute
    return RateLimitSpec(max_requests=per_minute, window_seconds=settings.rate_limit_window_seconds)
