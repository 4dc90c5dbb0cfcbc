from datetime import datetime, timedelta

from genrelay.config import Settings
from genrelay.models.subscription import Subscription, SubscriptionStatus
from genrelay.models.user import UserRole
from genrelay.services.plans import PLAN_LIMITS, rate_limit_spec, resolve_plan_id
from genrelay.services.rate_limiter import RateLimitAction


class TestResolvePlan:
    def test_no_subscription_is_free(self, db, make_user):
        assert resolve_plan_id(db, make_user("free"), PLAN_LIMITS) == "free"

    def test_active_subscription(self, db, make_user):
        assert resolve_plan_id(db, make_user("pro"), PLAN_LIMITS) == "pro"

    def test_expired_subscription_is_free(self, db, make_user):
        user = make_user("free")
        db.add(Subscription(user_id=user.id, plan_id="premium", current_period_end=datetime.utcnow() - timedelta(days=1)))
        db.commit()
        assert resolve_plan_id(db, user, PLAN_LIMITS) == "free"

    def test_cancelled_subscription_is_free(self, db, make_user):
        user = make_user("free")
        db.add(Subscription(user_id=user.id, plan_id="pro", status=SubscriptionStatus.CANCELLED.value))
        db.commit()
        assert resolve_plan_id(db, user, PLAN_LIMITS) == "free"

    def test_admin_role(self, db, make_user):
        assert resolve_plan_id(db, make_user("admin", role=UserRole.ADMIN.value), PLAN_LIMITS) == "admin"


def test_plan_rate_limits_override_defaults():
    settings = Settings(rate_chat_per_minute=200, rate_search_per_minute=60)
    assert rate_limit_spec(PLAN_LIMITS["free"], RateLimitAction.CHAT, settings).max_requests == 20
    assert rate_limit_spec(PLAN_LIMITS["pro"], RateLimitAction.SEARCH, settings).max_requests == 60
