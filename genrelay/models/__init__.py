from genrelay.models.user import User, UserRole
from genrelay.models.subscription import Subscription, SubscriptionStatus
from genrelay.models.chat import Chat, DEFAULT_CHAT_TITLE
from genrelay.models.message import Message
from genrelay.models.usage_cost_record import UsageCostRecord

__all__ = [
    "User", "UserRole", "Subscription", "SubscriptionStatus",
    "Chat", "DEFAULT_CHAT_TITLE", "Message", "UsageCostRecord",
]
