from app.models.user import User, UserSubscriptionStatus
from app.models.plan import Plan, PlanTier
from app.models.subscription import Subscription, SubscriptionStatus
from app.models.subscription_history import SubscriptionHistory
from app.models.checkout_session import CheckoutSession, CheckoutStatus
from app.models.media import Media
from app.models.download import Download

__all__ = [
    "User", "UserSubscriptionStatus", "Plan", "PlanTier", "Subscription", "SubscriptionStatus",
    "SubscriptionHistory", "CheckoutSession", "CheckoutStatus", "Media", "Download",
]
