from models.subscription import Subscription, SubscriptionAlias, PaymentHistory, WebhookEvent
from models.coupon import Coupon, CouponUsage

__all__ = [
    "Subscription", "SubscriptionAlias", "PaymentHistory", "WebhookEvent",
    "Coupon", "CouponUsage",
]
