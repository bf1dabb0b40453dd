from .audit_log import AuditLog
from .plan import SubscriptionPlan
from .stripe_config import StripeConfig
from .stripe_event import ProcessedStripeEvent
from .subscription import SubscriptionStatus, UserSubscription

__all__ = [
    "AuditLog",
    "ProcessedStripeEvent",
    "StripeConfig",
    "SubscriptionPlan",
    "SubscriptionStatus",
    "UserSubscription",
]
