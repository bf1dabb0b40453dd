import logging

from subscription_sync.models.subscription import SubscriptionStatus

logger = logging.getLogger(__name__)

STRIPE_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.INACTIVE,
    "unpaid": SubscriptionStatus.INACTIVE,
    "incomplete": SubscriptionStatus.INACTIVE,
    "incomplete_expired": SubscriptionStatus.INACTIVE,
    "canceled": SubscriptionStatus.CANCELLED,
}


def map_stripe_status(stripe_status) -> SubscriptionStatus:
    """Reduce a Stripe subscription status to one of the four internal statuses."""
    status = STRIPE_STATUS_MAP.get(stripe_status)
    if status is None:
        logger.warning(
            "Unrecognized Stripe subscription status, treating as inactive",
            extra={"stripe_status": stripe_status},
        )
        return SubscriptionStatus.INACTIVE
    return status
