import logging

from sqlalchemy.exc import SQLAlchemyError

from subscription_sync.errors import NotFoundError, PersistenceError
from subscription_sync.extensions import db
from subscription_sync.models import SubscriptionStatus, UserSubscription
from subscription_sync.utils.timeutils import utcnow

logger = logging.getLogger(__name__)


def expire_if_lapsed(subscription, now=None):
    """
    Downgrade an active row whose expiry already passed. Returns True when
    the row was changed.
    """
    if subscription is None or not subscription.is_lapsed(now):
        return False

    subscription.status = SubscriptionStatus.EXPIRED.value
    try:
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        raise PersistenceError(f"Could not mark subscription of user {subscription.user_id} as expired.") from e

    logger.info(
        "Subscription expired",
        extra={"user_id": subscription.user_id, "expires_at": subscription.expires_at.isoformat()},
    )
    return True


def get_current_subscription(user_id):
    """The user's subscription row, with the lazy expiry correction applied."""
    subscription = UserSubscription.find_by_user(user_id)
    if subscription is None:
        raise NotFoundError(f"No subscription found for user '{user_id}'.")
    expire_if_lapsed(subscription)
    return subscription


def has_access(subscription, now=None):
    """Paid, active and unexpired."""
    if subscription is None:
        return False
    if subscription.status != SubscriptionStatus.ACTIVE.value:
        return False
    if subscription.is_expired(now):
        return False
    plan = subscription.plan
    return plan is not None and not plan.is_free
