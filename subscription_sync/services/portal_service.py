import logging

from flask import current_app

from subscription_sync.errors import NotFoundError, ProcessorError, reclassify_processor_error
from subscription_sync.models import UserSubscription
from subscription_sync.services.stripe_service import StripeService

logger = logging.getLogger(__name__)


def create_customer_portal_session(user_id, return_url=None, stripe_service=None):
    """Stripe billing portal URL for the user's customer."""
    stripe_service = stripe_service or StripeService.from_active_credentials()

    subscription = UserSubscription.find_by_user(user_id)
    if subscription is None or not subscription.stripe_customer_id:
        raise NotFoundError(f"User '{user_id}' has no Stripe customer yet. Complete a checkout first.")

    return_url = return_url or f"{current_app.config['SITE_URL'].rstrip('/')}/settings"
    try:
        session = stripe_service.create_portal_session(subscription.stripe_customer_id, return_url)
    except ProcessorError as e:
        raise reclassify_processor_error(e, subject=f"Customer '{subscription.stripe_customer_id}'") from e

    logger.info("Customer portal session created", extra={"user_id": user_id})
    return session.url
