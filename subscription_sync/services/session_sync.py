"""
Success-page fallback.

The browser lands on the success page before Stripe's webhook may have
reached us. ``SessionSyncService`` waits a bounded amount of time for the
webhook to land and otherwise reconciles the session itself through the
same path the webhook uses.
"""

import logging

from flask import current_app

from subscription_sync.errors import ProcessorError, ValidationError, reclassify_processor_error
from subscription_sync.extensions import db
from subscription_sync.models import UserSubscription
from subscription_sync.services.stripe_service import StripeService
from subscription_sync.services.subscription_access import expire_if_lapsed
from subscription_sync.services.subscription_reconciler import SubscriptionReconciler
from subscription_sync.utils.retry_policy import RetryBudgetExceeded, RetryPolicy

logger = logging.getLogger(__name__)

PAID_STATUSES = ("paid", "no_payment_required")


class SessionSyncService:
    def __init__(self, stripe_service=None, reconciler=None, retry_policy=None):
        self._stripe_service = stripe_service
        self._reconciler = reconciler
        self._retry_policy = retry_policy

    @property
    def stripe_service(self):
        if self._stripe_service is None:
            self._stripe_service = StripeService.from_active_credentials()
        return self._stripe_service

    @property
    def reconciler(self):
        if self._reconciler is None:
            self._reconciler = SubscriptionReconciler(self.stripe_service)
        return self._reconciler

    @property
    def retry_policy(self):
        if self._retry_policy is None:
            config = current_app.config
            self._retry_policy = RetryPolicy(
                max_attempts=config.get("SESSION_SYNC_MAX_ATTEMPTS", 4),
                base_delay=config.get("SESSION_SYNC_BASE_DELAY", 0.5),
                time_budget=config.get("SESSION_SYNC_TIME_BUDGET", 8),
            )
        return self._retry_policy

    def sync(self, session_id):
        """Return the user's subscription row once it reflects the checkout session."""
        try:
            session = self.stripe_service.retrieve_checkout_session(session_id)
        except ProcessorError as e:
            raise reclassify_processor_error(e, subject=f"Checkout session '{session_id}'") from e

        if session.get("mode") not in (None, "subscription"):
            raise ValidationError(f"Checkout session '{session_id}' is not a subscription checkout.")
        if session.get("payment_status") not in PAID_STATUSES:
            raise ValidationError(
                f"Checkout session '{session_id}' has not been paid yet (status: {session.get('payment_status')})."
            )

        metadata = session.get("metadata") or {}
        user_id = metadata.get("user_id")
        if not user_id or not metadata.get("plan_id"):
            raise ValidationError(f"Checkout session '{session_id}' carries no user/plan metadata.")

        subscription = session.get("subscription")
        subscription_id = subscription.get("id") if isinstance(subscription, dict) else subscription
        if not subscription_id:
            raise ValidationError(f"Checkout session '{session_id}' did not create a subscription.")

        def webhook_landed():
            db.session.expire_all()
            row = UserSubscription.find_by_user(user_id)
            if row is not None and row.stripe_subscription_id == subscription_id:
                return row
            return None

        try:
            row = self.retry_policy.poll(webhook_landed)
            logger.info("Subscription already reconciled by webhook", extra={"user_id": user_id, "session_id": session_id})
        except RetryBudgetExceeded as e:
            logger.info(
                "Webhook not reconciled yet, syncing checkout session directly",
                extra={"user_id": user_id, "session_id": session_id, "attempts": e.attempts},
            )
            try:
                result = self.reconciler.handle_checkout_completed(session)
            except ProcessorError as err:
                raise reclassify_processor_error(err, subject=f"Subscription '{subscription_id}'") from err
            if result.skipped:
                raise ValidationError(f"Checkout session '{session_id}' could not be applied: {result.reason}.")
            row = UserSubscription.find_by_user(user_id)

        expire_if_lapsed(row)
        return row
