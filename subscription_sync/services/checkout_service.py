import logging
from dataclasses import dataclass
from typing import Optional

from flask import current_app

from subscription_sync.errors import (
    BillingError,
    InvalidPlanError,
    ProcessorError,
    reclassify_processor_error,
)
from subscription_sync.models import UserSubscription
from subscription_sync.observability import get_metrics
from subscription_sync.services.credentials import resolve_active_credentials, resolve_plan
from subscription_sync.services.environment import (
    PriceCompatibilityValidator,
    normalize_price_reference,
    normalize_product_reference,
)
from subscription_sync.services.stripe_service import StripeService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckoutSession:
    session_id: str
    url: str

    def to_dict(self):
        return {"sessionId": self.session_id, "url": self.url}


class CheckoutService:
    """
    Builds a Stripe checkout session for a plan and a user.

    Nothing is written locally: the subscription row only appears once a
    webhook (or the success-page sync) confirms payment.
    """

    def __init__(self, stripe_service: Optional[StripeService] = None):
        self._stripe_service = stripe_service

    def create_checkout_session(self, plan_id, user_id, success_url=None, cancel_url=None, email=None):
        metrics = get_metrics()
        try:
            session = self._create(plan_id, user_id, success_url, cancel_url, email)
        except BillingError as e:
            metrics.record_checkout(type(e).__name__)
            raise
        metrics.record_checkout("created")
        return session

    def _create(self, plan_id, user_id, success_url, cancel_url, email):
        stripe_service = self._stripe_service or StripeService(resolve_active_credentials())
        credentials = stripe_service.credentials

        plan = resolve_plan(plan_id)
        if plan.price is None or plan.price <= 0:
            raise InvalidPlanError(
                f"Plan '{plan.name}' is free and cannot be purchased through checkout."
            )

        price_id = normalize_price_reference(plan.stripe_price_id)
        product_id = normalize_product_reference(plan.stripe_product_id or credentials.default_product_id)

        verdict = PriceCompatibilityValidator(stripe_service).validate(price_id, product_id)
        diagnostics = {"user_id": user_id, "plan_id": plan.id, "price_id": price_id, **verdict.log_context()}

        site_url = current_app.config["SITE_URL"].rstrip("/")
        success_url = success_url or f"{site_url}/plans/success?session_id={{CHECKOUT_SESSION_ID}}"
        cancel_url = cancel_url or f"{site_url}/plans/cancel"

        try:
            customer_id = self._resolve_customer(stripe_service, user_id, email)
            session = stripe_service.create_checkout_session(
                customer_id=customer_id,
                price_id=price_id,
                success_url=success_url,
                cancel_url=cancel_url,
                metadata={"user_id": user_id, "plan_id": plan.id, "plan_name": plan.name},
            )
        except ProcessorError as e:
            logger.error("Checkout session creation failed", extra={**diagnostics, **e.log_context()})
            raise reclassify_processor_error(e, subject=f"Price '{price_id}'") from e

        logger.info("Checkout session ready", extra={**diagnostics, "session_id": session.id})
        return CheckoutSession(session_id=session.id, url=session.url)

    @staticmethod
    def _resolve_customer(stripe_service, user_id, email):
        existing = UserSubscription.find_by_user(user_id)
        if existing is not None and existing.stripe_customer_id:
            logger.info(
                "Reusing Stripe customer",
                extra={"user_id": user_id, "customer_id": existing.stripe_customer_id},
            )
            return existing.stripe_customer_id
        return stripe_service.create_customer(user_id, email=email).id
