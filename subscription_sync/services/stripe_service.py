# stripe_service.py
import json
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Optional

import sentry_sdk
import stripe
from flask import current_app

from subscription_sync.errors import ProcessorError, SignatureError, ValidationError
from subscription_sync.observability import get_metrics
from subscription_sync.services.credentials import StripeCredentials, resolve_active_credentials

logger = logging.getLogger(__name__)


def configure_stripe(app):
    """Process-wide client settings. Keys are passed per call, never set globally."""
    stripe.api_version = app.config.get("STRIPE_API_VERSION")
    stripe.max_network_retries = app.config.get("STRIPE_MAX_NETWORK_RETRIES", 2)
    logger.info(
        "Stripe client configured",
        extra={
            "api_version": stripe.api_version,
            "max_retries": stripe.max_network_retries,
        },
    )


@contextmanager
def stripe_operation_context(operation_name: str, **context_vars):
    """
    Log, time and tag a Stripe call; every Stripe failure leaves as a
    ``ProcessorError``.

    Example:
        with stripe_operation_context("create_checkout_session", user_id=user_id):
            stripe.checkout.Session.create(...)
    """
    start_time = datetime.now()
    sentry_sdk.set_tag("stripe_operation", operation_name)
    sentry_sdk.set_context("stripe_context", context_vars)

    logger.debug(
        f"Starting Stripe operation: {operation_name}",
        extra={"operation": operation_name, **context_vars},
    )

    try:
        with get_metrics().observe_latency(operation_name):
            yield
    except stripe.StripeError as e:
        error = ProcessorError.from_stripe(e, operation=operation_name)
        logger.error(
            f"Stripe operation failed: {operation_name}",
            extra={
                "operation": operation_name,
                "duration_seconds": (datetime.now() - start_time).total_seconds(),
                **error.log_context(),
                **context_vars,
            },
        )
        raise error from e

    logger.info(
        f"Completed Stripe operation: {operation_name}",
        extra={
            "operation": operation_name,
            "duration_seconds": (datetime.now() - start_time).total_seconds(),
            **context_vars,
        },
    )


def as_payload(resource):
    """
    Nested plain-dict copy of a Stripe resource, the same shape webhook
    event objects arrive in. Stripe resources are not dicts themselves.
    """
    if isinstance(resource, stripe.StripeObject):
        return resource.to_dict()
    return resource


class StripeService:
    """
    Thin Stripe client bound to one credential set.

    Every request carries the credential's key explicitly, so concurrent
    requests never share mutable client state.
    """

    def __init__(self, credentials: StripeCredentials):
        self.credentials = credentials

    @classmethod
    def from_active_credentials(cls, require_webhook_secret: bool = False) -> "StripeService":
        return cls(resolve_active_credentials(require_webhook_secret=require_webhook_secret))

    @property
    def _auth(self) -> Dict[str, Any]:
        return {"api_key": self.credentials.secret_key}

    def retrieve_price(self, price_id: str):
        with stripe_operation_context("retrieve_price", price_id=price_id):
            return as_payload(stripe.Price.retrieve(price_id, **self._auth))

    def create_customer(self, user_id: str, email: Optional[str] = None, name: Optional[str] = None):
        with stripe_operation_context("create_customer", user_id=user_id):
            params = {"metadata": {"user_id": user_id}}
            if email:
                params["email"] = email
            if name:
                params["name"] = name
            customer = stripe.Customer.create(**params, **self._auth)

        logger.info("Stripe customer created", extra={"customer_id": customer.id, "user_id": user_id})
        return customer

    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
    ):
        """
        Subscription-mode checkout. The same metadata goes on the session and
        on the subscription it creates so later subscription events carry it.
        """
        with stripe_operation_context(
            "create_checkout_session",
            user_id=metadata.get("user_id"),
            plan_id=metadata.get("plan_id"),
            price_id=price_id,
        ):
            session = stripe.checkout.Session.create(
                customer=customer_id,
                line_items=[{"price": price_id, "quantity": 1}],
                mode="subscription",
                payment_method_types=["card"],
                billing_address_collection="required",
                customer_update={"address": "auto", "name": "auto"},
                success_url=success_url,
                cancel_url=cancel_url,
                metadata=dict(metadata),
                subscription_data={"metadata": dict(metadata)},
                **self._auth,
            )

        logger.info(
            "Stripe checkout session created",
            extra={"session_id": session.id, "user_id": metadata.get("user_id"), "price_id": price_id},
        )
        return session

    def retrieve_checkout_session(self, session_id: str):
        with stripe_operation_context("retrieve_checkout_session", session_id=session_id):
            return as_payload(
                stripe.checkout.Session.retrieve(session_id, expand=["subscription"], **self._auth)
            )

    def retrieve_subscription(self, subscription_id: str):
        with stripe_operation_context("retrieve_subscription", subscription_id=subscription_id):
            return as_payload(stripe.Subscription.retrieve(subscription_id, **self._auth))

    def create_portal_session(self, customer_id: str, return_url: str):
        with stripe_operation_context("create_portal_session", customer_id=customer_id):
            return stripe.billing_portal.Session.create(
                customer=customer_id,
                return_url=return_url,
                **self._auth,
            )

    def parse_webhook_event(self, payload: bytes, sig_header: Optional[str]) -> Dict[str, Any]:
        """
        Verify the Stripe-Signature header against the raw body, then parse it.

        Nothing in the body is read before the signature checks out.
        """
        if not sig_header:
            raise SignatureError("Missing Stripe-Signature header.")

        tolerance = current_app.config.get("STRIPE_WEBHOOK_TOLERANCE", 300)
        try:
            stripe.WebhookSignature.verify_header(
                payload, sig_header, self.credentials.webhook_secret, tolerance
            )
        except stripe.SignatureVerificationError:
            logger.warning("Stripe webhook signature verification failed")
            raise SignatureError("Webhook signature verification failed.")

        try:
            event = json.loads(payload)
        except (TypeError, ValueError):
            raise ValidationError("Webhook body is not valid JSON.")

        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise ValidationError("Webhook body is not a Stripe event.")
        return event
