"""
Credential and plan lookup.

Stripe credentials come from the active ``StripeConfig`` row. Environment
variables are consulted only when the table holds no credential record at
all; an existing record with a missing key is a configuration error.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from flask import current_app

from subscription_sync.errors import ConfigurationError, NotFoundError
from subscription_sync.models import StripeConfig, SubscriptionPlan
from subscription_sync.services.environment import Mode, classify_secret_key

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StripeCredentials:
    secret_key: str
    publishable_key: Optional[str]
    webhook_secret: Optional[str]
    environment: Mode
    default_product_id: Optional[str] = None
    source: str = "database"

    def __repr__(self):
        return f"StripeCredentials(environment={self.environment.value}, source={self.source})"


def resolve_active_credentials(require_webhook_secret: bool = False) -> StripeCredentials:
    record = StripeConfig.get_active()

    if record is not None:
        credentials = _from_record(record)
    elif StripeConfig.has_any():
        raise ConfigurationError(
            "No active Stripe configuration. Activate one credential set before taking payments."
        )
    else:
        credentials = _from_environment()

    if require_webhook_secret and not credentials.webhook_secret:
        raise ConfigurationError(
            f"The active Stripe configuration ({credentials.source}) has no webhook signing secret."
        )

    return credentials


def _from_record(record: StripeConfig) -> StripeCredentials:
    secret_key = (record.secret_key or "").strip()
    if not secret_key:
        raise ConfigurationError(
            "The active Stripe configuration has no secret key. Add it to the stored configuration."
        )

    key_mode = classify_secret_key(secret_key)
    if key_mode is Mode.UNKNOWN:
        raise ConfigurationError(
            "The active Stripe secret key is not a recognised sk_/rk_ test or live key."
        )

    declared = (record.environment or "").strip().lower()
    if declared != key_mode.value:
        raise ConfigurationError(
            f"The active Stripe configuration is declared as '{declared}' "
            f"but its secret key is a {key_mode.value} key."
        )

    return StripeCredentials(
        secret_key=secret_key,
        publishable_key=(record.publishable_key or "").strip() or None,
        webhook_secret=(record.webhook_secret or "").strip() or None,
        environment=key_mode,
        default_product_id=(record.default_product_id or "").strip() or None,
        source="database",
    )


def _from_environment() -> StripeCredentials:
    secret_key = (current_app.config.get("STRIPE_SECRET_KEY") or "").strip()
    if not secret_key:
        raise ConfigurationError(
            "Stripe is not configured. Store a credential set or set STRIPE_SECRET_KEY."
        )

    key_mode = classify_secret_key(secret_key)
    if key_mode is Mode.UNKNOWN:
        raise ConfigurationError("STRIPE_SECRET_KEY is not a recognised sk_/rk_ test or live key.")

    logger.info("Using Stripe credentials from environment", extra={"key_mode": key_mode.value})
    return StripeCredentials(
        secret_key=secret_key,
        publishable_key=current_app.config.get("STRIPE_PUBLISHABLE_KEY"),
        webhook_secret=current_app.config.get("STRIPE_WEBHOOK_SECRET"),
        environment=key_mode,
        source="environment",
    )


def resolve_plan(plan_id) -> SubscriptionPlan:
    plan = SubscriptionPlan.find_active(plan_id)
    if plan is None:
        raise NotFoundError(f"Plan '{plan_id}' does not exist or is not active.")
    return plan
