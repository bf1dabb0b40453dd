"""
Price/environment compatibility checks.

Stripe keys, prices and products each belong to exactly one account mode.
A price created in test mode cannot be sold with a live key and vice versa,
and Stripe reports that situation with an ambiguous "No such price" error.
These checks surface it before checkout with a message that names the side
in each mode.
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from subscription_sync.errors import (
    EnvironmentMismatchError,
    InvalidReferenceError,
    NotFoundError,
    ProcessorError,
    ProcessorErrorKind,
    reclassify_processor_error,
)

logger = logging.getLogger(__name__)

PRICE_REFERENCE = re.compile(r"^price_[A-Za-z0-9_]+$")
PRODUCT_REFERENCE = re.compile(r"^prod_[A-Za-z0-9_]+$")


class Mode(str, Enum):
    TEST = "test"
    LIVE = "live"
    UNKNOWN = "unknown"

    @property
    def other(self):
        if self is Mode.TEST:
            return Mode.LIVE
        if self is Mode.LIVE:
            return Mode.TEST
        return Mode.UNKNOWN


def classify_secret_key(secret_key) -> Mode:
    key = (secret_key or "").strip()
    if key.startswith(("sk_test_", "rk_test_")):
        return Mode.TEST
    if key.startswith(("sk_live_", "rk_live_")):
        return Mode.LIVE
    return Mode.UNKNOWN


def classify_reference(reference) -> Mode:
    """
    Mode encoded in a price/product reference, if any.

    References such as ``price_test_...`` carry their mode in the id body;
    ordinary references do not and are settled by looking them up.
    """
    _, _, body = (reference or "").strip().partition("_")
    if body.startswith("test_"):
        return Mode.TEST
    if body.startswith("live_"):
        return Mode.LIVE
    return Mode.UNKNOWN


def normalize_price_reference(reference) -> str:
    value = (reference or "").strip()
    if not value:
        raise InvalidReferenceError("The plan has no Stripe price configured.")
    if not PRICE_REFERENCE.match(value):
        raise InvalidReferenceError(
            f"'{value}' is not a Stripe price id. Price ids start with 'price_'; "
            "product ids ('prod_') cannot be used as prices."
        )
    return value


def normalize_product_reference(reference) -> Optional[str]:
    value = (reference or "").strip()
    if not value:
        return None
    if not PRODUCT_REFERENCE.match(value):
        raise InvalidReferenceError(f"'{value}' is not a Stripe product id. Product ids start with 'prod_'.")
    return value


@dataclass(frozen=True)
class CompatibilityVerdict:
    key_mode: Mode
    reference_mode: Mode
    confirmed: bool

    @property
    def label(self):
        return "compatible" if self.confirmed else "unverified"

    def log_context(self):
        return {
            "key_mode": self.key_mode.value,
            "reference_mode": self.reference_mode.value,
            "compatibility": self.label,
        }


def _mismatch(key_mode: Mode, reference_mode: Mode, price_id: str) -> EnvironmentMismatchError:
    return EnvironmentMismatchError(
        f"The active Stripe secret key is a {key_mode.value} key but price '{price_id}' "
        f"belongs to {reference_mode.value} mode. Use a {key_mode.value} price for this plan "
        f"or activate {reference_mode.value} credentials.",
        key_mode=key_mode.value,
        reference_mode=reference_mode.value,
        reference=price_id,
    )


def _not_found_for_key(key_mode: Mode, price_id: str) -> NotFoundError:
    # Stripe answers a price from the other mode with a plain resource_missing,
    # so the other mode can only be suggested, never confirmed.
    if key_mode is Mode.UNKNOWN:
        return NotFoundError(
            f"Price '{price_id}' was not found with the active Stripe secret key, whose mode "
            "(test/live) could not be determined. Check that the key and the price come from "
            "the same Stripe account and mode.",
            payload={"keyMode": key_mode.value, "possibleReferenceMode": Mode.UNKNOWN.value},
        )
    other = key_mode.other
    return NotFoundError(
        f"Price '{price_id}' was not found with the active {key_mode.value} mode secret key. "
        f"It may have been created in {other.value} mode: use a {key_mode.value} mode price for "
        f"this plan or activate {other.value} mode credentials.",
        payload={"keyMode": key_mode.value, "possibleReferenceMode": other.value},
    )


class PriceCompatibilityValidator:
    """Checks that a price belongs to the same account mode as the secret key."""

    def __init__(self, stripe_service):
        self.stripe_service = stripe_service

    def validate(self, price_id: str, product_id: Optional[str] = None) -> CompatibilityVerdict:
        key_mode = classify_secret_key(self.stripe_service.credentials.secret_key)
        reference_mode = classify_reference(price_id)

        if reference_mode is not Mode.UNKNOWN and reference_mode is not key_mode:
            logger.error(
                "Price reference mode does not match secret key mode",
                extra={"price_id": price_id, "key_mode": key_mode.value, "reference_mode": reference_mode.value},
            )
            raise _mismatch(key_mode, reference_mode, price_id)

        try:
            price = self.stripe_service.retrieve_price(price_id)
        except ProcessorError as e:
            if e.code == "resource_missing":
                logger.error(
                    "Price not found for active credentials",
                    extra={"price_id": price_id, "key_mode": key_mode.value, **e.log_context()},
                )
                raise _not_found_for_key(key_mode, price_id) from e
            if e.kind in (ProcessorErrorKind.AUTHENTICATION, ProcessorErrorKind.PERMISSION):
                raise reclassify_processor_error(e, subject=f"Price '{price_id}'") from e

            logger.warning(
                "Could not verify price mode, continuing with checkout",
                extra={"price_id": price_id, "key_mode": key_mode.value, **e.log_context()},
            )
            return CompatibilityVerdict(key_mode, reference_mode, confirmed=False)

        livemode = price.get("livemode")
        if livemode is not None:
            reference_mode = Mode.LIVE if livemode else Mode.TEST
            if reference_mode is not key_mode:
                logger.error(
                    "Price exists in the other Stripe mode",
                    extra={"price_id": price_id, "key_mode": key_mode.value, "reference_mode": reference_mode.value},
                )
                raise _mismatch(key_mode, reference_mode, price_id)

        if price.get("active") is False:
            raise InvalidReferenceError(
                f"Price '{price_id}' is archived in Stripe. Configure an active price for this plan."
            )

        price_product = price.get("product")
        if isinstance(price_product, dict):
            price_product = price_product.get("id")
        if product_id and price_product and price_product != product_id:
            logger.warning(
                "Price belongs to a different product than configured",
                extra={"price_id": price_id, "expected_product": product_id, "actual_product": price_product},
            )

        verdict = CompatibilityVerdict(key_mode, reference_mode, confirmed=livemode is not None)
        logger.info("Price compatibility checked", extra={"price_id": price_id, **verdict.log_context()})
        return verdict
