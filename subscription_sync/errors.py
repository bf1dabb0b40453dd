"""
Error taxonomy for checkout, webhook and reconciliation flows.

Every error raised towards a caller is a ``BillingError`` carrying the HTTP
status it maps to, a short ``error`` label and a human readable ``details``
string that says what to fix.
"""

from enum import Enum
from typing import Any, Dict, Optional, Type

import stripe


class BillingError(Exception):
    status_code = 500
    error = "Billing error"

    def __init__(self, details: str, status_code: Optional[int] = None, payload: Optional[Dict[str, Any]] = None):
        super().__init__(details)
        self.details = details
        if status_code is not None:
            self.status_code = status_code
        self.payload = payload or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.error, "details": self.details, **self.payload}


class ConfigurationError(BillingError):
    """Missing or invalid processor credentials or application settings."""

    status_code = 500
    error = "Configuration error"


class ValidationError(BillingError):
    status_code = 400
    error = "Validation error"


class InvalidPlanError(ValidationError):
    """The plan cannot be sold through checkout (free or misconfigured)."""

    error = "Invalid plan"


class InvalidReferenceError(ValidationError):
    """A price or product reference does not match the processor grammar."""

    error = "Invalid reference"


class EnvironmentMismatchError(BillingError):
    """Secret key and price reference belong to different account modes."""

    status_code = 400
    error = "Environment mismatch"

    def __init__(self, details: str, key_mode: str, reference_mode: str, reference: Optional[str] = None):
        super().__init__(
            details,
            payload={"keyMode": key_mode, "referenceMode": reference_mode},
        )
        self.key_mode = key_mode
        self.reference_mode = reference_mode
        self.reference = reference


class NotFoundError(BillingError):
    status_code = 404
    error = "Not found"


class SignatureError(BillingError):
    status_code = 400
    error = "Invalid signature"


class PersistenceError(BillingError):
    status_code = 500
    error = "Persistence error"


class ProcessorErrorKind(str, Enum):
    INVALID_REQUEST = "invalid_request_error"
    AUTHENTICATION = "authentication_error"
    PERMISSION = "permission_error"
    RATE_LIMIT = "rate_limit_error"
    CONNECTION = "api_connection_error"
    API = "api_error"
    CARD = "card_error"
    IDEMPOTENCY = "idempotency_error"
    UNKNOWN = "unknown"


# Most specific classes first, every stripe error ends up in one bucket.
_STRIPE_ERROR_KINDS = (
    (stripe.InvalidRequestError, ProcessorErrorKind.INVALID_REQUEST),
    (stripe.AuthenticationError, ProcessorErrorKind.AUTHENTICATION),
    (stripe.PermissionError, ProcessorErrorKind.PERMISSION),
    (stripe.RateLimitError, ProcessorErrorKind.RATE_LIMIT),
    (stripe.APIConnectionError, ProcessorErrorKind.CONNECTION),
    (stripe.CardError, ProcessorErrorKind.CARD),
    (stripe.IdempotencyError, ProcessorErrorKind.IDEMPOTENCY),
    (stripe.APIError, ProcessorErrorKind.API),
)

_RETRYABLE_KINDS = frozenset({
    ProcessorErrorKind.RATE_LIMIT,
    ProcessorErrorKind.CONNECTION,
    ProcessorErrorKind.API,
    ProcessorErrorKind.UNKNOWN,
})


class ProcessorError(BillingError):
    """
    Wraps every failure returned by the payment processor.

    ``kind`` and ``code`` are structured values taken from the processor
    response; callers branch on them, never on the message text.
    """

    status_code = 500
    error = "Payment processor error"

    def __init__(
        self,
        kind: ProcessorErrorKind,
        code: Optional[str] = None,
        http_status: Optional[int] = None,
        processor_message: Optional[str] = None,
        operation: Optional[str] = None,
    ):
        super().__init__("The payment processor request failed. Please try again.")
        self.kind = kind
        self.code = code
        self.http_status = http_status
        self.processor_message = processor_message
        self.operation = operation

    @property
    def retryable(self) -> bool:
        return self.kind in _RETRYABLE_KINDS

    @classmethod
    def from_stripe(cls, exc: Exception, operation: Optional[str] = None) -> "ProcessorError":
        kind = ProcessorErrorKind.UNKNOWN
        for error_class, error_kind in _STRIPE_ERROR_KINDS:
            if isinstance(exc, error_class):
                kind = error_kind
                break

        return cls(
            kind=kind,
            code=getattr(exc, "code", None),
            http_status=getattr(exc, "http_status", None),
            processor_message=getattr(exc, "user_message", None) or str(exc),
            operation=operation,
        )

    def log_context(self) -> Dict[str, Any]:
        return {
            "processor_kind": self.kind.value,
            "processor_code": self.code,
            "processor_http_status": self.http_status,
            "processor_operation": self.operation,
            "processor_message": self.processor_message,
        }


_CODE_CLASSES: Dict[str, Type[BillingError]] = {
    "resource_missing": NotFoundError,
    "parameter_invalid_empty": ValidationError,
    "parameter_invalid_integer": ValidationError,
    "parameter_invalid_string_empty": ValidationError,
    "parameter_missing": ValidationError,
    "parameter_unknown": ValidationError,
    "url_invalid": ValidationError,
    "api_key_expired": ConfigurationError,
}

_KIND_CLASSES: Dict[ProcessorErrorKind, Type[BillingError]] = {
    ProcessorErrorKind.AUTHENTICATION: ConfigurationError,
    ProcessorErrorKind.PERMISSION: ConfigurationError,
    ProcessorErrorKind.INVALID_REQUEST: ValidationError,
    ProcessorErrorKind.CARD: ValidationError,
}

_DETAILS = {
    NotFoundError: (
        "{subject} was not found in the Stripe account of the active credentials. "
        "Check that it was created in the same mode (test/live) as the secret key."
    ),
    ValidationError: "Stripe rejected the request for {subject}: {message}",
    ConfigurationError: (
        "Stripe rejected the active credentials. Check the secret key configured for this environment."
    ),
}


def reclassify_processor_error(error: ProcessorError, subject: str = "The requested resource") -> BillingError:
    """
    Map a ``ProcessorError`` onto the caller-facing taxonomy.

    The processor code is looked up first, then the error kind. Anything
    without a mapping stays a sanitized ``ProcessorError``.
    """
    target = None
    if error.code:
        target = _CODE_CLASSES.get(error.code)
    if target is None:
        target = _KIND_CLASSES.get(error.kind)
    if target is None:
        return error

    details = _DETAILS[target].format(
        subject=subject,
        message=error.processor_message or error.code or error.kind.value,
    )
    mapped = target(details)
    mapped.__cause__ = error
    return mapped


__all__ = [
    "BillingError",
    "ConfigurationError",
    "EnvironmentMismatchError",
    "InvalidPlanError",
    "InvalidReferenceError",
    "NotFoundError",
    "PersistenceError",
    "ProcessorError",
    "ProcessorErrorKind",
    "SignatureError",
    "ValidationError",
    "reclassify_processor_error",
]
