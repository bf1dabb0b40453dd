import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from subscription_sync.errors import PersistenceError, ProcessorError
from subscription_sync.models import ProcessedStripeEvent
from subscription_sync.observability import get_metrics
from subscription_sync.services.stripe_service import StripeService
from subscription_sync.services.subscription_reconciler import SubscriptionReconciler

logger = logging.getLogger(__name__)


@dataclass
class WebhookOutcome:
    event_id: Optional[str]
    event_type: Optional[str]
    outcome: str
    result: Dict[str, Any] = field(default_factory=dict)

    def to_response(self):
        body = {"received": True}
        if self.outcome == "duplicate":
            body["duplicate"] = True
        elif self.outcome == "ignored":
            body["ignored"] = True
        return body


class StripeWebhookDispatcher:
    """
    Verifies a Stripe delivery and routes it to the reconciler.

    Order of work: signature check on the raw body, event id dedup, handler,
    then the event id is recorded. Failures that Stripe should retry
    (transient Stripe errors, database errors) propagate; anything else is
    logged and acknowledged.
    """

    def __init__(self, stripe_service: Optional[StripeService] = None, reconciler: Optional[SubscriptionReconciler] = None):
        self._stripe_service = stripe_service
        self._reconciler = reconciler

    @property
    def stripe_service(self):
        if self._stripe_service is None:
            self._stripe_service = StripeService.from_active_credentials(require_webhook_secret=True)
        return self._stripe_service

    @property
    def reconciler(self):
        if self._reconciler is None:
            self._reconciler = SubscriptionReconciler(self.stripe_service)
        return self._reconciler

    def handlers(self):
        reconciler = self.reconciler
        return {
            "checkout.session.completed": reconciler.handle_checkout_completed,
            "customer.subscription.created": lambda obj: reconciler.handle_subscription_changed(obj, "customer.subscription.created"),
            "customer.subscription.updated": lambda obj: reconciler.handle_subscription_changed(obj, "customer.subscription.updated"),
            "customer.subscription.deleted": reconciler.handle_subscription_deleted,
            "invoice.payment_succeeded": reconciler.handle_invoice_payment_succeeded,
            "invoice.payment_failed": reconciler.handle_invoice_payment_failed,
        }

    def dispatch(self, payload: bytes, sig_header: Optional[str]) -> WebhookOutcome:
        metrics = get_metrics()
        try:
            event = self.stripe_service.parse_webhook_event(payload, sig_header)
        except Exception:
            metrics.record_webhook("unverified", "rejected")
            raise

        event_id = event["id"]
        event_type = event["type"]
        context = {"event_id": event_id, "event_type": event_type, "livemode": event.get("livemode")}

        if ProcessedStripeEvent.is_processed(event_id):
            logger.info("Duplicate Stripe event ignored", extra=context)
            metrics.record_webhook(event_type, "duplicate")
            return WebhookOutcome(event_id, event_type, "duplicate")

        handler = self.handlers().get(event_type)
        if handler is None:
            logger.info("Unhandled Stripe event type acknowledged", extra=context)
            metrics.record_webhook(event_type, "ignored")
            return WebhookOutcome(event_id, event_type, "ignored")

        data_object = (event.get("data") or {}).get("object") or {}
        logger.info("Processing Stripe event", extra=context)

        try:
            result = handler(data_object).to_dict()
            outcome = "processed"
        except ProcessorError as e:
            if e.retryable:
                metrics.record_webhook(event_type, "failed")
                raise
            logger.error("Stripe event could not be reconciled", extra={**context, **e.log_context()})
            result = {"action": "skipped", "reason": e.code or e.kind.value}
            outcome = "absorbed"
        except PersistenceError:
            metrics.record_webhook(event_type, "failed")
            raise

        if not ProcessedStripeEvent.mark_processed(event_id, event_type, event.get("livemode")):
            logger.info("Stripe event recorded by a concurrent delivery", extra=context)

        metrics.record_webhook(event_type, outcome)
        logger.info("Stripe event handled", extra={**context, "outcome": outcome, **result})
        return WebhookOutcome(event_id, event_type, outcome, result)
