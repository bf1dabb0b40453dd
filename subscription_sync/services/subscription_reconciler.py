"""
Subscription reconciliation.

Stripe delivers webhook events at least once and in any order. Every
handler here converges the single ``user_subscriptions`` row of a user onto
the state Stripe reports, keyed by user id, so replays and reordering end in
the same row.

Expiry rules:
- a new row expires ``SUBSCRIPTION_TERM_DAYS`` after its period start;
- an existing row is renewed (``now`` + term) only when Stripe reports a
  billing period start different from the stored ``started_at``; a replay of
  the same period keeps the stored dates.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from subscription_sync.errors import PersistenceError
from subscription_sync.extensions import db
from subscription_sync.models import SubscriptionPlan, SubscriptionStatus, UserSubscription
from subscription_sync.observability import get_metrics
from subscription_sync.services.audit import log_audit_event
from subscription_sync.services.notification_service import NotificationService
from subscription_sync.services.status_mapper import map_stripe_status
from subscription_sync.services.subscription_access import expire_if_lapsed
from subscription_sync.utils.timeutils import from_unix, utcnow

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    action: str
    user_id: Optional[str] = None
    status: Optional[str] = None
    reason: Optional[str] = None
    activated: bool = False

    @property
    def skipped(self):
        return self.action == "skipped"

    def to_dict(self):
        return {
            "action": self.action,
            "user_id": self.user_id,
            "status": self.status,
            "reason": self.reason,
            "activated": self.activated,
        }


def _skip(reason, **context):
    logger.warning(f"Reconciliation skipped: {reason}", extra=context)
    get_metrics().record_reconciliation("skipped")
    return ReconcileResult(action="skipped", reason=reason, user_id=context.get("user_id"))


def _object_id(value):
    """Stripe fields are either an id or an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value


def period_start(stripe_subscription):
    timestamp = stripe_subscription.get("current_period_start")
    if timestamp is None:
        items = (stripe_subscription.get("items") or {}).get("data") or []
        if items:
            timestamp = items[0].get("current_period_start")
    return from_unix(timestamp)


def invoice_subscription_id(invoice):
    subscription_id = _object_id(invoice.get("subscription"))
    if subscription_id:
        return subscription_id
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or {}
    return _object_id(details.get("subscription"))


class SubscriptionReconciler:
    def __init__(self, stripe_service, notifier=NotificationService, clock=utcnow):
        self.stripe_service = stripe_service
        self.notifier = notifier
        self.clock = clock

    @property
    def term(self):
        return timedelta(days=current_app.config.get("SUBSCRIPTION_TERM_DAYS", 365))

    # ---- event handlers -------------------------------------------------

    def handle_checkout_completed(self, session) -> ReconcileResult:
        metadata = session.get("metadata") or {}
        user_id = metadata.get("user_id")
        plan_id = metadata.get("plan_id")
        session_id = session.get("id")

        if not user_id or not plan_id:
            return _skip("checkout session without user_id/plan_id metadata", session_id=session_id)

        if db.session.get(SubscriptionPlan, plan_id) is None:
            return _skip("plan no longer in catalogue", session_id=session_id, user_id=user_id, plan_id=plan_id)

        subscription_id = _object_id(session.get("subscription"))
        if not subscription_id:
            return _skip("checkout session without subscription", session_id=session_id, user_id=user_id)

        # The embedded subscription can be stale; always read it from Stripe.
        stripe_subscription = self.stripe_service.retrieve_subscription(subscription_id)
        customer_id = _object_id(session.get("customer")) or _object_id(stripe_subscription.get("customer"))

        return self.reconcile(user_id, plan_id, stripe_subscription, customer_id, source="checkout.session.completed")

    def handle_subscription_changed(self, stripe_subscription, event_type="customer.subscription.updated") -> ReconcileResult:
        metadata = stripe_subscription.get("metadata") or {}
        subscription_id = stripe_subscription.get("id")
        customer_id = _object_id(stripe_subscription.get("customer"))
        user_id = metadata.get("user_id")

        existing = UserSubscription.find_by_user(user_id) if user_id else UserSubscription.find_by_customer(customer_id)
        if existing is None and not user_id:
            return _skip("no subscription row for customer", subscription_id=subscription_id, customer_id=customer_id)
        user_id = user_id or existing.user_id

        plan_id = metadata.get("plan_id")
        if plan_id and db.session.get(SubscriptionPlan, plan_id) is None:
            logger.warning(
                "Subscription metadata names an unknown plan, keeping stored plan",
                extra={"user_id": user_id, "plan_id": plan_id},
            )
            plan_id = None

        if not plan_id:
            if existing is None:
                return _skip("new subscription without a known plan", user_id=user_id, subscription_id=subscription_id)
            plan_id = existing.plan_id

        if existing is not None and self._is_superseded(existing, stripe_subscription):
            return _skip("event for a replaced subscription", user_id=user_id, subscription_id=subscription_id)

        return self.reconcile(user_id, plan_id, stripe_subscription, customer_id, source=event_type)

    def handle_subscription_deleted(self, stripe_subscription) -> ReconcileResult:
        metadata = stripe_subscription.get("metadata") or {}
        subscription_id = stripe_subscription.get("id")
        customer_id = _object_id(stripe_subscription.get("customer"))
        user_id = metadata.get("user_id")

        existing = UserSubscription.find_by_user(user_id) if user_id else None
        if existing is None:
            existing = UserSubscription.find_by_customer(customer_id)
        if existing is None:
            return _skip("no subscription row for deleted subscription", subscription_id=subscription_id, customer_id=customer_id)

        if existing.stripe_subscription_id and existing.stripe_subscription_id != subscription_id:
            return _skip("deleted subscription was already replaced", user_id=existing.user_id, subscription_id=subscription_id)

        ended_at = (
            from_unix(stripe_subscription.get("ended_at"))
            or from_unix(stripe_subscription.get("canceled_at"))
            or self.clock()
        )
        self._write_update(existing.user_id, {
            "status": SubscriptionStatus.CANCELLED.value,
            "expires_at": ended_at,
            "stripe_subscription_id": subscription_id,
        })

        log_audit_event(
            "subscription_cancelled",
            "user_subscription",
            resource_id=subscription_id,
            user_id=existing.user_id,
            details={"ended_at": ended_at.isoformat(), "plan_id": existing.plan_id},
        )
        get_metrics().record_reconciliation("cancelled")
        logger.info("Subscription cancelled", extra={"user_id": existing.user_id, "subscription_id": subscription_id})
        return ReconcileResult(action="cancelled", user_id=existing.user_id, status=SubscriptionStatus.CANCELLED.value)

    def handle_invoice_payment_failed(self, invoice) -> ReconcileResult:
        subscription_id = invoice_subscription_id(invoice)
        if not subscription_id:
            return _skip("invoice without subscription", invoice_id=invoice.get("id"))

        existing = self._find_for_invoice(invoice, subscription_id)
        if existing is None:
            return _skip("no subscription row for failed invoice", invoice_id=invoice.get("id"), subscription_id=subscription_id)

        if existing.stripe_subscription_id and existing.stripe_subscription_id != subscription_id:
            return _skip(
                "failed invoice belongs to a replaced subscription",
                user_id=existing.user_id,
                invoice_id=invoice.get("id"),
                subscription_id=subscription_id,
            )

        self._write_update(existing.user_id, {"status": SubscriptionStatus.INACTIVE.value})

        log_audit_event(
            "invoice_payment_failed",
            "invoice",
            resource_id=invoice.get("id"),
            user_id=existing.user_id,
            details={
                "subscription_id": subscription_id,
                "amount_due": invoice.get("amount_due"),
                "attempt_count": invoice.get("attempt_count"),
            },
        )
        get_metrics().record_reconciliation("deactivated")
        logger.warning("Invoice payment failed, subscription deactivated", extra={"user_id": existing.user_id, "invoice_id": invoice.get("id")})
        return ReconcileResult(action="deactivated", user_id=existing.user_id, status=SubscriptionStatus.INACTIVE.value)

    def handle_invoice_payment_succeeded(self, invoice) -> ReconcileResult:
        subscription_id = invoice_subscription_id(invoice)
        if not subscription_id:
            return _skip("invoice without subscription", invoice_id=invoice.get("id"))

        existing = self._find_for_invoice(invoice, subscription_id)
        user_id = existing.user_id if existing else None

        # Status follows the subscription object, an invoice only leaves a trail.
        log_audit_event(
            "invoice_payment_succeeded",
            "invoice",
            resource_id=invoice.get("id"),
            user_id=user_id,
            details={
                "subscription_id": subscription_id,
                "amount_paid": invoice.get("amount_paid"),
                "currency": invoice.get("currency"),
            },
        )
        get_metrics().record_reconciliation("recorded")
        return ReconcileResult(action="recorded", user_id=user_id, status=existing.status if existing else None)

    # ---- core -----------------------------------------------------------

    def reconcile(self, user_id, plan_id, stripe_subscription, customer_id=None, source="reconcile") -> ReconcileResult:
        """Upsert the user's row from a full Stripe subscription object."""
        now = self.clock()
        status = map_stripe_status(stripe_subscription.get("status"))
        started_at = period_start(stripe_subscription) or now
        subscription_id = stripe_subscription.get("id")

        existing = UserSubscription.find_by_user(user_id)
        previous_status = existing.status if existing else None

        values = {
            "plan_id": plan_id,
            "status": status.value,
            "stripe_subscription_id": subscription_id,
        }
        if customer_id:
            values["stripe_customer_id"] = customer_id

        if existing is None:
            values.update(started_at=started_at, expires_at=started_at + self.term)
            if self._insert(user_id, values):
                action = "created"
            else:
                # Lost an insert race against a concurrent delivery for this user.
                values.update(started_at=started_at, expires_at=now + self.term)
                self._write_update(user_id, values)
                action = "updated"
        elif existing.started_at == started_at:
            # Same billing period: a replay or a status-only change.
            self._write_update(user_id, values)
            action = "unchanged" if previous_status == status.value and existing.plan_id == plan_id else "updated"
        else:
            values.update(started_at=started_at, expires_at=now + self.term)
            self._write_update(user_id, values)
            action = "renewed"

        row = self._verify_plan(user_id, plan_id, values)

        if expire_if_lapsed(row, now):
            action = "expired"

        activated = row.status == SubscriptionStatus.ACTIVE.value and previous_status != SubscriptionStatus.ACTIVE.value

        logger.info(
            "Subscription reconciled",
            extra={
                "user_id": user_id,
                "plan_id": plan_id,
                "subscription_id": subscription_id,
                "status": row.status,
                "previous_status": previous_status,
                "action": action,
                "source": source,
            },
        )
        get_metrics().record_reconciliation(action)

        if action != "unchanged":
            log_audit_event(
                "subscription_created" if action == "created" else "subscription_updated",
                "user_subscription",
                resource_id=subscription_id,
                user_id=user_id,
                details={
                    "plan_id": plan_id,
                    "status": row.status,
                    "previous_status": previous_status,
                    "expires_at": row.expires_at.isoformat() if row.expires_at else None,
                    "source": source,
                },
            )

        if activated:
            plan = db.session.get(SubscriptionPlan, plan_id) if plan_id else None
            self.notifier.notify_subscription_activated(user_id, plan_id, plan.name if plan else None)

        return ReconcileResult(action=action, user_id=user_id, status=row.status, activated=activated)

    # ---- persistence ----------------------------------------------------

    def _insert(self, user_id, values):
        db.session.add(UserSubscription(user_id=user_id, **values))
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            if UserSubscription.find_by_user(user_id) is None:
                raise PersistenceError(f"Could not create subscription for user {user_id}.")
            return False
        except SQLAlchemyError as e:
            db.session.rollback()
            raise PersistenceError(f"Could not create subscription for user {user_id}.") from e
        return True

    def _write_update(self, user_id, values):
        try:
            updated = UserSubscription.update_by_user(user_id, values)
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            raise PersistenceError(f"Could not update subscription for user {user_id}.") from e
        return updated

    def _reload(self, user_id):
        db.session.expire_all()
        return UserSubscription.find_by_user(user_id)

    def _verify_plan(self, user_id, plan_id, values):
        """Read back the row; one more write if the plan did not stick, then accept."""
        row = self._reload(user_id)
        if row is not None and row.plan_id == plan_id:
            return row

        logger.warning(
            "Stored plan differs from reconciled plan, retrying once",
            extra={"user_id": user_id, "expected_plan_id": plan_id, "stored_plan_id": row.plan_id if row else None},
        )
        self._write_update(user_id, values)
        row = self._reload(user_id)
        if row is None:
            raise PersistenceError(f"Subscription row for user {user_id} disappeared during reconciliation.")
        if row.plan_id != plan_id:
            logger.warning(
                "Plan mismatch persisted after retry, accepting stored state",
                extra={"user_id": user_id, "expected_plan_id": plan_id, "stored_plan_id": row.plan_id},
            )
        return row

    def _find_for_invoice(self, invoice, subscription_id):
        row = UserSubscription.query.filter_by(stripe_subscription_id=subscription_id).first()
        if row is None:
            row = UserSubscription.find_by_customer(_object_id(invoice.get("customer")))
        return row

    @staticmethod
    def _is_superseded(existing, stripe_subscription):
        """An event about an older subscription must not demote the current one."""
        stored = existing.stripe_subscription_id
        incoming = stripe_subscription.get("id")
        if not stored or not incoming or stored == incoming:
            return False
        return map_stripe_status(stripe_subscription.get("status")) != SubscriptionStatus.ACTIVE
