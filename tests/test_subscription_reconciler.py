import time
from datetime import timedelta
from unittest.mock import MagicMock, Mock, patch

import pytest
import requests
import stripe

from subscription_sync.errors import ProcessorError
from subscription_sync.extensions import db
from subscription_sync.models import AuditLog, SubscriptionStatus, UserSubscription
from subscription_sync.services.credentials import resolve_active_credentials
from subscription_sync.services.stripe_service import StripeService
from subscription_sync.services.subscription_reconciler import SubscriptionReconciler
from subscription_sync.utils.timeutils import from_unix, utcnow

pytestmark = [pytest.mark.db, pytest.mark.payment]

TERM = timedelta(days=365)
TOLERANCE = timedelta(seconds=5)


@pytest.fixture()
def notifier():
    return Mock()


@pytest.fixture()
def reconciler(stripe_config, notifier):
    return SubscriptionReconciler(StripeService(resolve_active_credentials()), notifier=notifier)


def reload_row(user_id):
    db.session.expire_all()
    return UserSubscription.query.filter_by(user_id=user_id).one()


class TestCheckoutCompleted:
    def test_new_user_row_inserted_with_term_from_period_start(
        self, reconciler, notifier, plan, user_id, stripe_subscription, checkout_session_payload, stripe_resource
    ):
        period_start = int(time.time()) - 3600
        session = checkout_session_payload(user_id, plan.id)
        subscription = stripe_resource(
            stripe.Subscription, stripe_subscription(user_id, plan.id, period_start=period_start)
        )

        with patch("stripe.Subscription.retrieve") as mock_retrieve:
            mock_retrieve.return_value = subscription
            result = reconciler.handle_checkout_completed(session)

        mock_retrieve.assert_called_once_with("sub_New123", api_key="sk_test_51MockKeyForTests")
        assert result.action == "created"
        assert result.activated

        row = reload_row(user_id)
        assert row.status == SubscriptionStatus.ACTIVE.value
        assert row.plan_id == plan.id
        assert row.stripe_customer_id == "cus_New123"
        assert row.stripe_subscription_id == "sub_New123"
        assert row.started_at == from_unix(period_start)
        assert row.expires_at - row.started_at == TERM

        notifier.notify_subscription_activated.assert_called_once_with(user_id, plan.id, "Pro")
        assert AuditLog.query.filter_by(action="subscription_created", user_id=user_id).count() == 1

    def test_replay_yields_single_identical_row(
        self, reconciler, notifier, plan, user_id, stripe_subscription, checkout_session_payload
    ):
        session = checkout_session_payload(user_id, plan.id)
        payload = stripe_subscription(user_id, plan.id, period_start=int(time.time()) - 60)

        with patch("stripe.Subscription.retrieve", return_value=payload):
            reconciler.handle_checkout_completed(session)
            first = reload_row(user_id).to_dict()
            second_result = reconciler.handle_checkout_completed(session)

        second = reload_row(user_id).to_dict()
        assert UserSubscription.query.filter_by(user_id=user_id).count() == 1
        for key in ("plan_id", "status", "started_at", "expires_at", "stripe_subscription_id"):
            assert first[key] == second[key]
        assert second_result.action == "unchanged"
        assert notifier.notify_subscription_activated.call_count == 1

    def test_resubscribe_renews_from_now(
        self, reconciler, plan, user_id, make_row, stripe_subscription, checkout_session_payload
    ):
        original_start = utcnow() - timedelta(days=200)
        make_row(user_id, plan, status="active", started_at=original_start, subscription_id="sub_Old")

        before = utcnow()
        with patch("stripe.Subscription.retrieve", return_value=stripe_subscription(user_id, plan.id)):
            result = reconciler.handle_checkout_completed(checkout_session_payload(user_id, plan.id))
        after = utcnow()

        row = reload_row(user_id)
        assert result.action == "renewed"
        assert before + TERM - TOLERANCE <= row.expires_at <= after + TERM + TOLERANCE
        assert row.expires_at != original_start + TERM
        assert row.stripe_subscription_id == "sub_New123"
        assert UserSubscription.query.count() == 1

    def test_inactive_to_active_notifies(
        self, reconciler, notifier, plan, user_id, make_row, stripe_subscription, checkout_session_payload
    ):
        make_row(user_id, plan, status="inactive")

        with patch("stripe.Subscription.retrieve", return_value=stripe_subscription(user_id, plan.id)):
            result = reconciler.handle_checkout_completed(checkout_session_payload(user_id, plan.id))

        assert result.activated
        notifier.notify_subscription_activated.assert_called_once()

    def test_stale_period_is_downgraded_to_expired(
        self, reconciler, notifier, plan, user_id, stripe_subscription, checkout_session_payload
    ):
        period_start = int(time.time()) - 400 * 86400

        with patch("stripe.Subscription.retrieve", return_value=stripe_subscription(user_id, plan.id, period_start=period_start)):
            result = reconciler.handle_checkout_completed(checkout_session_payload(user_id, plan.id))

        row = reload_row(user_id)
        assert row.status == SubscriptionStatus.EXPIRED.value
        assert result.action == "expired"
        assert not result.activated
        notifier.notify_subscription_activated.assert_not_called()

    def test_missing_period_start_defaults_to_now(
        self, reconciler, plan, user_id, stripe_subscription, checkout_session_payload
    ):
        payload = stripe_subscription(user_id, plan.id)
        payload.pop("current_period_start")

        before = utcnow()
        with patch("stripe.Subscription.retrieve", return_value=payload):
            reconciler.handle_checkout_completed(checkout_session_payload(user_id, plan.id))

        row = reload_row(user_id)
        assert row.started_at >= before - TOLERANCE
        assert row.expires_at - row.started_at == TERM

    def test_period_start_read_from_items(
        self, reconciler, plan, user_id, stripe_subscription, checkout_session_payload
    ):
        period_start = int(time.time()) - 7200
        payload = stripe_subscription(user_id, plan.id)
        payload.pop("current_period_start")
        payload["items"] = {"data": [{"id": "si_1", "current_period_start": period_start}]}

        with patch("stripe.Subscription.retrieve", return_value=payload):
            reconciler.handle_checkout_completed(checkout_session_payload(user_id, plan.id))

        assert reload_row(user_id).started_at == from_unix(period_start)

    def test_missing_metadata_aborts_without_lookup(self, reconciler, plan):
        session = {"id": "cs_test_1", "subscription": "sub_1", "metadata": {"plan_id": plan.id}}

        with patch("stripe.Subscription.retrieve") as mock_retrieve:
            result = reconciler.handle_checkout_completed(session)

        assert result.skipped
        mock_retrieve.assert_not_called()
        assert UserSubscription.query.count() == 0

    def test_unknown_plan_aborts(self, reconciler, user_id, checkout_session_payload):
        with patch("stripe.Subscription.retrieve") as mock_retrieve:
            result = reconciler.handle_checkout_completed(checkout_session_payload(user_id, "gone-plan"))

        assert result.skipped
        mock_retrieve.assert_not_called()

    def test_processor_failure_propagates_and_writes_nothing(
        self, reconciler, plan, user_id, checkout_session_payload
    ):
        with patch("stripe.Subscription.retrieve", side_effect=stripe.APIConnectionError("timeout")):
            with pytest.raises(ProcessorError):
                reconciler.handle_checkout_completed(checkout_session_payload(user_id, plan.id))

        assert UserSubscription.query.count() == 0

    def test_plan_mismatch_retried_once_then_accepted(
        self, reconciler, plan, user_id, stripe_subscription, checkout_session_payload, caplog
    ):
        stale = MagicMock(plan_id="stale-plan", status="active", user_id=user_id, expires_at=None)
        stale.is_lapsed.return_value = False

        with patch("stripe.Subscription.retrieve", return_value=stripe_subscription(user_id, plan.id)), \
                patch.object(reconciler, "_reload", return_value=stale) as mock_reload, \
                patch.object(reconciler, "_write_update", wraps=reconciler._write_update) as mock_write:
            reconciler.handle_checkout_completed(checkout_session_payload(user_id, plan.id))

        assert mock_reload.call_count == 2
        assert mock_write.call_count == 1
        assert "Plan mismatch persisted after retry" in caplog.text

    def test_notification_failure_does_not_fail_reconciliation(
        self, app, stripe_config, plan, user_id, stripe_subscription, checkout_session_payload
    ):
        app.config["NOTIFICATION_WEBHOOK_URL"] = "https://notify.example/hook"
        reconciler = SubscriptionReconciler(StripeService(resolve_active_credentials()))

        with patch("stripe.Subscription.retrieve", return_value=stripe_subscription(user_id, plan.id)), \
                patch("requests.post", side_effect=requests.ConnectionError("refused")) as mock_post:
            result = reconciler.handle_checkout_completed(checkout_session_payload(user_id, plan.id))

        mock_post.assert_called_once()
        assert result.action == "created"
        assert reload_row(user_id).status == "active"


class TestSubscriptionChanged:
    def test_update_without_plan_metadata_preserves_plan(
        self, reconciler, plan, user_id, make_row, stripe_subscription
    ):
        make_row(user_id, plan, status="active", customer_id="cus_Existing123", subscription_id="sub_Existing123")
        payload = stripe_subscription(
            status="past_due", subscription_id="sub_Existing123", customer_id="cus_Existing123"
        )

        result = reconciler.handle_subscription_changed(payload)

        row = reload_row(user_id)
        assert result.user_id == user_id
        assert row.plan_id == plan.id
        assert row.status == SubscriptionStatus.INACTIVE.value

    def test_unknown_plan_metadata_keeps_stored_plan(
        self, reconciler, plan, user_id, make_row, stripe_subscription
    ):
        make_row(user_id, plan, subscription_id="sub_Existing123")
        payload = stripe_subscription(user_id, "deleted-plan", subscription_id="sub_Existing123")

        reconciler.handle_subscription_changed(payload)

        assert reload_row(user_id).plan_id == plan.id

    def test_plan_change_applied(self, reconciler, plan, other_plan, user_id, make_row, stripe_subscription):
        make_row(user_id, plan, subscription_id="sub_Existing123")
        payload = stripe_subscription(user_id, other_plan.id, subscription_id="sub_Existing123")

        reconciler.handle_subscription_changed(payload)

        assert reload_row(user_id).plan_id == other_plan.id

    def test_same_period_update_keeps_expiry(self, reconciler, plan, user_id, make_row, stripe_subscription):
        period_start = int(time.time()) - 86400
        started_at = from_unix(period_start)
        make_row(user_id, plan, status="active", started_at=started_at, subscription_id="sub_Existing123")

        payload = stripe_subscription(user_id, plan.id, period_start=period_start, subscription_id="sub_Existing123")
        result = reconciler.handle_subscription_changed(payload)

        row = reload_row(user_id)
        assert result.action == "unchanged"
        assert row.expires_at == started_at + TERM

    def test_new_period_renews(self, reconciler, plan, user_id, make_row, stripe_subscription):
        make_row(user_id, plan, status="active", started_at=utcnow() - timedelta(days=364), subscription_id="sub_Existing123")

        before = utcnow()
        payload = stripe_subscription(user_id, plan.id, subscription_id="sub_Existing123")
        result = reconciler.handle_subscription_changed(payload)

        assert result.action == "renewed"
        assert reload_row(user_id).expires_at >= before + TERM - TOLERANCE

    def test_created_before_checkout_completed_inserts(self, reconciler, plan, user_id, stripe_subscription):
        result = reconciler.handle_subscription_changed(
            stripe_subscription(user_id, plan.id), "customer.subscription.created"
        )

        assert result.action == "created"
        assert reload_row(user_id).plan_id == plan.id

    def test_unknown_customer_skipped(self, reconciler, stripe_subscription):
        result = reconciler.handle_subscription_changed(stripe_subscription(customer_id="cus_Nobody"))

        assert result.skipped
        assert UserSubscription.query.count() == 0

    def test_event_for_replaced_subscription_ignored(self, reconciler, plan, user_id, make_row, stripe_subscription):
        make_row(user_id, plan, status="active", subscription_id="sub_Current")
        payload = stripe_subscription(user_id, plan.id, status="past_due", subscription_id="sub_Previous")

        result = reconciler.handle_subscription_changed(payload)

        assert result.skipped
        assert reload_row(user_id).status == "active"


class TestSubscriptionDeleted:
    def test_cancelled_with_processor_end_time(self, reconciler, plan, user_id, make_row, stripe_subscription):
        make_row(user_id, plan, status="active", customer_id="cus_Existing123", subscription_id="sub_Existing123")
        ended_at = int(time.time()) - 120
        payload = stripe_subscription(
            status="canceled",
            subscription_id="sub_Existing123",
            customer_id="cus_Existing123",
            ended_at=ended_at,
        )

        result = reconciler.handle_subscription_deleted(payload)

        row = reload_row(user_id)
        assert result.action == "cancelled"
        assert row.status == SubscriptionStatus.CANCELLED.value
        assert row.expires_at == from_unix(ended_at)
        assert row.plan_id == plan.id
        assert AuditLog.query.filter_by(action="subscription_cancelled").count() == 1

    def test_deleting_replaced_subscription_keeps_current(self, reconciler, plan, user_id, make_row, stripe_subscription):
        make_row(user_id, plan, status="active", subscription_id="sub_Current")
        payload = stripe_subscription(user_id, status="canceled", subscription_id="sub_Previous", ended_at=int(time.time()))

        result = reconciler.handle_subscription_deleted(payload)

        assert result.skipped
        assert reload_row(user_id).status == "active"

    def test_unknown_subscription_skipped(self, reconciler, stripe_subscription):
        result = reconciler.handle_subscription_deleted(stripe_subscription(status="canceled", customer_id="cus_Nobody"))
        assert result.skipped


class TestInvoices:
    def test_payment_failed_deactivates(self, reconciler, plan, user_id, make_row):
        make_row(user_id, plan, status="active", subscription_id="sub_Existing123")
        invoice = {"id": "in_1", "subscription": "sub_Existing123", "customer": "cus_Existing123", "amount_due": 9900}

        result = reconciler.handle_invoice_payment_failed(invoice)

        assert result.action == "deactivated"
        assert reload_row(user_id).status == SubscriptionStatus.INACTIVE.value
        assert AuditLog.query.filter_by(action="invoice_payment_failed", resource_id="in_1").count() == 1

    def test_payment_failed_for_replaced_subscription_keeps_current(self, reconciler, plan, user_id, make_row):
        make_row(user_id, plan, status="active", subscription_id="sub_Current", customer_id="cus_Same")
        invoice = {"id": "in_old", "subscription": "sub_OldReplaced", "customer": "cus_Same", "amount_due": 9900}

        result = reconciler.handle_invoice_payment_failed(invoice)

        row = reload_row(user_id)
        assert result.skipped
        assert row.status == "active"
        assert row.stripe_subscription_id == "sub_Current"
        assert AuditLog.query.filter_by(action="invoice_payment_failed").count() == 0

    def test_payment_succeeded_only_records(self, reconciler, plan, user_id, make_row):
        row = make_row(user_id, plan, status="inactive", subscription_id="sub_Existing123")
        expires_at = row.expires_at
        invoice = {"id": "in_2", "subscription": "sub_Existing123", "customer": "cus_Existing123", "amount_paid": 9900}

        result = reconciler.handle_invoice_payment_succeeded(invoice)

        row = reload_row(user_id)
        assert result.action == "recorded"
        assert row.status == "inactive"
        assert row.expires_at == expires_at
        audit = AuditLog.query.filter_by(action="invoice_payment_succeeded").one()
        assert audit.details["amount_paid"] == 9900

    def test_subscription_id_from_invoice_parent(self, reconciler, plan, user_id, make_row):
        make_row(user_id, plan, status="active", subscription_id="sub_Existing123")
        invoice = {
            "id": "in_3",
            "customer": "cus_Existing123",
            "parent": {"subscription_details": {"subscription": "sub_Existing123"}},
        }

        reconciler.handle_invoice_payment_failed(invoice)

        assert reload_row(user_id).status == "inactive"

    def test_invoice_without_subscription_skipped(self, reconciler):
        assert reconciler.handle_invoice_payment_failed({"id": "in_4", "customer": "cus_X"}).skipped
        assert reconciler.handle_invoice_payment_succeeded({"id": "in_5", "customer": "cus_X"}).skipped
        assert AuditLog.query.count() == 0
