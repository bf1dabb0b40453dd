import hashlib
import hmac
import json
import time
from datetime import timedelta
from decimal import Decimal

import pytest
from faker import Faker

from subscription_sync import create_app
from subscription_sync.extensions import db
from subscription_sync.models import StripeConfig, SubscriptionPlan, UserSubscription
from subscription_sync.utils.timeutils import utcnow

# Initialize Faker for generating test data
fake = Faker()

WEBHOOK_SECRET = "whsec_test_secret"
TEST_SECRET_KEY = "sk_test_51MockKeyForTests"
LIVE_SECRET_KEY = "sk_live_51MockKeyForTests"


# Custom pytest marks for organizing tests
def pytest_configure(config):
    config.addinivalue_line(
        "markers",
        "db: mark test as database-intensive"
    )
    config.addinivalue_line(
        "markers",
        "payment: mark test as payment-related"
    )
    config.addinivalue_line(
        "markers",
        "webhook: mark test as Stripe webhook related"
    )


@pytest.fixture()
def app():
    """Application over a fresh in-memory database for every test"""
    app = create_app("testing")

    with app.app_context():
        db.create_all()

        yield app

        db.session.remove()
        db.drop_all()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def user_id():
    return fake.uuid4()


@pytest.fixture()
def stripe_config(app):
    """Active test-mode credential set"""
    record = StripeConfig(
        secret_key=TEST_SECRET_KEY,
        publishable_key="pk_test_51MockKeyForTests",
        webhook_secret=WEBHOOK_SECRET,
        environment="test",
        is_active=True,
    )
    db.session.add(record)
    db.session.commit()
    return record


@pytest.fixture()
def plan(app):
    plan = SubscriptionPlan(
        name="Pro",
        description="Full library access",
        price=Decimal("99.00"),
        stripe_price_id="price_1ProMonthly",
        stripe_product_id="prod_ProLibrary",
        is_active=True,
    )
    db.session.add(plan)
    db.session.commit()
    return plan


@pytest.fixture()
def other_plan(app):
    plan = SubscriptionPlan(
        name="Team",
        price=Decimal("249.00"),
        stripe_price_id="price_1TeamMonthly",
        is_active=True,
    )
    db.session.add(plan)
    db.session.commit()
    return plan


@pytest.fixture()
def free_plan(app):
    plan = SubscriptionPlan(name="Free", price=Decimal("0"), is_active=True)
    db.session.add(plan)
    db.session.commit()
    return plan


@pytest.fixture()
def make_row(app):
    """Persist a user_subscriptions row"""

    def _make_row(user_id, plan, status="active", started_at=None, expires_at=None,
                  customer_id="cus_Existing123", subscription_id="sub_Existing123"):
        started_at = started_at or (utcnow() - timedelta(days=30))
        row = UserSubscription(
            user_id=user_id,
            plan_id=plan.id if plan is not None else None,
            status=status,
            stripe_customer_id=customer_id,
            stripe_subscription_id=subscription_id,
            started_at=started_at,
            expires_at=expires_at or started_at + timedelta(days=365),
        )
        db.session.add(row)
        db.session.commit()
        return row

    return _make_row


@pytest.fixture()
def stripe_subscription():
    """Factory for Stripe subscription payloads"""

    def _stripe_subscription(user_id=None, plan_id=None, status="active", period_start=None,
                             subscription_id="sub_New123", customer_id="cus_New123", **extra):
        metadata = {}
        if user_id:
            metadata["user_id"] = user_id
        if plan_id:
            metadata["plan_id"] = plan_id
        payload = {
            "id": subscription_id,
            "object": "subscription",
            "customer": customer_id,
            "status": status,
            "current_period_start": period_start if period_start is not None else int(time.time()),
            "metadata": metadata,
        }
        payload.update(extra)
        return payload

    return _stripe_subscription


@pytest.fixture()
def stripe_resource():
    """Wrap a payload in the resource class the Stripe client returns"""

    def _stripe_resource(resource_class, payload):
        return resource_class.construct_from(payload, TEST_SECRET_KEY)

    return _stripe_resource


@pytest.fixture()
def checkout_session_payload():
    def _checkout_session(user_id, plan_id, subscription_id="sub_New123", customer_id="cus_New123"):
        return {
            "id": f"cs_test_{fake.lexify('????????')}",
            "object": "checkout.session",
            "mode": "subscription",
            "payment_status": "paid",
            "customer": customer_id,
            "subscription": subscription_id,
            "metadata": {"user_id": user_id, "plan_id": plan_id, "plan_name": "Pro"},
        }

    return _checkout_session


def sign_payload(payload, secret=WEBHOOK_SECRET, timestamp=None):
    """Build a Stripe-Signature header the same way Stripe does."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def make_event(event_type, data_object, event_id=None):
    return {
        "id": event_id or f"evt_{fake.lexify('????????????')}",
        "object": "event",
        "type": event_type,
        "livemode": False,
        "created": int(time.time()),
        "data": {"object": data_object},
    }


@pytest.fixture()
def post_webhook(client):
    """Send a signed event to the webhook endpoint"""

    def _post_webhook(event, secret=WEBHOOK_SECRET, signature=None):
        payload = json.dumps(event)
        headers = {"Stripe-Signature": signature or sign_payload(payload, secret)}
        return client.post(
            "/webhooks/stripe",
            data=payload,
            headers=headers,
            content_type="application/json",
        )

    return _post_webhook


@pytest.fixture()
def event_factory():
    return make_event


@pytest.fixture()
def signer():
    return sign_payload
