import logging

import pytest

from subscription_sync.models import SubscriptionStatus
from subscription_sync.services.status_mapper import map_stripe_status


@pytest.mark.parametrize("stripe_status,expected", [
    ("active", SubscriptionStatus.ACTIVE),
    ("trialing", SubscriptionStatus.ACTIVE),
    ("past_due", SubscriptionStatus.INACTIVE),
    ("unpaid", SubscriptionStatus.INACTIVE),
    ("incomplete", SubscriptionStatus.INACTIVE),
    ("incomplete_expired", SubscriptionStatus.INACTIVE),
    ("canceled", SubscriptionStatus.CANCELLED),
])
def test_known_statuses(stripe_status, expected):
    assert map_stripe_status(stripe_status) is expected


@pytest.mark.parametrize("stripe_status", ["paused", "cancelled", "ACTIVE", "", None, "something_new"])
def test_unknown_statuses_are_inactive_and_logged(stripe_status, caplog):
    with caplog.at_level(logging.WARNING, logger="subscription_sync.services.status_mapper"):
        assert map_stripe_status(stripe_status) is SubscriptionStatus.INACTIVE
    assert "Unrecognized Stripe subscription status" in caplog.text


def test_result_is_always_one_of_four_values():
    allowed = {s.value for s in SubscriptionStatus}
    for raw in ["active", "trialing", "past_due", "canceled", "bogus", "unpaid", "incomplete_expired"]:
        assert map_stripe_status(raw).value in allowed
