from datetime import datetime
from types import SimpleNamespace
from unittest.mock import patch

import pytest
import stripe

from models.models import SubscriptionStatus
from services import stripe_client


@pytest.mark.parametrize(
    "error, expected_status",
    [
        (stripe.CardError("declined", None, "card_declined"), 400),
        (stripe.RateLimitError("slow down"), 429),
        (stripe.InvalidRequestError("bad param", "amount"), 400),
        (stripe.AuthenticationError("bad key"), 503),
        (stripe.APIConnectionError("offline"), 503),
        (stripe.APIError("boom"), 502),
        (RuntimeError("unexpected"), 500),
    ],
)
def test_stripe_error_response(error, expected_status):
    message, status = stripe_client.stripe_error_response(error, "Test")
    assert status == expected_status
    assert message


def test_from_timestamp_is_naive_utc():
    assert stripe_client.from_timestamp(0) is None
    assert stripe_client.from_timestamp(None) is None
    assert stripe_client.from_timestamp(1700000000) == datetime(2023, 11, 14, 22, 13, 20)


@pytest.mark.parametrize(
    "remote, expected",
    [
        ("active", SubscriptionStatus.ACTIVE),
        ("trialing", SubscriptionStatus.TRIALING),
        ("past_due", SubscriptionStatus.PAST_DUE),
        ("canceled", SubscriptionStatus.CANCELED),
        ("unpaid", SubscriptionStatus.UNPAID),
        ("incomplete", SubscriptionStatus.UNPAID),
        ("incomplete_expired", SubscriptionStatus.CANCELED),
        ("paused", SubscriptionStatus.PAST_DUE),
        ("something_new", SubscriptionStatus.UNPAID),
        (None, SubscriptionStatus.UNPAID),
    ],
)
def test_remote_status_mapping(remote, expected):
    assert SubscriptionStatus.from_remote(remote) == expected


def test_snapshot_is_none_without_customer():
    with patch.object(stripe.Customer, "list", return_value=SimpleNamespace(data=[])):
        assert stripe_client.fetch_customer_snapshot("nobody@example.com") is None


def test_snapshot_collects_subscriptions_and_invoices():
    customer = stripe.Customer.construct_from({"id": "cus_123", "email": "ayesha@example.com"}, "sk_test_123")
    with patch.object(stripe.Customer, "list", return_value=SimpleNamespace(data=[customer])), \
         patch.object(stripe.Subscription, "list", return_value=SimpleNamespace(data=[{"id": "sub_1"}])) as list_subs, \
         patch.object(stripe.Invoice, "list", return_value=SimpleNamespace(data=[{"id": "in_1"}])) as list_invoices:
        snapshot = stripe_client.fetch_customer_snapshot("ayesha@example.com")

    assert snapshot["customer"]["id"] == "cus_123"
    assert snapshot["subscriptions"] == [{"id": "sub_1"}]
    assert snapshot["invoices"] == [{"id": "in_1"}]
    list_subs.assert_called_once_with(customer="cus_123", status="all", limit=100)
    list_invoices.assert_called_once_with(customer="cus_123", limit=20)
