from datetime import datetime, timedelta
from unittest.mock import patch

import pytest
import stripe

from models.models import (
    AccountRole,
    Donor,
    MembershipStatus,
    Subscription,
    SubscriptionTransaction,
    Transaction,
)
from services.membership_service import derive_overall_status


@pytest.fixture(autouse=True)
def no_stripe_lookup():
    with patch("services.stripe_client.fetch_customer_snapshot", return_value=None) as snapshot:
        yield snapshot


def add_subscription(session, ledger, stripe_id, status="ACTIVE", cancel_at_period_end=False, created_at=None):
    sub = Subscription(
        stripe_subscription_id=stripe_id,
        donor_id=ledger.donor.id,
        organization_id=ledger.organization.id,
        package_id=ledger.package.id,
        status=status,
        cancel_at_period_end=cancel_at_period_end,
        amount=25.0,
        created_at=created_at or datetime.utcnow(),
    )
    session.add(sub)
    session.commit()
    session.refresh(sub)
    return sub


# ---------------------------
# Overall status precedence
# ---------------------------
def subs(*specs):
    return [Subscription(status=status, cancel_at_period_end=flag) for status, flag in specs]


@pytest.mark.parametrize(
    "specs, expected",
    [
        ([], MembershipStatus.INACTIVE),
        ([("ACTIVE", False)], MembershipStatus.ACTIVE),
        ([("PAST_DUE", False)], MembershipStatus.ACTIVE),
        ([("TRIALING", False)], MembershipStatus.TRIALING),
        ([("ACTIVE", False), ("TRIALING", False)], MembershipStatus.ACTIVE),
        ([("ACTIVE", True)], MembershipStatus.SCHEDULED_FOR_CANCELLATION),
        ([("ACTIVE", True), ("TRIALING", False)], MembershipStatus.TRIALING),
        ([("ACTIVE", False), ("ACTIVE", True)], MembershipStatus.SCHEDULED_FOR_CANCELLATION),
        ([("CANCELED", False)], MembershipStatus.CANCELED),
        ([("CANCELED", False), ("ACTIVE", False)], MembershipStatus.ACTIVE),
        ([("UNPAID", False)], MembershipStatus.CANCELED),
        ([("UNPAID", False), ("TRIALING", False)], MembershipStatus.TRIALING),
    ],
)
def test_derive_overall_status(specs, expected):
    assert derive_overall_status(subs(*specs)) == expected


# ---------------------------
# Endpoint
# ---------------------------
def test_requires_authentication(client, ledger):
    response = client.get("/api/subscriptions/membership-status", params={"donor_id": ledger.donor.id})
    assert response.status_code == 401


def test_missing_identifier_is_bad_request(client, login_as):
    login_as(AccountRole.ADMIN, 1)

    response = client.get("/api/subscriptions/membership-status")

    assert response.status_code == 400
    assert response.json()["detail"] == "Either donor_id or customer_email is required"


def test_unknown_donor_is_not_found(client, login_as):
    login_as(AccountRole.ADMIN, 1)

    response = client.get("/api/subscriptions/membership-status", params={"donor_id": 4242})

    assert response.status_code == 404


def test_donor_cannot_read_another_donor(client, session, login_as, ledger):
    other = Donor(name="Someone Else", email="else@example.com")
    session.add(other)
    session.commit()
    login_as(AccountRole.DONOR, other.id)

    response = client.get("/api/subscriptions/membership-status", params={"donor_id": ledger.donor.id})

    assert response.status_code == 403


def test_organization_accounts_are_refused(client, login_as, ledger):
    login_as(AccountRole.ORGANIZATION, ledger.organization.id)

    response = client.get("/api/subscriptions/membership-status", params={"donor_id": ledger.donor.id})

    assert response.status_code == 403


def test_listing_hides_inactive_but_status_sees_everything(client, session, login_as, ledger):
    add_subscription(session, ledger, "sub_live", status="ACTIVE")
    add_subscription(session, ledger, "sub_old", status="CANCELED")
    login_as(AccountRole.DONOR, ledger.donor.id)

    response = client.get("/api/subscriptions/membership-status", params={"donor_id": ledger.donor.id})

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["membership_status"]["overall_status"] == "ACTIVE"
    assert body["subscriptions"]["total"] == 1
    assert [s["stripe_subscription_id"] for s in body["subscriptions"]["all"]] == ["sub_live"]
    assert body["subscriptions"]["canceled"] == []


def test_canceled_only_donor_reports_canceled(client, session, login_as, ledger):
    add_subscription(session, ledger, "sub_old", status="CANCELED")
    login_as(AccountRole.ADMIN, 1)

    response = client.get(
        "/api/subscriptions/membership-status",
        params={"donor_id": ledger.donor.id, "include_inactive": True},
    )

    body = response.json()
    assert body["membership_status"]["overall_status"] == "CANCELED"
    assert body["subscriptions"]["total"] == 1
    assert len(body["subscriptions"]["canceled"]) == 1
    assert body["membership_status"]["statistics"]["canceled_subscriptions"] == 1


def test_unpaid_only_donor_reports_canceled(client, session, login_as, ledger):
    add_subscription(session, ledger, "sub_unpaid", status="UNPAID")
    login_as(AccountRole.ADMIN, 1)

    response = client.get(
        "/api/subscriptions/membership-status",
        params={"donor_id": ledger.donor.id, "include_inactive": True},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["membership_status"]["overall_status"] == "CANCELED"
    assert len(body["subscriptions"]["canceled"]) == 1
    assert body["membership_status"]["statistics"]["canceled_subscriptions"] == 1


def test_lookup_by_customer_email(client, session, login_as, ledger):
    add_subscription(session, ledger, "sub_live", status="TRIALING")
    login_as(AccountRole.ADMIN, 1)

    response = client.get(
        "/api/subscriptions/membership-status",
        params={"customer_email": "ayesha@example.com"},
    )

    body = response.json()
    assert body["membership_status"]["donor"]["id"] == ledger.donor.id
    assert body["membership_status"]["overall_status"] == "TRIALING"


def test_totals_count_only_successful_payments(client, session, login_as, ledger):
    sub = add_subscription(session, ledger, "sub_live")
    session.add(SubscriptionTransaction(stripe_transaction_id="pi_ok", subscription_id=sub.id, amount=25.0, status="SUCCEEDED"))
    session.add(SubscriptionTransaction(stripe_transaction_id="failed_in_2", subscription_id=sub.id, amount=25.0, status="FAILED"))
    session.add(Transaction(
        stripe_payment_intent_id="pi_gift", donor_id=ledger.donor.id,
        organization_id=ledger.organization.id, amount=40.0, status="completed",
    ))
    session.add(Transaction(
        stripe_payment_intent_id="pi_declined", donor_id=ledger.donor.id,
        organization_id=ledger.organization.id, amount=99.0, status="failed",
    ))
    session.commit()
    login_as(AccountRole.DONOR, ledger.donor.id)

    response = client.get("/api/subscriptions/membership-status", params={"donor_id": ledger.donor.id})

    body = response.json()
    stats = body["membership_status"]["statistics"]
    assert stats["total_amount_paid"] == 40.0
    assert stats["total_subscription_amount"] == 25.0
    assert stats["total_transactions"] == 2
    assert stats["total_subscription_transactions"] == 2
    assert body["payments"]["total_transactions"] == 4


def test_stripe_failure_still_returns_local_view(client, session, login_as, ledger, no_stripe_lookup):
    add_subscription(session, ledger, "sub_live")
    no_stripe_lookup.side_effect = stripe.APIConnectionError("connection reset")
    login_as(AccountRole.DONOR, ledger.donor.id)

    response = client.post(
        "/api/subscriptions/membership-status",
        json={"donor_id": ledger.donor.id, "include_stripe_data": True},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["stripe_data"] is None
    assert body["membership_status"]["overall_status"] == "ACTIVE"


def test_stripe_snapshot_is_included(client, session, login_as, ledger, no_stripe_lookup):
    no_stripe_lookup.return_value = {"customer": {"id": "cus_123"}, "subscriptions": [], "invoices": []}
    login_as(AccountRole.DONOR, ledger.donor.id)

    response = client.post("/api/subscriptions/membership-status", json={"donor_id": ledger.donor.id})

    assert response.json()["stripe_data"]["customer"]["id"] == "cus_123"
    no_stripe_lookup.assert_called_once_with("ayesha@example.com")


def test_post_date_range_filters_listing(client, session, login_as, ledger, no_stripe_lookup):
    now = datetime.utcnow()
    add_subscription(session, ledger, "sub_recent", created_at=now - timedelta(days=2))
    add_subscription(session, ledger, "sub_ancient", created_at=now - timedelta(days=400))
    login_as(AccountRole.ADMIN, 1)

    response = client.post(
        "/api/subscriptions/membership-status",
        json={
            "donor_id": ledger.donor.id,
            "include_stripe_data": False,
            "date_from": (now - timedelta(days=30)).isoformat(),
            "date_to": (now + timedelta(days=1)).isoformat(),
        },
    )

    body = response.json()
    assert [s["stripe_subscription_id"] for s in body["subscriptions"]["all"]] == ["sub_recent"]
    assert body["filters_applied"]["include_stripe_data"] is False
    no_stripe_lookup.assert_not_called()


def test_inverted_date_range_is_bad_request(client, login_as, ledger):
    login_as(AccountRole.ADMIN, 1)

    response = client.post(
        "/api/subscriptions/membership-status",
        json={
            "donor_id": ledger.donor.id,
            "date_from": "2025-06-01T00:00:00",
            "date_to": "2025-01-01T00:00:00",
        },
    )

    assert response.status_code == 400
    assert response.json()["detail"] == "date_from must be before date_to"
