from unittest.mock import patch

import pytest

from core.security import decode_token, hash_password
from models.models import AdminUser, Donor


@pytest.fixture
def donor_with_password(session):
    donor = Donor(name="Bilal Ahmed", email="bilal@example.com", password_hash=hash_password("s3cret!"))
    session.add(donor)
    session.commit()
    session.refresh(donor)
    return donor


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_donor_login_issues_token(client, donor_with_password):
    response = client.post(
        "/auth/login",
        json={"email": "bilal@example.com", "password": "s3cret!", "account_type": "donor"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["token_type"] == "bearer"
    assert body["account_id"] == donor_with_password.id
    payload = decode_token(body["access_token"])
    assert payload["role"] == "donor"
    assert payload["account_id"] == donor_with_password.id


def test_wrong_password_is_unauthorized(client, donor_with_password):
    response = client.post(
        "/auth/login",
        json={"email": "bilal@example.com", "password": "nope", "account_type": "donor"},
    )
    assert response.status_code == 401


def test_login_looks_up_the_requested_account_type(client, donor_with_password):
    response = client.post(
        "/auth/login",
        json={"email": "bilal@example.com", "password": "s3cret!", "account_type": "admin"},
    )
    assert response.status_code == 401


def test_inactive_admin_is_forbidden(client, session):
    session.add(AdminUser(name="Old Admin", email="old@donorhub.dev", password_hash=hash_password("pw"), is_active=False))
    session.commit()

    response = client.post(
        "/auth/login",
        json={"email": "old@donorhub.dev", "password": "pw", "account_type": "admin"},
    )
    assert response.status_code == 403


def test_token_scopes_membership_to_own_donor(client, session, donor_with_password):
    token = client.post(
        "/auth/login",
        json={"email": "bilal@example.com", "password": "s3cret!"},
    ).json()["access_token"]
    other = Donor(name="Other", email="other@example.com")
    session.add(other)
    session.commit()
    headers = {"Authorization": f"Bearer {token}"}

    with patch("services.stripe_client.fetch_customer_snapshot", return_value=None):
        own = client.get(
            "/api/subscriptions/membership-status",
            params={"donor_id": donor_with_password.id},
            headers=headers,
        )
        foreign = client.get(
            "/api/subscriptions/membership-status",
            params={"donor_id": other.id},
            headers=headers,
        )

    assert own.status_code == 200
    assert own.json()["membership_status"]["overall_status"] == "INACTIVE"
    assert foreign.status_code == 403


def test_garbage_token_is_unauthorized(client):
    response = client.get(
        "/api/subscriptions/membership-status",
        params={"donor_id": 1},
        headers={"Authorization": "Bearer not-a-jwt"},
    )
    assert response.status_code == 401
