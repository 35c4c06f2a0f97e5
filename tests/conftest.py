import hashlib
import hmac
import json
import os
import sys
import time
from pathlib import Path
from types import SimpleNamespace

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_123"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["SENDGRID_API_KEY"] = ""

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, SQLModel, create_engine
from sqlmodel.pool import StaticPool

from main import app
from core.config import settings
from core.database import get_session
from core.security import AccountContext, get_current_account
from models.models import AccountRole, Donor, Organization, Package


@pytest.fixture(name="session")
def session_fixture():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    with Session(engine) as session:
        yield session


@pytest.fixture(name="client")
def client_fixture(session):
    app.dependency_overrides[get_session] = lambda: session
    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()


@pytest.fixture
def login_as(client):
    """Authenticate subsequent requests as the given account."""
    def _login(role: AccountRole, account_id: int, email: str = "someone@example.com"):
        account = AccountContext(role=role, account_id=account_id, email=email)
        app.dependency_overrides[get_current_account] = lambda: account
        return account
    return _login


@pytest.fixture
def ledger(session):
    """One organization with a monthly package and a donor."""
    organization = Organization(name="Clean Water Fund", email="team@cleanwater.org")
    donor = Donor(name="Ayesha Khan", email="ayesha@example.com")
    session.add(organization)
    session.add(donor)
    session.commit()
    session.refresh(organization)
    session.refresh(donor)

    package = Package(
        name="Monthly Supporter",
        price=25.0,
        currency="USD",
        interval="month",
        organization_id=organization.id,
    )
    session.add(package)
    session.commit()
    session.refresh(package)

    return SimpleNamespace(organization=organization, donor=donor, package=package)


@pytest.fixture
def send_webhook(client):
    """POST a Stripe event with a valid Stripe-Signature header."""
    counter = {"n": 0}

    def _send(event_type: str, data_object: dict, event_id: str = None):
        counter["n"] += 1
        event = {
            "id": event_id or f"evt_test_{counter['n']}_{data_object.get('id')}",
            "object": "event",
            "type": event_type,
            "data": {"object": data_object},
        }
        payload = json.dumps(event)
        timestamp = int(time.time())
        signature = hmac.new(
            settings.STRIPE_WEBHOOK_SECRET.encode("utf-8"),
            f"{timestamp}.{payload}".encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()
        return client.post(
            "/api/subscriptions/webhooks",
            content=payload,
            headers={
                "stripe-signature": f"t={timestamp},v1={signature}",
                "content-type": "application/json",
            },
        )

    return _send
