# ================================================================
# services/stripe_client.py: Stripe configuration, errors & snapshots
# ================================================================
import json
import logging
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

import stripe

from core.config import settings

logger = logging.getLogger(__name__)

# ------------------------
# STRIPE CONFIG
# ------------------------
stripe.api_key = settings.STRIPE_SECRET_KEY


def is_stripe_configured() -> bool:
    return bool(settings.STRIPE_SECRET_KEY)


def is_webhook_configured() -> bool:
    return bool(settings.STRIPE_SECRET_KEY and settings.STRIPE_WEBHOOK_SECRET)


def stripe_error_response(error: Exception, context: str = "Stripe operation") -> Tuple[str, int]:
    """Translate a Stripe SDK error into a (user message, HTTP status) pair."""
    logger.error(f"❌ {context} error: {error}")

    if isinstance(error, stripe.CardError):
        return "Your card was declined.", 400
    if isinstance(error, stripe.RateLimitError):
        return "Too many requests. Please try again later.", 429
    if isinstance(error, stripe.InvalidRequestError):
        return "Invalid request. Please check your data.", 400
    if isinstance(error, stripe.AuthenticationError):
        return "Payment service authentication failed.", 503
    if isinstance(error, stripe.APIConnectionError):
        return "Network error. Please check your connection.", 503
    if isinstance(error, stripe.APIError):
        return "Payment service error. Please try again.", 502
    return "An unexpected error occurred.", 500


# ------------------------
# Webhook verification
# ------------------------
def construct_webhook_event(payload: bytes, sig_header: str) -> Dict[str, Any]:
    """
    Verify the Stripe-Signature header and return the event as a plain dict.

    Raises ValueError for an unparsable payload and
    stripe.SignatureVerificationError for a bad signature.
    """
    stripe.Webhook.construct_event(
        payload=payload,
        sig_header=sig_header,
        secret=settings.STRIPE_WEBHOOK_SECRET,
    )
    return json.loads(payload)


# ------------------------
# Conversion helpers
# ------------------------
def to_plain(obj: Any) -> Any:
    """Turn a StripeObject (or list of them) into JSON-safe builtins."""
    if obj is None:
        return None
    if isinstance(obj, list):
        return [to_plain(item) for item in obj]
    if isinstance(obj, stripe.StripeObject):
        return json.loads(str(obj))
    return obj


def from_timestamp(value: Optional[int]) -> Optional[datetime]:
    """Stripe sends Unix seconds; store naive UTC datetimes."""
    if not value:
        return None
    return datetime.utcfromtimestamp(int(value))


# ------------------------
# Remote lookups
# ------------------------
def find_customer_by_email(email: str):
    customers = stripe.Customer.list(email=email, limit=1)
    return customers.data[0] if customers.data else None


def fetch_customer_snapshot(email: str) -> Optional[Dict[str, Any]]:
    """
    Live Stripe view of a donor: customer, every subscription and the latest invoices.
    Returns None when Stripe has no customer for the email. Errors propagate.
    """
    customer = find_customer_by_email(email)
    if customer is None:
        return None

    subscriptions = stripe.Subscription.list(customer=customer.id, status="all", limit=100)
    invoices = stripe.Invoice.list(customer=customer.id, limit=20)

    return {
        "customer": to_plain(customer),
        "subscriptions": to_plain(list(subscriptions.data)),
        "invoices": to_plain(list(invoices.data)),
    }
