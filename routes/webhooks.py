# routes/webhooks.py
import logging

import stripe
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlmodel import Session

from core.database import get_session
from services import stripe_client
from services.webhook_handlers import process_webhook_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/subscriptions", tags=["Webhooks"])


# ==========================================================
# 🔔 Stripe webhook ingester
# ==========================================================
@router.post("/webhooks")
async def stripe_webhook(request: Request, session: Session = Depends(get_session)):
    """Verify a Stripe delivery and fold it into the local ledger."""
    if not stripe_client.is_webhook_configured():
        logger.error("❌ Stripe webhook secret not configured")
        return JSONResponse(status_code=503, content={"error": "Webhook processing not available"})

    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    if not sig_header:
        logger.warning("⚠️ Missing stripe-signature header")
        return JSONResponse(status_code=400, content={"error": "Missing stripe-signature header"})

    try:
        event = stripe_client.construct_webhook_event(payload, sig_header)
    except ValueError as e:
        logger.warning(f"⚠️ Invalid webhook payload: {e}")
        return JSONResponse(status_code=400, content={"error": "Invalid payload"})
    except stripe.SignatureVerificationError as e:
        logger.warning(f"⚠️ Invalid webhook signature: {e}")
        return JSONResponse(status_code=400, content={"error": "Invalid signature"})

    logger.info(f"✅ Webhook received: {event.get('type')} ({event.get('id')})")

    outcome = process_webhook_event(event, session)
    return {"received": True, **outcome}
