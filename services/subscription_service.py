# ================================================================
# services/subscription_service.py: donor-initiated subscription changes
# ================================================================
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import stripe
from fastapi import HTTPException
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, func, select, or_

from core.config import settings
from core.security import AccountContext, ensure_donor_access
from models.models import (
    ACTIVE_LIKE_STATUSES,
    Donor,
    Organization,
    Package,
    Subscription,
    SubscriptionStatus,
    SubscriptionTransaction,
)
from schemas.subscription_schema import SetupPaymentRequest, SubscriptionRead, SubscriptionTransactionRead
from services import stripe_client
from services.webhook_handlers import (
    REQUIRED_SUBSCRIPTION_METADATA,
    apply_remote_subscription,
    find_subscription,
    merge_metadata,
    metadata_ids,
    new_local_subscription,
)

logger = logging.getLogger(__name__)


# -------------------------
# Helper Functions
# -------------------------
def require_stripe() -> None:
    if not stripe_client.is_stripe_configured():
        logger.error("❌ STRIPE_SECRET_KEY not configured")
        raise HTTPException(status_code=503, detail="Payment service not available")


def get_subscription_or_404(session: Session, subscription_id: int) -> Subscription:
    subscription = session.get(Subscription, subscription_id)
    if not subscription:
        raise HTTPException(status_code=404, detail="Subscription not found")
    return subscription


def _raise_stripe_error(error: Exception, context: str) -> None:
    message, status_code = stripe_client.stripe_error_response(error, context)
    raise HTTPException(status_code=status_code, detail=message)


def _commit_or_500(session: Session, failure_message: str) -> None:
    try:
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        logger.error(f"❌ {failure_message}: {e}")
        raise HTTPException(status_code=500, detail=failure_message)


def _mark_canceled_locally(subscription: Subscription, immediately: bool) -> None:
    now = datetime.utcnow()
    if immediately:
        subscription.status = SubscriptionStatus.CANCELED.value
        subscription.cancel_at_period_end = False
        subscription.canceled_at = now
    else:
        subscription.cancel_at_period_end = True
    subscription.updated_at = now


def _cancel_remote(subscription: Subscription, immediately: bool) -> str:
    if immediately:
        stripe.Subscription.cancel(subscription.stripe_subscription_id)
        return "Subscription canceled immediately"
    stripe.Subscription.modify(subscription.stripe_subscription_id, cancel_at_period_end=True)
    return "Subscription will be canceled at the end of the current period"


# -------------------------
# Single subscription
# -------------------------
def get_subscription_detail(subscription: Subscription) -> Dict[str, Any]:
    """Local subscription plus a best-effort live copy from Stripe."""
    stripe_data = None
    if stripe_client.is_stripe_configured():
        try:
            stripe_data = stripe_client.to_plain(
                stripe.Subscription.retrieve(subscription.stripe_subscription_id)
            )
        except Exception as e:
            logger.warning(f"⚠️ Could not fetch Stripe subscription {subscription.stripe_subscription_id}: {e}")

    return {"subscription": subscription, "stripe_data": stripe_data}


def cancel_subscription(session: Session, subscription: Subscription, immediately: bool) -> Dict[str, Any]:
    require_stripe()
    if subscription.status == SubscriptionStatus.CANCELED.value:
        raise HTTPException(status_code=400, detail="Subscription is already canceled")

    try:
        message = _cancel_remote(subscription, immediately)
    except stripe.StripeError as e:
        _raise_stripe_error(e, f"Cancel subscription {subscription.stripe_subscription_id}")

    _mark_canceled_locally(subscription, immediately)
    session.add(subscription)
    _commit_or_500(session, "Failed to cancel subscription")
    session.refresh(subscription)

    logger.info(f"✅ Subscription {subscription.id}: {message}")
    return {
        "success": True,
        "subscription": SubscriptionRead.model_validate(subscription),
        "stripe_response": {"message": message},
        "message": "Subscription canceled successfully" if immediately else "Subscription scheduled for cancellation",
    }


def reactivate_subscription(session: Session, subscription: Subscription) -> Dict[str, Any]:
    """Undo a cancel-at-period-end request."""
    require_stripe()
    if subscription.status == SubscriptionStatus.CANCELED.value:
        raise HTTPException(
            status_code=400,
            detail="Subscription is already canceled and cannot be reactivated. Create a new subscription instead.",
        )

    try:
        stripe.Subscription.modify(subscription.stripe_subscription_id, cancel_at_period_end=False)
    except stripe.StripeError as e:
        _raise_stripe_error(e, f"Reactivate subscription {subscription.stripe_subscription_id}")

    subscription.cancel_at_period_end = False
    subscription.canceled_at = None
    subscription.updated_at = datetime.utcnow()
    session.add(subscription)
    _commit_or_500(session, "Failed to reactivate subscription")
    session.refresh(subscription)

    return {
        "success": True,
        "subscription": SubscriptionRead.model_validate(subscription),
        "stripe_response": {"message": "Subscription reactivated successfully"},
        "message": "Subscription updated successfully",
    }


def update_payment_method(subscription: Subscription, payment_method_id: Optional[str]) -> Dict[str, Any]:
    require_stripe()
    if not payment_method_id:
        raise HTTPException(status_code=400, detail="Payment method ID is required")

    try:
        remote = stripe.Subscription.retrieve(subscription.stripe_subscription_id)
        customer_id = remote["customer"]
        stripe.PaymentMethod.attach(payment_method_id, customer=customer_id)
        stripe.Customer.modify(customer_id, invoice_settings={"default_payment_method": payment_method_id})
    except stripe.StripeError as e:
        _raise_stripe_error(e, f"Update payment method for {subscription.stripe_subscription_id}")

    return {
        "success": True,
        "subscription": SubscriptionRead.model_validate(subscription),
        "stripe_response": {"message": "Payment method updated successfully"},
        "message": "Subscription updated successfully",
    }


# -------------------------
# Donor-wide operations
# -------------------------
def cancel_by_donor(session: Session, donor_id: int, immediately: bool) -> Dict[str, Any]:
    require_stripe()
    subscriptions = session.exec(
        select(Subscription).where(
            Subscription.donor_id == donor_id,
            Subscription.status.in_(ACTIVE_LIKE_STATUSES),
        )
    ).all()
    if not subscriptions:
        raise HTTPException(status_code=404, detail="No active subscriptions found for this donor")

    results: List[Dict[str, Any]] = []
    errors: List[Dict[str, Any]] = []

    for subscription in subscriptions:
        entry = {
            "subscription_id": subscription.id,
            "stripe_subscription_id": subscription.stripe_subscription_id,
        }
        try:
            message = _cancel_remote(subscription, immediately)
        except stripe.StripeError as e:
            logger.error(f"❌ Stripe cancellation error for subscription {entry['subscription_id']}: {e}")
            errors.append({**entry, "status": "error", "error": str(e)})
            continue

        _mark_canceled_locally(subscription, immediately)
        session.add(subscription)
        try:
            session.commit()
        except SQLAlchemyError as e:
            # Stripe already applied the cancellation; the subscription webhook will resync this row
            session.rollback()
            logger.error(f"❌ Canceled {entry['stripe_subscription_id']} in Stripe but could not save it locally: {e}")
            errors.append({
                **entry,
                "status": "error",
                "error": "Canceled in Stripe but failed to update the local record",
                "stripe_response": {"message": message},
            })
            continue

        session.refresh(subscription)
        results.append({
            **entry,
            "status": "success",
            "subscription": SubscriptionRead.model_validate(subscription),
            "stripe_response": {"message": message},
        })

    return {
        "success": True,
        "donor_id": donor_id,
        "total_subscriptions": len(subscriptions),
        "successful_cancellations": len(results),
        "failed_cancellations": len(errors),
        "results": results,
        "errors": errors,
    }


def resume_by_donor(session: Session, donor_id: int) -> Dict[str, Any]:
    """Resume canceled or scheduled-for-cancellation subscriptions that Stripe still considers alive."""
    require_stripe()
    if not session.get(Donor, donor_id):
        raise HTTPException(status_code=404, detail="Donor not found")

    subscriptions = session.exec(
        select(Subscription).where(
            Subscription.donor_id == donor_id,
            or_(
                Subscription.status == SubscriptionStatus.CANCELED.value,
                Subscription.cancel_at_period_end == True,  # noqa: E712
            ),
        )
    ).all()
    if not subscriptions:
        raise HTTPException(
            status_code=404,
            detail="No canceled or scheduled for cancellation subscriptions found for this donor",
        )

    results: List[Dict[str, Any]] = []
    resumed = 0

    for subscription in subscriptions:
        entry = {
            "subscription_id": subscription.id,
            "stripe_subscription_id": subscription.stripe_subscription_id,
        }
        try:
            remote = stripe_client.to_plain(stripe.Subscription.retrieve(subscription.stripe_subscription_id))
            if remote.get("status") == "canceled":
                subscription.status = SubscriptionStatus.CANCELED.value
                subscription.cancel_at_period_end = False
                session.add(subscription)
                _commit_or_500(session, "Failed to resume subscriptions")
                results.append({
                    **entry,
                    "status": "failed",
                    "error": "Subscription is already canceled in Stripe and cannot be resumed. Create a new subscription instead.",
                })
                continue

            if remote.get("cancel_at_period_end"):
                remote = stripe_client.to_plain(
                    stripe.Subscription.modify(subscription.stripe_subscription_id, cancel_at_period_end=False)
                )
                message = "Subscription cancellation removed - subscription will continue"
            else:
                message = "Subscription is already active"
        except stripe.StripeError as e:
            logger.error(f"❌ Stripe resume error for subscription {subscription.stripe_subscription_id}: {e}")
            results.append({**entry, "status": "failed", "error": str(e)})
            continue

        subscription.status = SubscriptionStatus.from_remote(remote.get("status")).value
        subscription.cancel_at_period_end = False
        subscription.canceled_at = None
        subscription.updated_at = datetime.utcnow()
        session.add(subscription)
        _commit_or_500(session, "Failed to resume subscriptions")
        session.refresh(subscription)

        resumed += 1
        results.append({
            **entry,
            "status": "success",
            "subscription": SubscriptionRead.model_validate(subscription),
            "stripe_response": {"message": message},
        })

    return {
        "success": True,
        "donor_id": donor_id,
        "total_subscriptions": len(subscriptions),
        "successful_resumes": resumed,
        "failed_resumes": len(subscriptions) - resumed,
        "message": f"{resumed} subscription(s) resumed successfully",
        "results": results,
    }


# -------------------------
# Checkout
# -------------------------
def setup_payment(session: Session, request: SetupPaymentRequest) -> Dict[str, Any]:
    """
    Prepare a Stripe Checkout subscription for a donor and package.

    The donor/organization/package ids travel as subscription metadata so the
    customer.subscription.created webhook can link the new subscription locally.
    """
    require_stripe()

    package = session.get(Package, request.package_id)
    if not package or not package.is_active:
        raise HTTPException(status_code=404, detail="Package not found")

    donor = session.get(Donor, request.donor_id)
    organization = session.get(Organization, request.organization_id)
    if not donor or not organization:
        raise HTTPException(status_code=404, detail="Donor or organization not found")

    if package.organization_id and package.organization_id != organization.id:
        raise HTTPException(status_code=400, detail="Package does not belong to this organization")

    metadata = {
        "donor_id": str(donor.id),
        "organization_id": str(organization.id),
        "package_id": str(package.id),
    }

    try:
        customer = stripe_client.find_customer_by_email(donor.email)
        if customer is None:
            customer = stripe.Customer.create(
                email=donor.email,
                name=donor.name,
                metadata={"donor_id": str(donor.id), "organization_id": str(organization.id)},
            )

        setup_intent = stripe.SetupIntent.create(
            customer=customer.id,
            payment_method_types=["card"],
            usage="off_session",
            metadata=metadata,
        )

        checkout_session = stripe.checkout.Session.create(
            customer=customer.id,
            payment_method_types=["card"],
            mode="subscription",
            line_items=[{
                "price_data": {
                    "currency": package.currency.lower(),
                    "product_data": {
                        "name": package.name,
                        "description": package.description or package.name,
                    },
                    "unit_amount": int(round(package.price * 100)),
                    "recurring": {"interval": package.interval or "month"},
                },
                "quantity": 1,
            }],
            success_url=request.return_url or settings.STRIPE_SUCCESS_URL,
            cancel_url=request.return_url or settings.STRIPE_CANCEL_URL,
            metadata=metadata,
            subscription_data={"metadata": metadata},
        )
    except stripe.StripeError as e:
        _raise_stripe_error(e, "Setup subscription payment")

    donor.stripe_customer_id = customer.id
    donor.updated_at = datetime.utcnow()
    session.add(donor)
    _commit_or_500(session, "Failed to setup subscription payment")

    logger.info(f"✅ Checkout session {checkout_session.id} created for donor {donor.id}, package {package.id}")
    return {
        "success": True,
        "setup_intent": {
            "id": setup_intent.id,
            "client_secret": setup_intent.client_secret,
            "status": setup_intent.status,
        },
        "checkout_session": {"id": checkout_session.id, "url": checkout_session.url},
        "customer": {"id": customer.id, "email": customer.email, "name": customer.name},
        "package": {
            "id": package.id,
            "name": package.name,
            "price": package.price,
            "currency": package.currency,
        },
        "message": "Payment setup created successfully",
    }


# -------------------------
# Success page
# -------------------------
def verify_success(session: Session, account: AccountContext, checkout_session_id: str) -> Dict[str, Any]:
    """
    Reconcile a completed Checkout Session when the donor lands on the success page.

    Runs alongside the customer.subscription.created webhook; whichever arrives
    second updates the row the other one inserted.
    """
    require_stripe()

    try:
        checkout = stripe_client.to_plain(
            stripe.checkout.Session.retrieve(checkout_session_id, expand=["subscription", "customer"])
        )
    except stripe.StripeError as e:
        logger.warning(f"⚠️ Could not retrieve checkout session {checkout_session_id}: {e}")
        raise HTTPException(status_code=404, detail="Invalid session ID or session not found")

    if checkout.get("payment_status") != "paid":
        raise HTTPException(status_code=400, detail="Payment not completed")

    remote = checkout.get("subscription")
    if not remote:
        raise HTTPException(status_code=400, detail="No subscription found in checkout session")

    ids = metadata_ids(checkout, REQUIRED_SUBSCRIPTION_METADATA)
    if ids is None:
        raise HTTPException(status_code=400, detail="Missing required metadata in checkout session")
    ensure_donor_access(account, ids["donor_id"])

    try:
        if isinstance(remote, str):
            remote = stripe_client.to_plain(stripe.Subscription.retrieve(remote))
    except stripe.StripeError as e:
        _raise_stripe_error(e, f"Retrieve subscription for checkout {checkout_session_id}")

    package = session.get(Package, ids["package_id"])
    if not package:
        raise HTTPException(status_code=404, detail="Package not found")
    if not session.get(Donor, ids["donor_id"]) or not session.get(Organization, ids["organization_id"]):
        raise HTTPException(status_code=404, detail="Donor or organization not found")

    created = False
    subscription = find_subscription(session, remote["id"])
    if subscription is None:
        subscription = new_local_subscription(
            remote, ids, package,
            checkout_session_id=checkout_session_id,
            created_via="success_page_verification",
        )
        session.add(subscription)
        try:
            session.commit()
            created = True
        except IntegrityError:
            session.rollback()
            logger.info(f"ℹ️ Subscription {remote['id']} inserted concurrently, updating existing row")
            subscription = find_subscription(session, remote["id"])

    if not created:
        apply_remote_subscription(subscription, remote)
        subscription.subscription_metadata = merge_metadata(
            subscription.subscription_metadata,
            checkout_session_id=checkout_session_id,
            verified_at=datetime.utcnow().isoformat(),
        )
        session.add(subscription)
        _commit_or_500(session, "Failed to verify subscription")

    session.refresh(subscription)
    logger.info(f"✅ Checkout {checkout_session_id} verified for subscription {remote['id']} (created={created})")
    return {
        "success": True,
        "created": created,
        "subscription": SubscriptionRead.model_validate(subscription),
        "message": "Subscription created successfully" if created else "Subscription updated successfully",
    }


# -------------------------
# Per-subscription ledger reads
# -------------------------
def _invoice_summary(invoice: Dict[str, Any]) -> Dict[str, Any]:
    paid_at = (invoice.get("status_transitions") or {}).get("paid_at")
    return {
        "id": invoice.get("id"),
        "number": invoice.get("number"),
        "status": invoice.get("status"),
        "amount_paid": (invoice.get("amount_paid") or 0) / 100,
        "amount_due": (invoice.get("amount_due") or 0) / 100,
        "currency": invoice.get("currency"),
        "created": stripe_client.from_timestamp(invoice.get("created")),
        "due_date": stripe_client.from_timestamp(invoice.get("due_date")),
        "paid_at": stripe_client.from_timestamp(paid_at),
        "period_start": stripe_client.from_timestamp(invoice.get("period_start")),
        "period_end": stripe_client.from_timestamp(invoice.get("period_end")),
        "hosted_invoice_url": invoice.get("hosted_invoice_url"),
        "invoice_pdf": invoice.get("invoice_pdf"),
    }


def list_transactions(session: Session, subscription: Subscription, page: int, limit: int) -> Dict[str, Any]:
    """Paginated payment attempts, enriched with Stripe invoice data when it can be fetched."""
    total = session.exec(
        select(func.count()).select_from(SubscriptionTransaction)
        .where(SubscriptionTransaction.subscription_id == subscription.id)
    ).one()
    transactions = session.exec(
        select(SubscriptionTransaction)
        .where(SubscriptionTransaction.subscription_id == subscription.id)
        .order_by(SubscriptionTransaction.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    ).all()

    invoices: Dict[str, Dict[str, Any]] = {}
    if stripe_client.is_stripe_configured():
        try:
            listed = stripe.Invoice.list(subscription=subscription.stripe_subscription_id, limit=100)
            invoices = {inv["id"]: inv for inv in stripe_client.to_plain(list(listed.data))}
        except stripe.StripeError as e:
            logger.warning(f"⚠️ Could not fetch Stripe invoices for {subscription.stripe_subscription_id}: {e}")

    enriched = []
    for txn in transactions:
        invoice = invoices.get(txn.stripe_invoice_id)
        enriched.append({
            **SubscriptionTransactionRead.model_validate(txn).model_dump(),
            "stripe_invoice": _invoice_summary(invoice) if invoice else None,
        })

    return {
        "success": True,
        "transactions": enriched,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit,
        },
        "subscription": {"id": subscription.id, "stripe_subscription_id": subscription.stripe_subscription_id},
    }


def list_invoices(session: Session, subscription: Subscription, limit: int, status: Optional[str] = None) -> Dict[str, Any]:
    """Stripe invoices for a subscription, each matched to its local ledger row."""
    require_stripe()

    params: Dict[str, Any] = {"subscription": subscription.stripe_subscription_id, "limit": limit}
    if status:
        params["status"] = status
    try:
        listed = stripe.Invoice.list(**params)
    except stripe.StripeError as e:
        _raise_stripe_error(e, f"List invoices for {subscription.stripe_subscription_id}")

    invoices = stripe_client.to_plain(list(listed.data))
    invoice_ids = [inv["id"] for inv in invoices]
    rows = session.exec(
        select(SubscriptionTransaction).where(
            SubscriptionTransaction.subscription_id == subscription.id,
            SubscriptionTransaction.stripe_invoice_id.in_(invoice_ids),
        )
    ).all() if invoice_ids else []
    by_invoice = {row.stripe_invoice_id: row for row in rows}

    return {
        "success": True,
        "invoices": [
            {
                **_invoice_summary(invoice),
                "database_record": (
                    SubscriptionTransactionRead.model_validate(by_invoice[invoice["id"]])
                    if invoice["id"] in by_invoice else None
                ),
            }
            for invoice in invoices
        ],
        "has_more": bool(getattr(listed, "has_more", False)),
        "total_count": len(invoices),
    }
