# ================================================================
# services/webhook_handlers.py: Stripe event -> local ledger upserts
# ================================================================
"""
Idempotent handlers that mirror Stripe's asynchronous event stream into the
local Subscription / SubscriptionTransaction / Transaction tables.

Every handler looks the local row up by the Stripe object id first. Stripe
does not guarantee ordering or single delivery, so:

- ``customer.subscription.created`` creates a row only when none exists;
- update/delete/invoice handlers silently no-op when the row they expect is
  missing;
- ledger rows are keyed by the remote payment id and only ever receive
  status corrections afterwards.

Handlers return a short outcome string and may raise; the caller
(``process_webhook_event``) logs failures and still acknowledges the event.
"""
import json
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from models.models import (
    Donor,
    Organization,
    Package,
    Subscription,
    SubscriptionStatus,
    SubscriptionTransaction,
    SubscriptionTransactionStatus,
    Transaction,
    TransactionStatus,
    WebhookEvent,
)
from services.email_service import email_service
from services.stripe_client import from_timestamp

logger = logging.getLogger(__name__)

REQUIRED_SUBSCRIPTION_METADATA = ("donor_id", "organization_id", "package_id")
REQUIRED_PAYMENT_METADATA = ("donor_id", "organization_id")


# -------------------------
# Helpers
# -------------------------
def metadata_ids(obj: Dict[str, Any], keys: Iterable[str]) -> Optional[Dict[str, int]]:
    """Pull integer ids out of a Stripe object's metadata; None if any is missing or malformed."""
    metadata = obj.get("metadata") or {}
    ids = {}
    for key in keys:
        try:
            ids[key] = int(metadata[key])
        except (KeyError, TypeError, ValueError):
            logger.warning(f"⚠️ {obj.get('object', 'object')} {obj.get('id')} missing metadata '{key}'")
            return None
    return ids


def merge_metadata(existing: Optional[str], **updates: Any) -> str:
    try:
        merged = json.loads(existing) if existing else {}
    except ValueError:
        merged = {}
    merged.update(updates)
    return json.dumps(merged, default=str)


def _first_item(subscription: Dict[str, Any]) -> Dict[str, Any]:
    items = (subscription.get("items") or {}).get("data") or []
    return items[0] if items else {}


def _subscription_period(subscription: Dict[str, Any]):
    # Newer API versions moved the billing period onto the subscription items
    item = _first_item(subscription)
    start = subscription.get("current_period_start") or item.get("current_period_start")
    end = subscription.get("current_period_end") or item.get("current_period_end")
    return from_timestamp(start), from_timestamp(end)


def _expandable_id(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        return value.get("id")
    return value


def _invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    legacy = _expandable_id(invoice.get("subscription"))
    if legacy:
        return legacy
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or {}
    return _expandable_id(details.get("subscription"))


def _invoice_period(invoice: Dict[str, Any]):
    lines = (invoice.get("lines") or {}).get("data") or []
    period = lines[0].get("period") if lines else None
    if not period:
        return None, None
    return from_timestamp(period.get("start")), from_timestamp(period.get("end"))


def find_subscription(session: Session, stripe_subscription_id: str) -> Optional[Subscription]:
    return session.exec(
        select(Subscription).where(Subscription.stripe_subscription_id == stripe_subscription_id)
    ).first()


def find_subscription_transaction(session: Session, remote_payment_id: str) -> Optional[SubscriptionTransaction]:
    return session.exec(
        select(SubscriptionTransaction).where(SubscriptionTransaction.stripe_transaction_id == remote_payment_id)
    ).first()


def find_transaction(session: Session, payment_intent_id: str) -> Optional[Transaction]:
    return session.exec(
        select(Transaction).where(Transaction.stripe_payment_intent_id == payment_intent_id)
    ).first()


def find_webhook_event(session: Session, stripe_event_id: str) -> Optional[WebhookEvent]:
    return session.exec(
        select(WebhookEvent).where(WebhookEvent.stripe_event_id == stripe_event_id)
    ).first()


def apply_remote_subscription(local: Subscription, remote: Dict[str, Any]) -> None:
    """Copy the mutable fields of a Stripe subscription onto the local row."""
    period_start, period_end = _subscription_period(remote)

    local.status = SubscriptionStatus.from_remote(remote.get("status")).value
    if period_start:
        local.current_period_start = period_start
    if period_end:
        local.current_period_end = period_end
    local.cancel_at_period_end = bool(remote.get("cancel_at_period_end"))
    local.canceled_at = from_timestamp(remote.get("canceled_at"))
    local.trial_start = from_timestamp(remote.get("trial_start"))
    local.trial_end = from_timestamp(remote.get("trial_end"))
    local.updated_at = datetime.utcnow()


def new_local_subscription(remote: Dict[str, Any], ids: Dict[str, int], package: Package, **provenance: Any) -> Subscription:
    """Build (but do not persist) the local mirror of a Stripe subscription."""
    recurring = (_first_item(remote).get("price") or {}).get("recurring") or {}
    customer_id = _expandable_id(remote.get("customer"))
    local = Subscription(
        stripe_subscription_id=remote["id"],
        stripe_customer_id=customer_id,
        donor_id=ids["donor_id"],
        organization_id=ids["organization_id"],
        package_id=package.id,
        amount=package.price,
        currency=package.currency,
        interval=recurring.get("interval") or package.interval or "month",
        interval_count=recurring.get("interval_count") or 1,
        subscription_metadata=merge_metadata(None, stripe_customer_id=customer_id, **provenance),
    )
    apply_remote_subscription(local, remote)
    return local


# -------------------------
# Subscription lifecycle
# -------------------------
def handle_subscription_created(subscription: Dict[str, Any], session: Session) -> str:
    stripe_id = subscription["id"]
    ids = metadata_ids(subscription, REQUIRED_SUBSCRIPTION_METADATA)
    if ids is None:
        logger.warning(f"⚠️ Dropping customer.subscription.created for {stripe_id}: required metadata missing")
        return "skipped"

    existing = find_subscription(session, stripe_id)
    if existing:
        apply_remote_subscription(existing, subscription)
        session.add(existing)
        session.commit()
        logger.info(f"ℹ️ Subscription {stripe_id} already recorded, refreshed local row {existing.id}")
        return "exists"

    package = session.get(Package, ids["package_id"])
    if not package:
        logger.warning(f"⚠️ Package {ids['package_id']} not found for subscription {stripe_id}")
        return "skipped"
    if not session.get(Donor, ids["donor_id"]) or not session.get(Organization, ids["organization_id"]):
        logger.warning(f"⚠️ Donor or organization missing for subscription {stripe_id}")
        return "skipped"

    local = new_local_subscription(
        subscription, ids, package,
        created_via="webhook",
        webhook_event="customer.subscription.created",
    )

    session.add(local)
    try:
        session.commit()
    except IntegrityError:
        # A concurrent delivery inserted the same remote id first
        session.rollback()
        logger.info(f"ℹ️ Subscription {stripe_id} inserted concurrently, keeping existing row")
        return "exists"

    session.refresh(local)
    logger.info(f"✅ Subscription {stripe_id} created as local row {local.id}")
    return "created"


def handle_subscription_updated(subscription: Dict[str, Any], session: Session) -> str:
    stripe_id = subscription["id"]
    local = find_subscription(session, stripe_id)
    if not local:
        logger.info(f"ℹ️ Subscription {stripe_id} not found locally, ignoring update")
        return "noop"

    apply_remote_subscription(local, subscription)
    local.subscription_metadata = merge_metadata(
        local.subscription_metadata,
        updated_via="webhook",
        webhook_event="customer.subscription.updated",
        updated_at=datetime.utcnow().isoformat(),
    )
    session.add(local)
    session.commit()
    logger.info(f"✅ Subscription {stripe_id} updated (status={local.status}, cancel_at_period_end={local.cancel_at_period_end})")
    return "updated"


def handle_subscription_deleted(subscription: Dict[str, Any], session: Session) -> str:
    stripe_id = subscription["id"]
    local = find_subscription(session, stripe_id)
    if not local:
        logger.info(f"ℹ️ Subscription {stripe_id} not found locally, ignoring deletion")
        return "noop"

    now = datetime.utcnow()
    local.status = SubscriptionStatus.CANCELED.value
    local.cancel_at_period_end = False
    local.canceled_at = from_timestamp(subscription.get("canceled_at")) or now
    local.updated_at = now
    local.subscription_metadata = merge_metadata(
        local.subscription_metadata,
        canceled_via="webhook",
        webhook_event="customer.subscription.deleted",
        canceled_at=now.isoformat(),
    )
    session.add(local)
    session.commit()
    logger.info(f"🗑️ Subscription {stripe_id} canceled")
    return "updated"


# -------------------------
# Invoice payments
# -------------------------
def _upsert_subscription_transaction(
    session: Session,
    local: Subscription,
    remote_payment_id: str,
    invoice: Dict[str, Any],
    status: SubscriptionTransactionStatus,
    amount: float,
    event_type: str,
) -> str:
    txn = find_subscription_transaction(session, remote_payment_id)

    if txn:
        if txn.status == SubscriptionTransactionStatus.SUCCEEDED.value and status != SubscriptionTransactionStatus.SUCCEEDED:
            logger.info(f"ℹ️ Payment {remote_payment_id} already succeeded, ignoring late {event_type}")
            return "exists"
        if txn.status == status.value:
            return "exists"
        txn.status = status.value
        txn.amount = amount
        txn.updated_at = datetime.utcnow()
        txn.transaction_metadata = merge_metadata(txn.transaction_metadata, corrected_by=event_type)
        session.add(txn)
        return "updated"

    label = "Payment" if status == SubscriptionTransactionStatus.SUCCEEDED else "Failed payment"
    session.add(SubscriptionTransaction(
        stripe_transaction_id=remote_payment_id,
        stripe_invoice_id=invoice.get("id"),
        subscription_id=local.id,
        amount=amount,
        currency=invoice.get("currency") or local.currency,
        status=status.value,
        payment_method="stripe",
        description=f"{label} for invoice {invoice.get('number') or invoice.get('id')}",
        transaction_metadata=merge_metadata(
            None,
            invoice_id=invoice.get("id"),
            invoice_number=invoice.get("number"),
            payment_intent_id=_expandable_id(invoice.get("payment_intent")),
            created_via="webhook",
            webhook_event=event_type,
        ),
    ))
    return "created"


def _local_subscription_for_invoice(invoice: Dict[str, Any], session: Session) -> Optional[Subscription]:
    remote_sub_id = _invoice_subscription_id(invoice)
    if not remote_sub_id:
        logger.info(f"ℹ️ Invoice {invoice.get('id')} is not for a subscription")
        return None
    local = find_subscription(session, remote_sub_id)
    if not local:
        logger.info(f"ℹ️ Subscription {remote_sub_id} for invoice {invoice.get('id')} not found locally")
    return local


def handle_invoice_payment_succeeded(invoice: Dict[str, Any], session: Session) -> str:
    local = _local_subscription_for_invoice(invoice, session)
    if not local:
        return "noop"

    remote_payment_id = _expandable_id(invoice.get("payment_intent")) or invoice["id"]
    amount = (invoice.get("amount_paid") or 0) / 100
    outcome = _upsert_subscription_transaction(
        session, local, remote_payment_id, invoice,
        SubscriptionTransactionStatus.SUCCEEDED, amount, "invoice.payment_succeeded",
    )

    if local.status in (SubscriptionStatus.PAST_DUE.value, SubscriptionStatus.UNPAID.value):
        local.status = SubscriptionStatus.ACTIVE.value
    period_start, period_end = _invoice_period(invoice)
    if period_start and period_end:
        local.current_period_start = period_start
        local.current_period_end = period_end
    local.updated_at = datetime.utcnow()
    session.add(local)

    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        logger.info(f"ℹ️ Payment {remote_payment_id} recorded concurrently")
        return "exists"

    logger.info(f"✅ Invoice {invoice.get('id')} payment {outcome} for subscription {local.stripe_subscription_id}")
    return outcome


def handle_invoice_payment_failed(invoice: Dict[str, Any], session: Session) -> str:
    local = _local_subscription_for_invoice(invoice, session)
    if not local:
        return "noop"

    remote_payment_id = _expandable_id(invoice.get("payment_intent")) or f"failed_{invoice['id']}"
    amount = (invoice.get("amount_due") or 0) / 100
    outcome = _upsert_subscription_transaction(
        session, local, remote_payment_id, invoice,
        SubscriptionTransactionStatus.FAILED, amount, "invoice.payment_failed",
    )

    if outcome != "exists" and local.status == SubscriptionStatus.ACTIVE.value:
        local.status = SubscriptionStatus.PAST_DUE.value
        local.updated_at = datetime.utcnow()
        session.add(local)

    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        logger.info(f"ℹ️ Failed payment {remote_payment_id} recorded concurrently")
        return "exists"

    logger.warning(f"⚠️ Payment failed for subscription {local.stripe_subscription_id} ({outcome})")

    if outcome == "created" and local.donor:
        email_service.send_payment_failed_email(
            to_email=local.donor.email,
            donor_name=local.donor.name,
            org_name=local.organization.name if local.organization else "your organization",
            amount=amount,
            currency=invoice.get("currency") or local.currency,
        )
    return outcome


# -------------------------
# One-off donations (payment intents)
# -------------------------
def _receipt_url(intent: Dict[str, Any]) -> Optional[str]:
    latest = intent.get("latest_charge")
    if isinstance(latest, dict):
        return latest.get("receipt_url")
    charges = (intent.get("charges") or {}).get("data") or []
    return charges[0].get("receipt_url") if charges else None


def _upsert_transaction(intent: Dict[str, Any], session: Session, status: TransactionStatus) -> str:
    intent_id = intent["id"]
    txn = find_transaction(session, intent_id)

    outcome = "updated"
    if txn is None:
        ids = metadata_ids(intent, REQUIRED_PAYMENT_METADATA)
        if ids is None:
            logger.warning(f"⚠️ Dropping payment intent {intent_id}: required metadata missing")
            return "skipped"
        if not session.get(Donor, ids["donor_id"]) or not session.get(Organization, ids["organization_id"]):
            logger.warning(f"⚠️ Donor or organization missing for payment intent {intent_id}")
            return "skipped"
        txn = Transaction(
            stripe_payment_intent_id=intent_id,
            donor_id=ids["donor_id"],
            organization_id=ids["organization_id"],
            amount=(intent.get("amount_received") or intent.get("amount") or 0) / 100,
            currency=intent.get("currency") or "usd",
        )
        outcome = "created"
    elif txn.status == TransactionStatus.COMPLETED.value and status != TransactionStatus.COMPLETED:
        logger.info(f"ℹ️ Payment intent {intent_id} already completed, ignoring {status.value}")
        return "exists"
    elif txn.status == status.value:
        return "exists"

    credit_organization = status == TransactionStatus.COMPLETED and txn.status != TransactionStatus.COMPLETED.value

    if status == TransactionStatus.COMPLETED and intent.get("amount_received"):
        txn.amount = intent["amount_received"] / 100
    txn.status = status.value
    txn.receipt_url = _receipt_url(intent) or txn.receipt_url
    last_error = intent.get("last_payment_error") or {}
    txn.details = merge_metadata(
        txn.details,
        payment_intent_id=intent_id,
        stripe_status=intent.get("status"),
        stripe_payment_method=_expandable_id(intent.get("payment_method")),
        last_payment_error=last_error.get("message"),
        webhook_processed_at=datetime.utcnow().isoformat(),
    )
    txn.updated_at = datetime.utcnow()
    session.add(txn)

    if credit_organization:
        organization = session.get(Organization, txn.organization_id)
        if organization:
            organization.balance = (organization.balance or 0.0) + txn.amount
            organization.updated_at = datetime.utcnow()
            session.add(organization)

    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        logger.info(f"ℹ️ Payment intent {intent_id} recorded concurrently")
        return "exists"

    logger.info(f"✅ Payment intent {intent_id} -> {status.value} ({outcome})")
    return outcome


def handle_payment_intent_succeeded(intent: Dict[str, Any], session: Session) -> str:
    return _upsert_transaction(intent, session, TransactionStatus.COMPLETED)


def handle_payment_intent_failed(intent: Dict[str, Any], session: Session) -> str:
    return _upsert_transaction(intent, session, TransactionStatus.FAILED)


def handle_payment_intent_canceled(intent: Dict[str, Any], session: Session) -> str:
    return _upsert_transaction(intent, session, TransactionStatus.CANCELED)


def handle_payment_intent_processing(intent: Dict[str, Any], session: Session) -> str:
    return _upsert_transaction(intent, session, TransactionStatus.PENDING)


def acknowledge_only(data_object: Dict[str, Any], session: Session) -> str:
    logger.info(f"ℹ️ Acknowledged {data_object.get('object', 'object')} {data_object.get('id')}")
    return "acknowledged"


# -------------------------
# Dispatch
# -------------------------
EVENT_HANDLERS: Dict[str, Callable[[Dict[str, Any], Session], str]] = {
    "customer.subscription.created": handle_subscription_created,
    "customer.subscription.updated": handle_subscription_updated,
    "customer.subscription.deleted": handle_subscription_deleted,
    "invoice.payment_succeeded": handle_invoice_payment_succeeded,
    "invoice.payment_failed": handle_invoice_payment_failed,
    "payment_intent.succeeded": handle_payment_intent_succeeded,
    "payment_intent.payment_failed": handle_payment_intent_failed,
    "payment_intent.canceled": handle_payment_intent_canceled,
    "payment_intent.processing": handle_payment_intent_processing,
    "invoice.created": acknowledge_only,
    "invoice.finalized": acknowledge_only,
    "invoice.payment_action_required": acknowledge_only,
    "payment_method.attached": acknowledge_only,
    "payment_method.detached": acknowledge_only,
    "charge.succeeded": acknowledge_only,
    "charge.failed": acknowledge_only,
    "charge.dispute.created": acknowledge_only,
}


def dispatch_event(event: Dict[str, Any], session: Session) -> str:
    event_type = event.get("type")
    handler = EVENT_HANDLERS.get(event_type)
    if handler is None:
        logger.info(f"ℹ️ Unhandled event type: {event_type}")
        return "unhandled"
    return handler(event["data"]["object"], session)


def process_webhook_event(event: Dict[str, Any], session: Session) -> Dict[str, Any]:
    """
    Record a verified Stripe event and run its handler.

    Never raises: handler failures are logged and stored on the WebhookEvent row so
    the endpoint can still acknowledge the delivery.
    """
    event_id = event.get("id")
    event_type = event.get("type")

    webhook_event = find_webhook_event(session, event_id)
    if webhook_event and webhook_event.processed:
        logger.info(f"ℹ️ Event {event_id} already processed, skipping")
        return {"status": "ignored", "reason": "already_processed", "event": event_type}

    if webhook_event is None:
        webhook_event = WebhookEvent(
            stripe_event_id=event_id,
            event_type=event_type,
            payload=json.dumps(event),
            processed=False,
        )
        session.add(webhook_event)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            logger.info(f"ℹ️ Event {event_id} is being processed by another delivery")
            return {"status": "ignored", "reason": "in_progress", "event": event_type}

    # Handlers may have failed on an earlier delivery of this event; run them again
    try:
        result = dispatch_event(event, session)
    except Exception as e:
        logger.exception(f"❌ Error processing webhook event {event_type} ({event_id}): {e}")
        session.rollback()
        webhook_event.processing_error = str(e)
        webhook_event.processed = False
        session.add(webhook_event)
        session.commit()
        return {"status": "error", "event": event_type}

    webhook_event.processed = True
    webhook_event.processing_error = None
    session.add(webhook_event)
    session.commit()
    return {"status": "success", "event": event_type, "result": result}
