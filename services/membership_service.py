# ================================================================
# services/membership_service.py: donor membership aggregation
# ================================================================
"""
Derives a donor's overall standing from three sources that can disagree:
local subscriptions, local payment history and Stripe's live view.

Stripe data is best effort. Any failure while talking to Stripe leaves
``stripe_data`` as None and the local picture is returned unchanged.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlmodel import Session, select

from models.models import (
    ACTIVE_LIKE_STATUSES,
    ENDED_STATUSES,
    Donor,
    MembershipStatus,
    Subscription,
    SubscriptionStatus,
    SubscriptionTransaction,
    SubscriptionTransactionStatus,
    Transaction,
    TransactionStatus,
)
from schemas.membership_schema import MembershipStatistics, MembershipStatusRequest
from schemas.subscription_schema import (
    DonorSummary,
    SubscriptionRead,
    SubscriptionTransactionRead,
    TransactionRead,
)
from services import stripe_client

logger = logging.getLogger(__name__)


def derive_overall_status(subscriptions: Iterable[Subscription]) -> MembershipStatus:
    """
    Collapse a donor's subscriptions into one membership status.

    Precedence:
      1. live subscriptions, none scheduled to cancel, at least one not trialing -> ACTIVE
      2. any live subscription trialing -> TRIALING
      3. any live subscription set to cancel at period end -> SCHEDULED_FOR_CANCELLATION
      4. nothing live but something canceled or unpaid -> CANCELED
      5. otherwise -> INACTIVE

    "Live" means ACTIVE, TRIALING or PAST_DUE.
    """
    subscriptions = list(subscriptions)
    live = [sub for sub in subscriptions if sub.is_active_like]

    if live:
        none_scheduled = not any(sub.cancel_at_period_end for sub in live)
        if none_scheduled and any(sub.status != SubscriptionStatus.TRIALING.value for sub in live):
            return MembershipStatus.ACTIVE
        if any(sub.status == SubscriptionStatus.TRIALING.value for sub in live):
            return MembershipStatus.TRIALING
        if any(sub.cancel_at_period_end for sub in live):
            return MembershipStatus.SCHEDULED_FOR_CANCELLATION

    if any(sub.status in ENDED_STATUSES for sub in subscriptions):
        return MembershipStatus.CANCELED
    return MembershipStatus.INACTIVE


def resolve_donor(session: Session, donor_id: Optional[int], customer_email: Optional[str]) -> Optional[Donor]:
    """Look a donor up by id, falling back to the first donor with the given email."""
    if donor_id is not None:
        return session.get(Donor, donor_id)
    if customer_email:
        return session.exec(
            select(Donor).where(Donor.email == customer_email).order_by(Donor.id)
        ).first()
    return None


def _within_dates(statement, column, date_from: Optional[datetime], date_to: Optional[datetime]):
    if date_from:
        statement = statement.where(column >= date_from)
    if date_to:
        statement = statement.where(column <= date_to)
    return statement


def _fetch_stripe_data(donor: Donor) -> Optional[Dict[str, Any]]:
    if not stripe_client.is_stripe_configured():
        logger.info("ℹ️ Stripe not configured, membership status uses local data only")
        return None
    try:
        return stripe_client.fetch_customer_snapshot(donor.email)
    except Exception as e:
        logger.warning(f"⚠️ Could not fetch Stripe data for donor {donor.id}: {e}")
        return None


def _paid_total(rows: Iterable, succeeded: str) -> float:
    return round(sum(row.amount or 0.0 for row in rows if row.status == succeeded), 2)


def build_membership_status(session: Session, donor: Donor, filters: MembershipStatusRequest) -> Dict[str, Any]:
    """Assemble the composite membership document for one donor."""
    all_subscriptions: List[Subscription] = list(session.exec(
        select(Subscription)
        .where(Subscription.donor_id == donor.id)
        .order_by(Subscription.created_at.desc())
    ).all())

    # Overall standing always looks at every subscription; filters only shape the listing
    overall_status = derive_overall_status(all_subscriptions)

    listed = [
        sub for sub in all_subscriptions
        if (filters.include_inactive or sub.status in ACTIVE_LIKE_STATUSES)
        and (filters.date_from is None or sub.created_at >= filters.date_from)
        and (filters.date_to is None or sub.created_at <= filters.date_to)
    ]
    active = [sub for sub in listed if sub.status in ACTIVE_LIKE_STATUSES]
    canceled = [sub for sub in listed if sub.status in ENDED_STATUSES]
    scheduled = [sub for sub in active if sub.cancel_at_period_end]

    transactions = session.exec(
        _within_dates(
            select(Transaction).where(Transaction.donor_id == donor.id),
            Transaction.created_at, filters.date_from, filters.date_to,
        ).order_by(Transaction.created_at.desc())
    ).all()

    subscription_transactions = session.exec(
        _within_dates(
            select(SubscriptionTransaction)
            .join(Subscription, SubscriptionTransaction.subscription_id == Subscription.id)
            .where(Subscription.donor_id == donor.id),
            SubscriptionTransaction.created_at, filters.date_from, filters.date_to,
        ).order_by(SubscriptionTransaction.created_at.desc())
    ).all()

    statistics = MembershipStatistics(
        total_subscriptions=len(listed),
        active_subscriptions=len(active),
        canceled_subscriptions=len(canceled),
        scheduled_for_cancellation=len(scheduled),
        total_transactions=len(transactions),
        total_subscription_transactions=len(subscription_transactions),
        membership_duration_days=max(0, (datetime.utcnow() - donor.created_at).days) if donor.created_at else 0,
        total_amount_paid=_paid_total(transactions, TransactionStatus.COMPLETED.value),
        total_subscription_amount=_paid_total(subscription_transactions, SubscriptionTransactionStatus.SUCCEEDED.value),
    )

    stripe_data = _fetch_stripe_data(donor) if filters.include_stripe_data else None

    def serialize(subs: List[Subscription]) -> List[SubscriptionRead]:
        return [SubscriptionRead.model_validate(sub) for sub in subs]

    return {
        "success": True,
        "membership_status": {
            "overall_status": overall_status.value,
            "donor": DonorSummary.model_validate(donor),
            "statistics": statistics,
            "last_updated": datetime.utcnow().isoformat() + "Z",
        },
        "subscriptions": {
            "total": len(listed),
            "active": serialize(active),
            "canceled": serialize(canceled),
            "scheduled_for_cancellation": serialize(scheduled),
            "all": serialize(listed),
        },
        "payments": {
            "transactions": [TransactionRead.model_validate(txn) for txn in transactions],
            "subscription_transactions": [SubscriptionTransactionRead.model_validate(txn) for txn in subscription_transactions],
            "total_transactions": len(transactions) + len(subscription_transactions),
        },
        "stripe_data": stripe_data,
        "filters_applied": {
            "include_inactive": filters.include_inactive,
            "include_stripe_data": filters.include_stripe_data,
            "date_from": filters.date_from,
            "date_to": filters.date_to,
        },
    }
