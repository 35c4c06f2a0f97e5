# routes/subscriptions.py
from typing import Optional
import logging

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from pydantic import ValidationError
from sqlmodel import Session

from core.database import get_session
from core.security import AccountContext, ensure_donor_access, get_current_account
from models.models import AccountRole, Subscription
from schemas.membership_schema import MembershipStatusRequest
from schemas.subscription_schema import (
    CancelByDonorRequest,
    ResumeByDonorRequest,
    SetupPaymentRequest,
    SubscriptionActionRequest,
    SubscriptionDetail,
    VerifySuccessRequest,
)
from services import membership_service, subscription_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/subscriptions", tags=["Subscriptions"])


# -------------------------
# Helper Functions
# -------------------------
def _membership_filters(**values) -> MembershipStatusRequest:
    try:
        return MembershipStatusRequest(**values)
    except ValidationError as e:
        message = e.errors()[0].get("msg", "Invalid request")
        raise HTTPException(status_code=400, detail=message.removeprefix("Value error, "))


def _membership_response(session: Session, account: AccountContext, filters: MembershipStatusRequest):
    if account.role == AccountRole.ORGANIZATION:
        raise HTTPException(status_code=403, detail="Not allowed to access this donor")

    donor = membership_service.resolve_donor(session, filters.donor_id, filters.customer_email)
    if not donor:
        raise HTTPException(status_code=404, detail="Donor not found")

    ensure_donor_access(account, donor.id)
    return membership_service.build_membership_status(session, donor, filters)


def _owned_subscription(session: Session, account: AccountContext, subscription_id: int, read_only: bool = False) -> Subscription:
    """Load a subscription the caller may see; organizations only get read access to their own."""
    subscription = subscription_service.get_subscription_or_404(session, subscription_id)
    if account.is_admin:
        return subscription
    if account.role == AccountRole.DONOR and subscription.donor_id == account.account_id:
        return subscription
    if read_only and account.role == AccountRole.ORGANIZATION and subscription.organization_id == account.account_id:
        return subscription
    raise HTTPException(status_code=403, detail="Not allowed to access this subscription")


# ==========================================================
# 📊 Membership status
# ==========================================================
@router.get("/membership-status")
def get_membership_status(
    donor_id: Optional[int] = Query(None),
    customer_email: Optional[str] = Query(None),
    include_inactive: bool = Query(False),
    session: Session = Depends(get_session),
    account: AccountContext = Depends(get_current_account),
):
    filters = _membership_filters(
        donor_id=donor_id,
        customer_email=customer_email,
        include_inactive=include_inactive,
    )
    return _membership_response(session, account, filters)


@router.post("/membership-status")
def post_membership_status(
    body: Optional[dict] = Body(None),
    session: Session = Depends(get_session),
    account: AccountContext = Depends(get_current_account),
):
    """Same as the GET variant, plus date range and Stripe lookup filters."""
    filters = _membership_filters(**(body or {}))
    return _membership_response(session, account, filters)


# ==========================================================
# 💳 Checkout setup
# ==========================================================
@router.post("/setup-payment")
def setup_payment(
    request: SetupPaymentRequest,
    session: Session = Depends(get_session),
    account: AccountContext = Depends(get_current_account),
):
    ensure_donor_access(account, request.donor_id)
    return subscription_service.setup_payment(session, request)


@router.post("/verify-success")
def verify_success(
    request: VerifySuccessRequest,
    session: Session = Depends(get_session),
    account: AccountContext = Depends(get_current_account),
):
    """Confirm a finished checkout from the success page without waiting for the webhook."""
    return subscription_service.verify_success(session, account, request.session_id)


# ==========================================================
# 🔁 Donor-wide cancel / resume
# ==========================================================
@router.post("/cancel-by-donor")
def cancel_by_donor(
    request: CancelByDonorRequest,
    session: Session = Depends(get_session),
    account: AccountContext = Depends(get_current_account),
):
    ensure_donor_access(account, request.donor_id)
    return subscription_service.cancel_by_donor(session, request.donor_id, request.cancel_immediately)


@router.post("/resume-by-donor")
def resume_by_donor(
    request: ResumeByDonorRequest,
    session: Session = Depends(get_session),
    account: AccountContext = Depends(get_current_account),
):
    ensure_donor_access(account, request.donor_id)
    return subscription_service.resume_by_donor(session, request.donor_id)


# ==========================================================
# 📄 Single subscription
# ==========================================================
@router.get("/{subscription_id}")
def get_subscription(
    subscription_id: int,
    session: Session = Depends(get_session),
    account: AccountContext = Depends(get_current_account),
):
    subscription = _owned_subscription(session, account, subscription_id, read_only=True)
    detail = subscription_service.get_subscription_detail(subscription)
    return {
        "success": True,
        "subscription": SubscriptionDetail.model_validate(detail["subscription"]),
        "stripe_data": detail["stripe_data"],
    }


@router.put("/{subscription_id}")
def update_subscription(
    subscription_id: int,
    request: SubscriptionActionRequest,
    session: Session = Depends(get_session),
    account: AccountContext = Depends(get_current_account),
):
    subscription = _owned_subscription(session, account, subscription_id)
    if request.action == "reactivate":
        return subscription_service.reactivate_subscription(session, subscription)
    return subscription_service.update_payment_method(subscription, request.payment_method_id)


@router.delete("/{subscription_id}")
def cancel_subscription(
    subscription_id: int,
    immediate: bool = Query(False),
    session: Session = Depends(get_session),
    account: AccountContext = Depends(get_current_account),
):
    subscription = _owned_subscription(session, account, subscription_id)
    return subscription_service.cancel_subscription(session, subscription, immediate)


@router.get("/{subscription_id}/transactions")
def list_subscription_transactions(
    subscription_id: int,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    session: Session = Depends(get_session),
    account: AccountContext = Depends(get_current_account),
):
    subscription = _owned_subscription(session, account, subscription_id, read_only=True)
    return subscription_service.list_transactions(session, subscription, page, limit)


@router.get("/{subscription_id}/invoices")
def list_subscription_invoices(
    subscription_id: int,
    limit: int = Query(10, ge=1, le=100),
    status: Optional[str] = Query(None),
    session: Session = Depends(get_session),
    account: AccountContext = Depends(get_current_account),
):
    subscription = _owned_subscription(session, account, subscription_id, read_only=True)
    return subscription_service.list_invoices(session, subscription, limit, status)
