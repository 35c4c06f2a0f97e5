# subscription_schema.py
from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, List, Literal
from datetime import datetime


# ---------------------------
# Nested summaries
# ---------------------------
class DonorSummary(BaseModel):
    id: int
    name: str
    email: str
    phone: Optional[str] = None
    city: Optional[str] = None
    address: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class OrganizationSummary(BaseModel):
    id: int
    name: str
    email: str

    model_config = ConfigDict(from_attributes=True)


class PackageSummary(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    price: float
    currency: str
    interval: str

    model_config = ConfigDict(from_attributes=True)


# ---------------------------
# Ledger rows
# ---------------------------
class SubscriptionRead(BaseModel):
    id: int
    stripe_subscription_id: str
    stripe_customer_id: Optional[str] = None
    donor_id: int
    organization_id: int
    package_id: int
    status: str
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool
    canceled_at: Optional[datetime] = None
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    amount: float
    currency: str
    interval: str
    interval_count: int
    created_at: datetime
    updated_at: datetime

    organization: Optional[OrganizationSummary] = None
    package: Optional[PackageSummary] = None

    model_config = ConfigDict(from_attributes=True)


class SubscriptionTransactionRead(BaseModel):
    id: int
    stripe_transaction_id: str
    stripe_invoice_id: Optional[str] = None
    subscription_id: int
    amount: float
    currency: str
    status: str
    payment_method: str
    description: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class SubscriptionDetail(SubscriptionRead):
    subscription_transactions: List[SubscriptionTransactionRead] = []


class TransactionRead(BaseModel):
    id: int
    stripe_payment_intent_id: str
    donor_id: int
    organization_id: int
    amount: float
    currency: str
    status: str
    receipt_url: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    organization: Optional[OrganizationSummary] = None

    model_config = ConfigDict(from_attributes=True)


# ---------------------------
# Requests
# ---------------------------
class SetupPaymentRequest(BaseModel):
    donor_id: int
    organization_id: int
    package_id: int
    return_url: Optional[str] = None


class SubscriptionActionRequest(BaseModel):
    action: Literal["reactivate", "update_payment_method"]
    payment_method_id: Optional[str] = None


class CancelByDonorRequest(BaseModel):
    donor_id: int
    cancel_immediately: bool = False


class ResumeByDonorRequest(BaseModel):
    donor_id: int = Field(..., gt=0)


class VerifySuccessRequest(BaseModel):
    session_id: str = Field(..., min_length=1)
