# donorhub_backend/models.py
from typing import Optional, List
from datetime import datetime
from enum import Enum
from sqlmodel import SQLModel, Field, Relationship
from pydantic import EmailStr


# ============================================================
# ENUMS
# ============================================================
class AccountRole(str, Enum):
    ADMIN = "admin"
    ORGANIZATION = "organization"
    DONOR = "donor"


class SubscriptionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    TRIALING = "TRIALING"
    PAST_DUE = "PAST_DUE"
    CANCELED = "CANCELED"
    UNPAID = "UNPAID"

    @classmethod
    def from_remote(cls, value: Optional[str]) -> "SubscriptionStatus":
        """Map a Stripe subscription status onto the local enum."""
        remote = (value or "").lower()
        folded = {
            "incomplete": cls.UNPAID,
            "incomplete_expired": cls.CANCELED,
            "paused": cls.PAST_DUE,
        }
        if remote in folded:
            return folded[remote]
        try:
            return cls(remote.upper())
        except ValueError:
            return cls.UNPAID


# Statuses that still count as a live membership
ACTIVE_LIKE_STATUSES = (
    SubscriptionStatus.ACTIVE.value,
    SubscriptionStatus.TRIALING.value,
    SubscriptionStatus.PAST_DUE.value,
)
ENDED_STATUSES = (
    SubscriptionStatus.CANCELED.value,
    SubscriptionStatus.UNPAID.value,
)


class SubscriptionTransactionStatus(str, Enum):
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"


class MembershipStatus(str, Enum):
    ACTIVE = "ACTIVE"
    TRIALING = "TRIALING"
    SCHEDULED_FOR_CANCELLATION = "SCHEDULED_FOR_CANCELLATION"
    CANCELED = "CANCELED"
    INACTIVE = "INACTIVE"


# ============================================================
# ADMIN USER
# ============================================================
class AdminUser(SQLModel, table=True):
    __tablename__ = "admin_user"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(max_length=100)
    email: EmailStr = Field(index=True, unique=True, max_length=100, nullable=False)
    password_hash: str = Field(nullable=False)
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=datetime.utcnow)


# ============================================================
# ORGANIZATION (donation recipient)
# ============================================================
class Organization(SQLModel, table=True):
    __tablename__ = "organization"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(max_length=150)
    email: EmailStr = Field(index=True, unique=True, max_length=100, nullable=False)
    password_hash: Optional[str] = None
    phone: Optional[str] = Field(default=None, max_length=30)
    address: Optional[str] = Field(default=None, max_length=255)
    city: Optional[str] = Field(default=None, max_length=100)
    country: Optional[str] = Field(default=None, max_length=100)

    # Running total of completed one-off donations
    balance: float = Field(default=0.0)

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    packages: List["Package"] = Relationship(back_populates="organization")
    subscriptions: List["Subscription"] = Relationship(back_populates="organization")
    transactions: List["Transaction"] = Relationship(back_populates="organization")


# ============================================================
# DONOR
# ============================================================
class Donor(SQLModel, table=True):
    __tablename__ = "donor"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(max_length=100)
    email: EmailStr = Field(index=True, max_length=100, nullable=False)
    password_hash: Optional[str] = None
    phone: Optional[str] = Field(default=None, max_length=30)
    city: Optional[str] = Field(default=None, max_length=100)
    address: Optional[str] = Field(default=None, max_length=255)
    is_active: bool = Field(default=True)

    stripe_customer_id: Optional[str] = Field(default=None, max_length=255, index=True)

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    subscriptions: List["Subscription"] = Relationship(back_populates="donor")
    transactions: List["Transaction"] = Relationship(back_populates="donor")


# ============================================================
# PACKAGE (recurring donation tier)
# ============================================================
class Package(SQLModel, table=True):
    __tablename__ = "package"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    price: float = Field(default=0.0)
    currency: str = Field(default="USD", max_length=3)
    interval: str = Field(default="month", max_length=10)
    features: Optional[str] = None
    category: Optional[str] = Field(default=None, max_length=50)
    is_active: bool = Field(default=True)

    organization_id: Optional[int] = Field(default=None, foreign_key="organization.id", index=True)

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    organization: Optional["Organization"] = Relationship(back_populates="packages")
    subscriptions: List["Subscription"] = Relationship(back_populates="package")


# ============================================================
# SUBSCRIPTION (local mirror of a Stripe subscription)
# ============================================================
class Subscription(SQLModel, table=True):
    __tablename__ = "subscription"

    id: Optional[int] = Field(default=None, primary_key=True)
    stripe_subscription_id: str = Field(max_length=255, unique=True, index=True, nullable=False)
    stripe_customer_id: Optional[str] = Field(default=None, max_length=255, index=True)

    donor_id: int = Field(foreign_key="donor.id", nullable=False, index=True)
    organization_id: int = Field(foreign_key="organization.id", nullable=False, index=True)
    package_id: int = Field(foreign_key="package.id", nullable=False, index=True)

    status: str = Field(default=SubscriptionStatus.ACTIVE.value, max_length=20, index=True)
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = Field(default=False)
    canceled_at: Optional[datetime] = None
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None

    amount: float = Field(default=0.0)
    currency: str = Field(default="USD", max_length=3)
    interval: str = Field(default="month", max_length=10)
    interval_count: int = Field(default=1)

    subscription_metadata: Optional[str] = None

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    donor: Optional["Donor"] = Relationship(back_populates="subscriptions")
    organization: Optional["Organization"] = Relationship(back_populates="subscriptions")
    package: Optional["Package"] = Relationship(back_populates="subscriptions")
    subscription_transactions: List["SubscriptionTransaction"] = Relationship(back_populates="subscription")

    @property
    def is_active_like(self) -> bool:
        return self.status in ACTIVE_LIKE_STATUSES


# ============================================================
# SUBSCRIPTION TRANSACTION (one invoice payment attempt)
# ============================================================
class SubscriptionTransaction(SQLModel, table=True):
    __tablename__ = "subscription_transaction"

    id: Optional[int] = Field(default=None, primary_key=True)
    stripe_transaction_id: str = Field(max_length=255, unique=True, index=True, nullable=False)
    stripe_invoice_id: Optional[str] = Field(default=None, max_length=255, index=True)
    subscription_id: int = Field(foreign_key="subscription.id", nullable=False, index=True)

    amount: float = Field(default=0.0)
    currency: str = Field(default="usd", max_length=3)
    status: str = Field(default=SubscriptionTransactionStatus.SUCCEEDED.value, max_length=20)
    payment_method: str = Field(default="stripe", max_length=50)
    description: Optional[str] = Field(default=None, max_length=255)
    transaction_metadata: Optional[str] = None

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    subscription: Optional["Subscription"] = Relationship(back_populates="subscription_transactions")


# ============================================================
# TRANSACTION (one-off donation via payment intent)
# ============================================================
class Transaction(SQLModel, table=True):
    __tablename__ = "transaction"

    id: Optional[int] = Field(default=None, primary_key=True)
    stripe_payment_intent_id: str = Field(max_length=255, unique=True, index=True, nullable=False)
    donor_id: int = Field(foreign_key="donor.id", nullable=False, index=True)
    organization_id: int = Field(foreign_key="organization.id", nullable=False, index=True)

    amount: float = Field(default=0.0)
    currency: str = Field(default="usd", max_length=3)
    status: str = Field(default=TransactionStatus.PENDING.value, max_length=20, index=True)
    receipt_url: Optional[str] = None
    details: Optional[str] = None

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    donor: Optional["Donor"] = Relationship(back_populates="transactions")
    organization: Optional["Organization"] = Relationship(back_populates="transactions")


# ============================================================
# WEBHOOK EVENT LOG
# ============================================================
class WebhookEvent(SQLModel, table=True):
    __tablename__ = "webhook_event"

    id: Optional[int] = Field(default=None, primary_key=True)
    stripe_event_id: str = Field(unique=True, index=True, max_length=255)
    event_type: str = Field(max_length=100, index=True)

    payload: str = Field()
    processed: bool = Field(default=False)
    processing_error: Optional[str] = None

    created_at: datetime = Field(default_factory=datetime.utcnow)


# ============================================================
# EXPORTS
# ============================================================
__all__ = [
    "AdminUser",
    "Organization",
    "Donor",
    "Package",
    "Subscription",
    "SubscriptionTransaction",
    "Transaction",
    "WebhookEvent",
    "AccountRole",
    "SubscriptionStatus",
    "SubscriptionTransactionStatus",
    "TransactionStatus",
    "MembershipStatus",
    "ACTIVE_LIKE_STATUSES",
    "ENDED_STATUSES",
]
