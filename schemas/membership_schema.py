# membership_schema.py
from pydantic import BaseModel, EmailStr, field_validator, model_validator
from typing import Optional
from datetime import datetime, timezone


class MembershipStatusRequest(BaseModel):
    """Filters accepted by the membership-status endpoint (query string or JSON body)."""
    donor_id: Optional[int] = None
    customer_email: Optional[EmailStr] = None
    include_inactive: bool = False
    include_stripe_data: bool = True
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None

    @field_validator("date_from", "date_to")
    @classmethod
    def naive_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        # Stored timestamps are naive UTC
        if value is not None and value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    @model_validator(mode="after")
    def require_identifier(self):
        if self.donor_id is None and not self.customer_email:
            raise ValueError("Either donor_id or customer_email is required")
        if self.date_from and self.date_to and self.date_from > self.date_to:
            raise ValueError("date_from must be before date_to")
        return self


class MembershipStatistics(BaseModel):
    total_subscriptions: int
    active_subscriptions: int
    canceled_subscriptions: int
    scheduled_for_cancellation: int
    total_transactions: int
    total_subscription_transactions: int
    membership_duration_days: int
    total_amount_paid: float
    total_subscription_amount: float
