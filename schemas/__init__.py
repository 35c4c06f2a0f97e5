from .auth_schema import LoginRequest, TokenResponse
from .membership_schema import MembershipStatusRequest, MembershipStatistics
from .subscription_schema import (
    DonorSummary, OrganizationSummary, PackageSummary,
    SubscriptionRead, SubscriptionDetail, SubscriptionTransactionRead, TransactionRead,
    SetupPaymentRequest, SubscriptionActionRequest, CancelByDonorRequest, ResumeByDonorRequest, VerifySuccessRequest,
)

__all__ = [
    # Auth
    "LoginRequest", "TokenResponse",

    # Membership
    "MembershipStatusRequest", "MembershipStatistics",

    # Subscription ledger
    "DonorSummary", "OrganizationSummary", "PackageSummary",
    "SubscriptionRead", "SubscriptionDetail", "SubscriptionTransactionRead", "TransactionRead",
    "SetupPaymentRequest", "SubscriptionActionRequest", "CancelByDonorRequest", "ResumeByDonorRequest", "VerifySuccessRequest",
]
