from .campaign import (
    CampaignAvailabilityResponse,
    CampaignStateResponse,
    ChainerResponse,
    ChainJoinRequest,
)
from .donation import AdminDonationStatusResponse, DonationCreateRequest, DonationStatusResponse
from .payout import (
    BankDetails,
    CampaignPayoutResponse,
    CommissionPayoutResponse,
    CommissionRejectRequest,
    CommissionStatsResponse,
    CommissionWithdrawalResponse,
    PayoutRequest,
)
from .webhook import WebhookAckResponse

__all__ = [
    "CampaignAvailabilityResponse",
    "CampaignStateResponse",
    "ChainerResponse",
    "ChainJoinRequest",
    "AdminDonationStatusResponse",
    "DonationCreateRequest",
    "DonationStatusResponse",
    "BankDetails",
    "CampaignPayoutResponse",
    "CommissionPayoutResponse",
    "CommissionRejectRequest",
    "CommissionStatsResponse",
    "CommissionWithdrawalResponse",
    "PayoutRequest",
    "WebhookAckResponse",
]
