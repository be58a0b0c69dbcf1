from .base import Base
from .campaign import Campaign, CampaignStatus, ClosureReason
from .chainer import Chainer, ChainerStatus, CommissionDestination
from .donation import Donation, DonationStatus, FailureReason
from .payout import (
    CampaignPayout,
    CampaignPayoutStatus,
    CommissionPayout,
    CommissionPayoutStatus,
)

__all__ = [
    "Base",
    "Campaign",
    "CampaignStatus",
    "ClosureReason",
    "Chainer",
    "ChainerStatus",
    "CommissionDestination",
    "Donation",
    "DonationStatus",
    "FailureReason",
    "CampaignPayout",
    "CampaignPayoutStatus",
    "CommissionPayout",
    "CommissionPayoutStatus",
]
