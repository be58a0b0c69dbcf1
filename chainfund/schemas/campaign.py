from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from chainfund.models.campaign import CampaignStatus, ClosureReason
from chainfund.models.chainer import ChainerStatus, CommissionDestination


class CampaignStateResponse(BaseModel):
    """Ledger and lifecycle fields of a campaign"""
    id: str
    creator_id: str
    title: str
    goal_amount: Decimal
    current_amount: Decimal
    currency: str
    status: CampaignStatus
    is_active: bool
    is_chained: bool
    duration: Optional[str] = None
    closure_reason: Optional[ClosureReason] = None
    goal_reached_at: Optional[datetime] = None
    auto_close_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class CampaignAvailabilityResponse(BaseModel):
    campaign_id: str
    status: CampaignStatus
    can_accept_donations: bool
    can_accept_chains: bool
    reason: Optional[str] = None
    message: Optional[str] = None
    seconds_remaining: Optional[int] = None


class ChainJoinRequest(BaseModel):
    commission_destination: CommissionDestination = Field(
        CommissionDestination.KEEP, alias="commissionDestination", description="keep or donate"
    )

    model_config = ConfigDict(populate_by_name=True)


class ChainerResponse(BaseModel):
    id: str
    user_id: str
    campaign_id: str
    referral_code: str
    total_raised: Decimal
    total_referrals: int
    commission_earned: Decimal
    commission_destination: CommissionDestination
    status: ChainerStatus
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)
