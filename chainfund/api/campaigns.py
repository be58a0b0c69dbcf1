from typing import Optional

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from chainfund.api.deps import require_user
from chainfund.core.clock import utcnow
from chainfund.core.errors import NotFoundError
from chainfund.database.database import get_db
from chainfund.models.campaign import Campaign
from chainfund.models.chainer import CommissionDestination
from chainfund.schemas.campaign import CampaignAvailabilityResponse, ChainerResponse, ChainJoinRequest
from chainfund.schemas.payout import CommissionStatsResponse
from chainfund.services import chainer as chainer_service
from chainfund.services import lifecycle

router = APIRouter(tags=["campaigns"])


@router.get("/campaigns/{campaign_id}/availability", response_model=CampaignAvailabilityResponse)
async def get_campaign_availability(campaign_id: str, db: AsyncSession = Depends(get_db)):
    """Whether the campaign accepts donations and chain joins, and why not"""
    campaign = await db.get(Campaign, campaign_id)
    if campaign is None:
        raise NotFoundError(f"Campaign {campaign_id} not found")

    now = utcnow()
    result = lifecycle.availability(campaign, now)
    remaining = lifecycle.time_remaining(campaign, now)
    return CampaignAvailabilityResponse(
        campaign_id=campaign.id,
        status=campaign.status,
        can_accept_donations=result.can_accept_donations,
        can_accept_chains=result.can_accept_chains,
        reason=result.reason.value if result.reason else None,
        message=result.message,
        seconds_remaining=int(remaining.total_seconds()) if remaining is not None else None,
    )


@router.post("/campaigns/{campaign_id}/chain", response_model=ChainerResponse, status_code=status.HTTP_201_CREATED)
async def join_chain(
    campaign_id: str,
    body: Optional[ChainJoinRequest] = None,
    user_id: str = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    """Chain a campaign and get a referral code; 422 with a reason when it no longer accepts chains"""
    destination = body.commission_destination if body else CommissionDestination.KEEP
    return await chainer_service.join_campaign(db, user_id, campaign_id, destination)


@router.get("/commissions/stats", response_model=CommissionStatsResponse)
async def get_commission_stats(
    user_id: str = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    return await chainer_service.commission_stats(db, user_id)
