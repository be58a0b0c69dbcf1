from fastapi import APIRouter, BackgroundTasks, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from chainfund.api.deps import require_admin
from chainfund.database.database import get_db
from chainfund.kafka.producer import notification_producer
from chainfund.models.campaign import ClosureReason
from chainfund.schemas.campaign import CampaignStateResponse
from chainfund.schemas.payout import (
    CampaignPayoutResponse,
    CommissionPayoutResponse,
    CommissionRejectRequest,
)
from chainfund.services import lifecycle
from chainfund.services.payout import CAMPAIGN, COMMISSION, PayoutService

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])


# ============================================================================
# CAMPAIGNS
# ============================================================================

@router.post("/campaigns/{campaign_id}/close", response_model=CampaignStateResponse)
async def close_campaign(
    campaign_id: str,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
):
    campaign, closed = await lifecycle.close_campaign(db, campaign_id, ClosureReason.MANUAL)
    await db.commit()
    if closed:
        background_tasks.add_task(notification_producer.notify_all, [lifecycle.closed_notification(campaign)])
    return campaign


@router.post("/campaigns/{campaign_id}/pause", response_model=CampaignStateResponse)
async def pause_campaign(campaign_id: str, db: AsyncSession = Depends(get_db)):
    campaign = await lifecycle.pause_campaign(db, campaign_id)
    await db.commit()
    return campaign


@router.post("/campaigns/{campaign_id}/resume", response_model=CampaignStateResponse)
async def resume_campaign(campaign_id: str, db: AsyncSession = Depends(get_db)):
    campaign = await lifecycle.resume_campaign(db, campaign_id)
    await db.commit()
    return campaign


@router.get("/campaigns/closure-stats")
async def campaign_closure_stats(db: AsyncSession = Depends(get_db)):
    return await lifecycle.campaign_closure_stats(db)


# ============================================================================
# PAYOUTS
# ============================================================================

@router.post("/payouts/{payout_id}/approve", response_model=CampaignPayoutResponse)
async def approve_campaign_payout(payout_id: str, db: AsyncSession = Depends(get_db)):
    return await PayoutService.approve_campaign_payout(db, payout_id)


@router.post("/payouts/{payout_id}/dispatch", response_model=CampaignPayoutResponse)
async def dispatch_campaign_payout(
    payout_id: str,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
):
    payout, notifications = await PayoutService.dispatch_payout(db, CAMPAIGN, payout_id)
    background_tasks.add_task(notification_producer.notify_all, notifications)
    return payout


@router.post("/commission-payouts/{payout_id}/approve", response_model=CommissionPayoutResponse)
async def approve_commission_payout(payout_id: str, db: AsyncSession = Depends(get_db)):
    return await PayoutService.approve_commission_payout(db, payout_id)


@router.post("/commission-payouts/{payout_id}/reject", response_model=CommissionPayoutResponse)
async def reject_commission_payout(
    payout_id: str,
    body: CommissionRejectRequest,
    db: AsyncSession = Depends(get_db),
):
    return await PayoutService.reject_commission_payout(db, payout_id, body.reason)


@router.post("/commission-payouts/{payout_id}/dispatch", response_model=CommissionPayoutResponse)
async def dispatch_commission_payout(
    payout_id: str,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
):
    payout, notifications = await PayoutService.dispatch_payout(db, COMMISSION, payout_id)
    background_tasks.add_task(notification_producer.notify_all, notifications)
    return payout
