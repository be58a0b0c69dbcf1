from typing import Union

from fastapi import APIRouter, BackgroundTasks, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from chainfund.api.deps import require_user
from chainfund.core.currency import FEE_SCHEDULES
from chainfund.database.database import get_db
from chainfund.kafka.producer import notification_producer
from chainfund.schemas.payout import (
    CampaignPayoutResponse,
    CommissionPayoutResponse,
    CommissionWithdrawalResponse,
    PayoutRequest,
)
from chainfund.services.payout import PayoutService

router = APIRouter(prefix="/payouts", tags=["payouts"])


def _to_response(payout) -> CampaignPayoutResponse:
    response = CampaignPayoutResponse.model_validate(payout)
    response.estimated_delivery = FEE_SCHEDULES[payout.provider].processing_time
    return response


@router.post(
    "",
    response_model=Union[CampaignPayoutResponse, CommissionWithdrawalResponse],
    status_code=status.HTTP_201_CREATED,
)
async def request_payout(
    payout_request: PayoutRequest,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Request a withdrawal: a campaign's raised funds (``campaignId``) or a
    chainer's unpaid commission (``chainerId``)
    """
    if payout_request.chainer_id:
        withdrawal, notifications = await PayoutService.request_commission_payout(db, user_id, payout_request)
        background_tasks.add_task(notification_producer.notify_all, notifications)
        return CommissionWithdrawalResponse(
            chainer_id=withdrawal.chainer_id,
            campaign_id=withdrawal.campaign_id,
            requested_amount=withdrawal.requested_amount,
            amount=withdrawal.amount,
            currency=withdrawal.currency,
            provider=withdrawal.provider,
            available_balance=withdrawal.available_balance,
            payouts=[CommissionPayoutResponse.model_validate(payout) for payout in withdrawal.payouts],
            estimated_delivery=FEE_SCHEDULES[withdrawal.provider].processing_time,
        )

    payout, notifications = await PayoutService.request_payout(db, user_id, payout_request)
    background_tasks.add_task(notification_producer.notify_all, notifications)
    return _to_response(payout)


@router.get("/{payout_id}", response_model=CampaignPayoutResponse)
async def get_payout(
    payout_id: str,
    user_id: str = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    payout = await PayoutService.get_campaign_payout(db, payout_id, user_id)
    return _to_response(payout)
