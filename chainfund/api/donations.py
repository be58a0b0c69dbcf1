from typing import Optional

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from chainfund.api.deps import get_current_user_id, get_current_user_role, require_user
from chainfund.core.clock import utcnow
from chainfund.core.errors import ForbiddenError
from chainfund.database.database import get_db
from chainfund.models.donation import Donation
from chainfund.schemas.donation import (
    AdminDonationStatusResponse,
    DonationCreateRequest,
    DonationStatusResponse,
)
from chainfund.services import donation_status
from chainfund.services.donation import DonationService

router = APIRouter(prefix="/donations", tags=["donations"])


def _status_response(donation: Donation, admin: bool = False) -> DonationStatusResponse:
    now = utcnow()
    fields = dict(
        id=donation.id,
        campaign_id=donation.campaign_id,
        amount=donation.amount,
        currency=donation.currency,
        status=donation.payment_status,
        classification=donation_status.classify(donation, now).value,
        message=donation_status.status_message(donation, now),
        retryable=donation_status.is_retryable(donation, now),
        next_retry_at=donation_status.next_retry_time(donation, now),
        processed_at=donation.processed_at,
    )
    if not admin:
        return DonationStatusResponse(**fields)
    return AdminDonationStatusResponse(
        **fields,
        failure_reason=donation.failure_reason.value if donation.failure_reason else None,
        retry_attempts=donation.retry_attempts,
        payment_provider_reference=donation.payment_provider_reference,
        last_status_update=donation.last_status_update,
    )


@router.post("", response_model=DonationStatusResponse, status_code=status.HTTP_201_CREATED)
async def create_donation(
    donation_request: DonationCreateRequest,
    user_id: Optional[str] = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """
    Start a donation. Rejected with 422 ``campaign_not_accepting`` and a
    reason (goal_reached, expired, closed, paused) when the campaign no
    longer takes donations.
    """
    donation = await DonationService.create_donation(db, user_id, donation_request)
    return _status_response(donation)


@router.get("/{donation_id}/status", response_model=AdminDonationStatusResponse,
            response_model_exclude_unset=True)
async def get_donation_status(
    donation_id: str,
    user_id: Optional[str] = Depends(get_current_user_id),
    role: Optional[str] = Depends(get_current_user_role),
    db: AsyncSession = Depends(get_db),
):
    """Donation status with a human readable message; admins also get failure details"""
    donation = await DonationService.get_donation(db, donation_id)
    is_admin = (role or "").lower() == "admin"
    if not is_admin and donation.donor_id and donation.donor_id != user_id:
        raise ForbiddenError("Donation belongs to another user")
    return _status_response(donation, admin=is_admin)


@router.post("/{donation_id}/retry", response_model=DonationStatusResponse)
async def retry_donation(
    donation_id: str,
    user_id: str = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    donation = await DonationService.retry_donation(db, donation_id, user_id)
    return _status_response(donation)
