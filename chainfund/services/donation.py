"""
Donation record store.

Each status change is one UPDATE guarded on the current status; the
returned flag tells the caller whether this call performed the transition
or observed a replay.
"""
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

import structlog
from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from chainfund.core.clock import utcnow
from chainfund.core.currency import quantize
from chainfund.core.errors import (
    ForbiddenError,
    NotFoundError,
    NotRetryableError,
    UnsupportedCurrencyError,
    ValidationError,
)
from chainfund.kafka.producer import Notification
from chainfund.models.campaign import Campaign
from chainfund.models.donation import Donation, DonationStatus, FailureReason
from chainfund.schemas.donation import DonationCreateRequest
from chainfund.services import chainer as chainer_service
from chainfund.services import donation_status, lifecycle

logger = structlog.get_logger(__name__)


def donation_notification(event_type: str, donation: Donation, **extra) -> Notification:
    payload = {
        "donation_id": donation.id,
        "user_id": donation.donor_id,
        "campaign_id": donation.campaign_id,
        "amount": str(donation.amount),
        "currency": donation.currency,
        "status": donation.payment_status.value,
    }
    payload.update(extra)
    return (event_type, payload)


class DonationService:
    """Status transitions for donation records"""

    @staticmethod
    async def get_donation(db: AsyncSession, donation_id: str) -> Donation:
        donation = await db.get(Donation, donation_id)
        if donation is None:
            raise NotFoundError(f"Donation {donation_id} not found")
        return donation

    @staticmethod
    async def create_donation(
        db: AsyncSession,
        donor_id: Optional[str],
        request: DonationCreateRequest,
        now: Optional[datetime] = None,
    ) -> Donation:
        """Open a pending donation against a campaign that still accepts them"""
        now = now or utcnow()
        campaign = await db.get(Campaign, request.campaign_id)
        if campaign is None:
            raise NotFoundError(f"Campaign {request.campaign_id} not found")
        lifecycle.ensure_accepts_donations(campaign, now)
        if campaign.currency.upper() != request.currency:
            raise UnsupportedCurrencyError(
                f"Campaign is denominated in {campaign.currency}",
                detail={"campaign_currency": campaign.currency, "currency": request.currency},
            )

        chainer_id = None
        if request.chainer_id or request.referral_code:
            chainer = await chainer_service.find_by_referral(
                db, campaign.id, request.chainer_id, request.referral_code
            )
            if chainer is None:
                raise ValidationError("Referral does not belong to this campaign")
            chainer_id = chainer.id

        donation = Donation(
            campaign_id=campaign.id,
            donor_id=donor_id,
            chainer_id=chainer_id,
            amount=quantize(request.amount, campaign.currency),
            currency=campaign.currency,
            payment_status=DonationStatus.PENDING,
            payment_method=request.payment_method,
            retry_attempts=0,
            last_status_update=now,
        )
        db.add(donation)
        await db.commit()
        await db.refresh(donation)

        logger.info(
            "Donation started",
            donation_id=donation.id,
            campaign_id=campaign.id,
            amount=str(donation.amount),
            chainer_id=chainer_id
        )
        return donation

    @staticmethod
    async def find_for_event(
        db: AsyncSession,
        donation_id: Optional[str],
        provider_reference: Optional[str],
    ) -> Optional[Donation]:
        """Locate a donation by the id in provider metadata, else by provider reference"""
        if donation_id:
            donation = await db.get(Donation, donation_id)
            if donation is not None:
                return donation
        if provider_reference:
            result = await db.execute(
                select(Donation).where(Donation.payment_provider_reference == provider_reference)
            )
            return result.scalar_one_or_none()
        return None

    @staticmethod
    async def _transition(
        db: AsyncSession,
        donation: Donation,
        allowed_from: Tuple[DonationStatus, ...],
        *extra_conditions,
        **values,
    ) -> bool:
        result = await db.execute(
            update(Donation)
            .where(
                Donation.id == donation.id,
                Donation.payment_status.in_(allowed_from),
                *extra_conditions,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await db.refresh(donation)
        return result.rowcount == 1

    @staticmethod
    async def mark_completed(
        db: AsyncSession,
        donation: Donation,
        provider_reference: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """pending/failed -> completed, once; processed_at marks it applied"""
        now = now or utcnow()
        values = dict(
            payment_status=DonationStatus.COMPLETED,
            processed_at=now,
            last_status_update=now,
            failure_reason=None,
        )
        if provider_reference and not donation.payment_provider_reference:
            values["payment_provider_reference"] = provider_reference
        return await DonationService._transition(
            db, donation,
            (DonationStatus.PENDING, DonationStatus.FAILED),
            Donation.processed_at.is_(None),
            **values,
        )

    @staticmethod
    async def mark_failed(
        db: AsyncSession,
        donation: Donation,
        reason: FailureReason,
        now: Optional[datetime] = None,
    ) -> bool:
        """pending -> failed, counting the attempt"""
        now = now or utcnow()
        return await DonationService._transition(
            db, donation,
            (DonationStatus.PENDING,),
            payment_status=DonationStatus.FAILED,
            failure_reason=reason,
            retry_attempts=Donation.retry_attempts + 1,
            last_status_update=now,
        )

    @staticmethod
    async def mark_canceled(db: AsyncSession, donation: Donation, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return await DonationService._transition(
            db, donation,
            (DonationStatus.PENDING, DonationStatus.FAILED),
            payment_status=DonationStatus.CANCELED,
            failure_reason=FailureReason.USER_CANCELLED,
            last_status_update=now,
        )

    @staticmethod
    async def mark_refunded(db: AsyncSession, donation: Donation, now: Optional[datetime] = None) -> bool:
        """completed -> refunded; only a completed donation ever moved the ledger"""
        now = now or utcnow()
        return await DonationService._transition(
            db, donation,
            (DonationStatus.COMPLETED,),
            payment_status=DonationStatus.REFUNDED,
            last_status_update=now,
        )

    @staticmethod
    async def retry_donation(
        db: AsyncSession,
        donation_id: str,
        user_id: str,
        now: Optional[datetime] = None,
    ) -> Donation:
        """Reopen a retry-eligible failed donation as pending"""
        now = now or utcnow()
        donation = await DonationService.get_donation(db, donation_id)
        if donation.donor_id != user_id:
            raise ForbiddenError("Only the donor can retry this donation")

        if not donation_status.is_retry_eligible(donation, now):
            raise NotRetryableError(
                "Donation cannot be retried",
                detail={
                    "status": donation.payment_status.value,
                    "failure_reason": donation.failure_reason.value if donation.failure_reason else None,
                    "retry_attempts": donation.retry_attempts,
                },
            )
        if not donation_status.is_retryable(donation, now):
            next_retry = donation_status.next_retry_time(donation, now)
            raise NotRetryableError(
                "Retry cooldown has not elapsed",
                detail={"next_retry_at": next_retry.isoformat() if next_retry else None},
            )

        reopened = await DonationService._transition(
            db, donation,
            (DonationStatus.FAILED,),
            payment_status=DonationStatus.PENDING,
            processed_at=None,
            last_status_update=now,
        )
        if not reopened:
            raise NotRetryableError("Donation status changed concurrently")

        await db.commit()
        logger.info(
            "Donation reopened for retry",
            donation_id=donation.id,
            retry_attempts=donation.retry_attempts
        )
        return donation

    @staticmethod
    async def expire_stale_pending(
        db: AsyncSession,
        timeout: timedelta,
        now: Optional[datetime] = None,
    ) -> List[Notification]:
        """
        Fail pending donations older than timeout. Donations past the
        pending age or attempt limits fail with max_retries, the rest with
        timeout.
        """
        now = now or utcnow()
        cutoff = now - timeout
        result = await db.execute(
            select(Donation).where(
                Donation.payment_status == DonationStatus.PENDING,
                or_(
                    Donation.last_status_update.is_(None) & (Donation.created_at < cutoff),
                    Donation.last_status_update < cutoff,
                ),
            )
        )

        notifications = []
        for donation in result.scalars().all():
            reason = FailureReason.TIMEOUT
            if donation_status.is_failed(donation, now):
                reason = FailureReason.MAX_RETRIES
            if await DonationService.mark_failed(db, donation, reason, now):
                logger.info(
                    "Pending donation timed out",
                    donation_id=donation.id,
                    reason=reason.value,
                    retry_attempts=donation.retry_attempts
                )
                notifications.append(donation_notification("donation_timed_out", donation, failure_reason=reason.value))
        await db.commit()
        return notifications
