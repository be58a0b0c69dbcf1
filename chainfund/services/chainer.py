"""
Chainer stats aggregator.

Owns the chainer counters and the commission payout rows. Counters only
move through atomic increments issued here.
"""
import secrets
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from chainfund.core.errors import AlreadyChainedError, NotFoundError
from chainfund.kafka.producer import Notification
from chainfund.middleware.metrics import commission_grants_total
from chainfund.models.campaign import Campaign
from chainfund.models.chainer import Chainer, ChainerStatus, CommissionDestination
from chainfund.models.donation import Donation
from chainfund.models.payout import CommissionPayout, CommissionPayoutStatus
from chainfund.services import lifecycle
from chainfund.services.commission import CommissionGrant, plan_commissions

logger = structlog.get_logger(__name__)


async def get_chainer(db: AsyncSession, chainer_id: str) -> Optional[Chainer]:
    result = await db.execute(
        select(Chainer).where(Chainer.id == chainer_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def find_donor_chainer(db: AsyncSession, donor_id: Optional[str], campaign_id: str) -> Optional[Chainer]:
    if not donor_id:
        return None
    result = await db.execute(
        select(Chainer).where(Chainer.user_id == donor_id, Chainer.campaign_id == campaign_id)
    )
    return result.scalar_one_or_none()


async def apply_donation_to_chainer(
    db: AsyncSession,
    chainer_id: str,
    donation_amount: Decimal,
    commission_amount: Decimal,
    count_referral: bool = True,
) -> Optional[Chainer]:
    """Increment a chainer's totals in one UPDATE; None if the chainer is gone"""
    values = {
        "total_raised": Chainer.total_raised + donation_amount,
        "commission_earned": Chainer.commission_earned + commission_amount,
    }
    if count_referral:
        values["total_referrals"] = Chainer.total_referrals + 1

    result = await db.execute(
        update(Chainer)
        .where(Chainer.id == chainer_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        return None
    return await db.get(Chainer, chainer_id, populate_existing=True)


async def create_pending_commission_payout(
    db: AsyncSession,
    chainer: Chainer,
    donation: Donation,
    amount: Decimal,
    notes: str,
) -> Optional[CommissionPayout]:
    """
    Insert the pending payout for (chainer, donation). Returns None when the
    pair already has one; the unique constraint backs this check up.
    """
    existing = await db.execute(
        select(CommissionPayout.id).where(
            CommissionPayout.chainer_id == chainer.id,
            CommissionPayout.donation_id == donation.id,
        )
    )
    if existing.scalar_one_or_none():
        return None

    payout = CommissionPayout(
        chainer_id=chainer.id,
        campaign_id=donation.campaign_id,
        donation_id=donation.id,
        amount=amount,
        currency=donation.currency,
        destination=chainer.commission_destination,
        status=CommissionPayoutStatus.PENDING,
        notes=notes,
    )
    db.add(payout)
    await db.flush()
    return payout


async def distribute_commissions(
    db: AsyncSession,
    donation: Donation,
    campaign: Campaign,
) -> List[Notification]:
    """Apply every commission grant a completed donation produces"""
    referring = None
    if donation.chainer_id:
        referring = await get_chainer(db, donation.chainer_id)
        if referring is None:
            logger.warning(
                "Referring chainer not found, skipping direct commission",
                donation_id=donation.id,
                chainer_id=donation.chainer_id
            )
        elif referring.status != ChainerStatus.ACTIVE:
            logger.info(
                "Referring chainer not active, skipping direct commission",
                donation_id=donation.id,
                chainer_id=referring.id,
                chainer_status=referring.status.value
            )

    donor_chainer = await find_donor_chainer(db, donation.donor_id, campaign.id)
    grants = plan_commissions(donation, campaign, referring, donor_chainer)

    notifications: List[Notification] = []
    for grant in grants:
        chainer = referring if referring is not None and grant.chainer_id == referring.id else donor_chainer
        notification = await _apply_grant(db, chainer, donation, grant)
        if notification:
            notifications.append(notification)
    return notifications


async def _apply_grant(
    db: AsyncSession,
    chainer: Chainer,
    donation: Donation,
    grant: CommissionGrant,
) -> Optional[Notification]:
    payout = await create_pending_commission_payout(db, chainer, donation, grant.amount, grant.notes)
    if payout is None:
        logger.info(
            "Commission already granted",
            donation_id=donation.id,
            chainer_id=chainer.id,
            duplicate=True
        )
        return None

    updated = await apply_donation_to_chainer(
        db, chainer.id, donation.amount, grant.amount, count_referral=grant.counts_referral
    )
    commission_grants_total.labels(kind=grant.kind.value).inc()
    logger.info(
        "Commission granted",
        donation_id=donation.id,
        chainer_id=chainer.id,
        kind=grant.kind.value,
        amount=str(grant.amount),
        commission_earned=str(updated.commission_earned) if updated else None
    )
    return ("commission_earned", {
        "user_id": chainer.user_id,
        "chainer_id": chainer.id,
        "campaign_id": donation.campaign_id,
        "donation_id": donation.id,
        "commission_payout_id": payout.id,
        "amount": str(grant.amount),
        "currency": donation.currency,
        "kind": grant.kind.value,
    })


async def mark_commission_paid(db: AsyncSession, chainer_id: str):
    await db.execute(
        update(Chainer)
        .where(Chainer.id == chainer_id)
        .values(commission_paid=True)
        .execution_options(synchronize_session=False)
    )


async def set_bank_details(db: AsyncSession, chainer_id: str, bank_details: dict):
    await db.execute(
        update(Chainer)
        .where(Chainer.id == chainer_id)
        .values(bank_details=bank_details)
        .execution_options(synchronize_session=False)
    )


def generate_referral_code(user_id: str) -> str:
    return f"{user_id.replace('-', '')[:6]}-{secrets.token_urlsafe(6)}".lower()


async def join_campaign(
    db: AsyncSession,
    user_id: str,
    campaign_id: str,
    destination: CommissionDestination = CommissionDestination.KEEP,
    now: Optional[datetime] = None,
) -> Chainer:
    """Create the user's referral link on a campaign that still accepts chains"""
    campaign = await db.get(Campaign, campaign_id)
    if campaign is None:
        raise NotFoundError(f"Campaign {campaign_id} not found")
    lifecycle.ensure_accepts_chains(campaign, now)

    if await find_donor_chainer(db, user_id, campaign_id) is not None:
        raise AlreadyChainedError("User already chains this campaign", detail={"campaign_id": campaign_id})

    chainer = Chainer(
        user_id=user_id,
        campaign_id=campaign_id,
        referral_code=generate_referral_code(user_id),
        total_raised=Decimal("0"),
        total_referrals=0,
        commission_earned=Decimal("0"),
        commission_destination=destination,
        status=ChainerStatus.ACTIVE,
    )
    db.add(chainer)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise AlreadyChainedError("User already chains this campaign", detail={"campaign_id": campaign_id})
    await db.refresh(chainer)

    logger.info("Campaign chained", chainer_id=chainer.id, campaign_id=campaign_id, user_id=user_id)
    return chainer


async def find_by_referral(
    db: AsyncSession,
    campaign_id: str,
    chainer_id: Optional[str] = None,
    referral_code: Optional[str] = None,
) -> Optional[Chainer]:
    """Resolve a referral link to its chainer on this campaign"""
    if chainer_id:
        condition = Chainer.id == chainer_id
    elif referral_code:
        condition = Chainer.referral_code == referral_code
    else:
        return None
    result = await db.execute(select(Chainer).where(condition, Chainer.campaign_id == campaign_id))
    return result.scalar_one_or_none()


async def commission_stats(db: AsyncSession, user_id: str) -> dict:
    """Commission totals across every campaign the user chains"""
    chainer_ids = select(Chainer.id).where(Chainer.user_id == user_id)
    rows = await db.execute(
        select(
            CommissionPayout.status,
            func.count(CommissionPayout.id),
            func.coalesce(func.sum(CommissionPayout.amount), 0),
        )
        .where(CommissionPayout.chainer_id.in_(chainer_ids))
        .group_by(CommissionPayout.status)
    )

    by_status = {status.value: {"count": 0, "amount": Decimal("0")} for status in CommissionPayoutStatus}
    for status, count, amount in rows.all():
        by_status[status.value] = {"count": count, "amount": Decimal(str(amount))}

    totals = await db.execute(
        select(
            func.coalesce(func.sum(Chainer.commission_earned), 0),
            func.coalesce(func.sum(Chainer.total_raised), 0),
            func.coalesce(func.sum(Chainer.total_referrals), 0),
            func.count(Chainer.id),
        ).where(Chainer.user_id == user_id)
    )
    earned, raised, referrals, campaigns = totals.one()

    return {
        "user_id": user_id,
        "campaigns_chained": campaigns,
        "total_raised": Decimal(str(raised)),
        "total_referrals": int(referrals),
        "commission_earned": Decimal(str(earned)),
        "commission_pending": by_status["pending"]["amount"] + by_status["approved"]["amount"]
        + by_status["processing"]["amount"],
        "commission_paid": by_status["paid"]["amount"],
        "by_status": by_status,
    }
