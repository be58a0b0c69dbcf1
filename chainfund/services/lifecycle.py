"""
Campaign lifecycle evaluator.

    active -> goal_reached -> closed
    active -> expired (-> closed, manually)
    active/paused -> closed (manually)
    active <-> paused (admin only)

Every transition is a single UPDATE guarded on the current status, so
concurrent evaluators agree on exactly one winner.
"""
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional, Tuple

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from chainfund.core.clock import utcnow
from chainfund.core.errors import CampaignNotAcceptingError, InvalidTransitionError, NotFoundError
from chainfund.kafka.producer import Notification
from chainfund.models.campaign import Campaign, CampaignStatus, ClosureReason

logger = structlog.get_logger(__name__)

GOAL_REACHED_WINDOW = timedelta(weeks=4)

_UNIT_DAYS = {"day": 1, "week": 7, "month": 30, "year": 365}
_DURATION_PATTERN = re.compile(r"^\s*(\d+)\s*(day|week|month|year)s?\s*$", re.IGNORECASE)


class Transition(str, Enum):
    GOAL_REACHED = "goal_reached"
    EXPIRED = "expired"
    CLOSED = "closed"


class UnavailableReason(str, Enum):
    GOAL_REACHED = "goal_reached"
    EXPIRED = "expired"
    CLOSED = "closed"
    PAUSED = "paused"
    NOT_ACTIVE = "not_active"


@dataclass(frozen=True)
class CampaignAvailability:
    can_accept_donations: bool
    can_accept_chains: bool
    reason: Optional[UnavailableReason] = None
    message: Optional[str] = None


def parse_duration_days(duration: Optional[str]) -> Optional[int]:
    """'2 weeks' -> 14; None for no expiry or anything unrecognised"""
    if not duration:
        return None
    match = _DURATION_PATTERN.match(duration)
    if not match:
        return None
    count = int(match.group(1))
    if count <= 0:
        return None
    return count * _UNIT_DAYS[match.group(2).lower()]


def expires_at(campaign: Campaign) -> Optional[datetime]:
    days = parse_duration_days(campaign.duration)
    if days is None or campaign.created_at is None:
        return None
    return campaign.created_at + timedelta(days=days)


def duration_elapsed(campaign: Campaign, now: datetime) -> bool:
    """True from the exact instant the duration has elapsed"""
    deadline = expires_at(campaign)
    return deadline is not None and now >= deadline


def goal_met(campaign: Campaign) -> bool:
    return campaign.goal_amount is not None and campaign.current_amount >= campaign.goal_amount


def time_remaining(campaign: Campaign, now: Optional[datetime] = None) -> Optional[timedelta]:
    deadline = expires_at(campaign)
    if deadline is None:
        return None
    return max(deadline - (now or utcnow()), timedelta(0))


def availability(campaign: Campaign, now: Optional[datetime] = None) -> CampaignAvailability:
    """Whether a campaign accepts new donations and chain joins right now"""
    now = now or utcnow()
    status = campaign.status

    if status == CampaignStatus.CLOSED:
        return CampaignAvailability(False, False, UnavailableReason.CLOSED, "Campaign is closed")
    if status == CampaignStatus.EXPIRED:
        return CampaignAvailability(False, False, UnavailableReason.EXPIRED, "Campaign has expired")
    if status == CampaignStatus.PAUSED:
        return CampaignAvailability(False, False, UnavailableReason.PAUSED, "Campaign is paused")
    if status == CampaignStatus.GOAL_REACHED:
        message = "Campaign reached its goal"
        if campaign.auto_close_at:
            days = max((campaign.auto_close_at - now).days, 0)
            message = f"Campaign reached its goal and will close in {days} days"
        return CampaignAvailability(False, False, UnavailableReason.GOAL_REACHED, message)
    if status != CampaignStatus.ACTIVE or not campaign.is_active:
        return CampaignAvailability(False, False, UnavailableReason.NOT_ACTIVE, "Campaign is not active")
    if campaign.auto_close_at and now > campaign.auto_close_at:
        return CampaignAvailability(False, False, UnavailableReason.CLOSED, "Campaign auto-close date has passed")
    if goal_met(campaign):
        return CampaignAvailability(False, False, UnavailableReason.GOAL_REACHED, "Campaign reached its goal")
    if duration_elapsed(campaign, now):
        return CampaignAvailability(False, False, UnavailableReason.EXPIRED, "Campaign has expired")

    return CampaignAvailability(True, bool(campaign.is_chained))


def ensure_accepts_donations(campaign: Campaign, now: Optional[datetime] = None):
    result = availability(campaign, now)
    if not result.can_accept_donations:
        raise CampaignNotAcceptingError(result.reason.value, result.message)


def ensure_accepts_chains(campaign: Campaign, now: Optional[datetime] = None):
    result = availability(campaign, now)
    if not result.can_accept_donations:
        raise CampaignNotAcceptingError(result.reason.value, result.message)
    if not result.can_accept_chains:
        raise CampaignNotAcceptingError(UnavailableReason.NOT_ACTIVE.value, "Campaign is not chained")


def _notification(transition: Transition, campaign: Campaign) -> Notification:
    return (f"campaign_{transition.value}", {
        "campaign_id": campaign.id,
        "user_id": campaign.creator_id,
        "title": campaign.title,
        "current_amount": str(campaign.current_amount),
        "goal_amount": str(campaign.goal_amount),
        "currency": campaign.currency,
    })


async def _guarded_update(
    db: AsyncSession,
    campaign_id: str,
    allowed_from: Tuple[CampaignStatus, ...],
    **values,
) -> bool:
    result = await db.execute(
        update(Campaign)
        .where(Campaign.id == campaign_id, Campaign.status.in_(allowed_from))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def _reload(db: AsyncSession, campaign_id: str) -> Campaign:
    return await db.get(Campaign, campaign_id, populate_existing=True)


async def evaluate(
    db: AsyncSession,
    campaign: Campaign,
    now: Optional[datetime] = None,
) -> Tuple[Campaign, Optional[Transition]]:
    """
    Apply at most one automatic transition. Idempotent: re-running on a
    campaign already in goal_reached leaves goal_reached_at untouched.
    """
    now = now or utcnow()

    if campaign.status == CampaignStatus.ACTIVE and goal_met(campaign):
        if await _guarded_update(
            db, campaign.id, (CampaignStatus.ACTIVE,),
            status=CampaignStatus.GOAL_REACHED,
            goal_reached_at=now,
            auto_close_at=now + GOAL_REACHED_WINDOW,
        ):
            campaign = await _reload(db, campaign.id)
            logger.info(
                "Campaign reached goal",
                campaign_id=campaign.id,
                current_amount=str(campaign.current_amount),
                goal_amount=str(campaign.goal_amount),
                auto_close_at=campaign.auto_close_at.isoformat()
            )
            return campaign, Transition.GOAL_REACHED
        return await _reload(db, campaign.id), None

    if campaign.status == CampaignStatus.ACTIVE and duration_elapsed(campaign, now):
        if await _guarded_update(db, campaign.id, (CampaignStatus.ACTIVE,), status=CampaignStatus.EXPIRED):
            campaign = await _reload(db, campaign.id)
            logger.info("Campaign expired", campaign_id=campaign.id, duration=campaign.duration)
            return campaign, Transition.EXPIRED
        return await _reload(db, campaign.id), None

    if (
        campaign.status == CampaignStatus.GOAL_REACHED
        and campaign.auto_close_at is not None
        and now > campaign.auto_close_at
    ):
        if await _close(db, campaign.id, ClosureReason.GOAL_REACHED, now):
            logger.info("Campaign auto-closed after goal window", campaign_id=campaign.id)
            return await _reload(db, campaign.id), Transition.CLOSED
        return await _reload(db, campaign.id), None

    return campaign, None


async def evaluate_by_id(
    db: AsyncSession,
    campaign_id: str,
    now: Optional[datetime] = None,
) -> Tuple[Optional[Campaign], List[Notification]]:
    campaign = await _reload(db, campaign_id)
    if campaign is None:
        return None, []
    campaign, transition = await evaluate(db, campaign, now)
    return campaign, [_notification(transition, campaign)] if transition else []


async def _close(db: AsyncSession, campaign_id: str, reason: ClosureReason, now: datetime) -> bool:
    return await _guarded_update(
        db, campaign_id,
        tuple(status for status in CampaignStatus if status != CampaignStatus.CLOSED),
        status=CampaignStatus.CLOSED,
        is_active=False,
        closed_at=now,
        closure_reason=reason,
    )


async def close_campaign(
    db: AsyncSession,
    campaign_id: str,
    reason: ClosureReason = ClosureReason.MANUAL,
    now: Optional[datetime] = None,
) -> Tuple[Campaign, bool]:
    """Close from any state but closed; closing a closed campaign is a no-op"""
    closed = await _close(db, campaign_id, reason, now or utcnow())
    campaign = await _reload(db, campaign_id)
    if campaign is None:
        raise NotFoundError(f"Campaign {campaign_id} not found")
    if closed:
        logger.info("Campaign closed", campaign_id=campaign_id, reason=reason.value)
    else:
        logger.info("Campaign already closed", campaign_id=campaign_id, duplicate=True)
    return campaign, closed


async def pause_campaign(db: AsyncSession, campaign_id: str) -> Campaign:
    if not await _guarded_update(db, campaign_id, (CampaignStatus.ACTIVE,), status=CampaignStatus.PAUSED):
        campaign = await _reload(db, campaign_id)
        if campaign is None:
            raise NotFoundError(f"Campaign {campaign_id} not found")
        if campaign.status != CampaignStatus.PAUSED:
            raise InvalidTransitionError(f"Cannot pause a {campaign.status.value} campaign")
    logger.info("Campaign paused", campaign_id=campaign_id)
    return await _reload(db, campaign_id)


async def resume_campaign(db: AsyncSession, campaign_id: str) -> Campaign:
    if not await _guarded_update(db, campaign_id, (CampaignStatus.PAUSED,), status=CampaignStatus.ACTIVE):
        campaign = await _reload(db, campaign_id)
        if campaign is None:
            raise NotFoundError(f"Campaign {campaign_id} not found")
        if campaign.status != CampaignStatus.ACTIVE:
            raise InvalidTransitionError(f"Cannot resume a {campaign.status.value} campaign")
    logger.info("Campaign resumed", campaign_id=campaign_id)
    return await _reload(db, campaign_id)


async def run_campaign_sweep(db: AsyncSession, now: Optional[datetime] = None) -> Tuple[Dict[str, int], List[Notification]]:
    """
    Periodic safety net: close goal-reached campaigns past their window,
    expire campaigns past their duration and catch goal crossings that a
    crash kept the ledger from evaluating.
    """
    now = now or utcnow()
    counts = {"closed": 0, "expired": 0, "goal_reached": 0}
    notifications: List[Notification] = []

    result = await db.execute(
        select(Campaign.id).where(
            (Campaign.status == CampaignStatus.ACTIVE)
            | (
                (Campaign.status == CampaignStatus.GOAL_REACHED)
                & (Campaign.auto_close_at < now)
            )
        )
    )
    for campaign_id in result.scalars().all():
        campaign, campaign_notifications = await evaluate_by_id(db, campaign_id, now)
        for event_type, payload in campaign_notifications:
            counts[event_type.replace("campaign_", "")] += 1
            notifications.append((event_type, payload))
        await db.commit()

    logger.info("Campaign sweep finished", **counts)
    return counts, notifications


async def campaign_closure_stats(db: AsyncSession) -> Dict[str, int]:
    rows = await db.execute(select(Campaign.status, func.count(Campaign.id)).group_by(Campaign.status))
    stats = {status.value: 0 for status in CampaignStatus}
    for status, count in rows.all():
        stats[status.value] = count
    return stats


def closed_notification(campaign: Campaign) -> Notification:
    return _notification(Transition.CLOSED, campaign)
