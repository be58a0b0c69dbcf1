"""
Campaign ledger.

The only writer of Campaign.current_amount. Totals move through atomic
``current_amount = current_amount +/- amount`` updates, so concurrent
donations commute, and every mutation is followed by a lifecycle
evaluation in the same transaction.
"""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

import structlog
from sqlalchemy import case, update
from sqlalchemy.ext.asyncio import AsyncSession

from chainfund.kafka.producer import Notification
from chainfund.middleware.metrics import ledger_updates_total
from chainfund.models.campaign import Campaign
from chainfund.services import lifecycle

logger = structlog.get_logger(__name__)


@dataclass
class LedgerResult:
    campaign: Optional[Campaign]
    notifications: List[Notification] = field(default_factory=list)

    @property
    def current_amount(self) -> Optional[Decimal]:
        return self.campaign.current_amount if self.campaign is not None else None


async def _apply(
    db: AsyncSession,
    campaign_id: str,
    new_amount,
    kind: str,
    now: Optional[datetime],
) -> LedgerResult:
    result = await db.execute(
        update(Campaign)
        .where(Campaign.id == campaign_id)
        .values(current_amount=new_amount)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        logger.error("Ledger update for unknown campaign", campaign_id=campaign_id, kind=kind)
        return LedgerResult(campaign=None)

    ledger_updates_total.labels(kind=kind).inc()
    campaign, notifications = await lifecycle.evaluate_by_id(db, campaign_id, now)
    logger.info(
        "Campaign ledger updated",
        campaign_id=campaign_id,
        kind=kind,
        current_amount=str(campaign.current_amount),
        status=campaign.status.value
    )
    return LedgerResult(campaign=campaign, notifications=notifications)


async def apply_completed_donation(
    db: AsyncSession,
    campaign_id: str,
    amount: Decimal,
    now: Optional[datetime] = None,
) -> LedgerResult:
    return await _apply(db, campaign_id, Campaign.current_amount + amount, "donation", now)


async def apply_refund(
    db: AsyncSession,
    campaign_id: str,
    amount: Decimal,
    now: Optional[datetime] = None,
) -> LedgerResult:
    """Subtract a refunded donation, never going below zero"""
    clamped = case(
        (Campaign.current_amount < amount, 0),
        else_=Campaign.current_amount - amount,
    )
    return await _apply(db, campaign_id, clamped, "refund", now)
