"""
Commission calculation.

Pure functions: given a completed donation, its campaign and the chainers
involved, decide which commission grants the donation produces.
"""
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from chainfund.core.currency import quantize
from chainfund.models.campaign import Campaign
from chainfund.models.chainer import Chainer, ChainerStatus
from chainfund.models.donation import Donation


class GrantKind(str, Enum):
    DIRECT_REFERRAL = "direct_referral"
    SELF_REFERRAL = "self_referral"


@dataclass(frozen=True)
class CommissionGrant:
    chainer_id: str
    amount: Decimal
    kind: GrantKind
    counts_referral: bool
    notes: str


def compute_commission(donation_amount: Decimal, rate_percent: Decimal, currency: str = "USD") -> Decimal:
    """donation_amount * rate / 100, rounded half-up to the currency's minor unit"""
    rate = Decimal(str(rate_percent or 0))
    if rate <= 0:
        return quantize(Decimal(0), currency)
    return quantize(Decimal(str(donation_amount)) * rate / Decimal(100), currency)


def _eligible(chainer: Optional[Chainer], campaign: Campaign) -> bool:
    return (
        chainer is not None
        and chainer.campaign_id == campaign.id
        and chainer.status == ChainerStatus.ACTIVE
    )


def plan_commissions(
    donation: Donation,
    campaign: Campaign,
    referring_chainer: Optional[Chainer],
    donor_chainer: Optional[Chainer],
) -> List[CommissionGrant]:
    """
    Direct referral pays the chainer whose link brought the donation. When
    the donor also chains this campaign they earn the same commission on
    their own donation. Both grants may fire for one donation; a chainer
    is never granted twice for the same donation.
    """
    if not campaign.is_chained:
        return []

    amount = compute_commission(donation.amount, campaign.chainer_commission_rate, donation.currency)
    if amount <= 0:
        return []

    grants = []
    if _eligible(referring_chainer, campaign):
        grants.append(CommissionGrant(
            chainer_id=referring_chainer.id,
            amount=amount,
            kind=GrantKind.DIRECT_REFERRAL,
            counts_referral=True,
            notes=f"Commission from donation {donation.id} via direct referral",
        ))

    if _eligible(donor_chainer, campaign) and (
        referring_chainer is None or donor_chainer.id != referring_chainer.id
    ):
        grants.append(CommissionGrant(
            chainer_id=donor_chainer.id,
            amount=amount,
            kind=GrantKind.SELF_REFERRAL,
            counts_referral=False,
            notes=f"Self-referral commission from donation {donation.id} (donor chained this campaign)",
        ))

    return grants
