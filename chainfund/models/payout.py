import enum

from sqlalchemy import (
    JSON, Column, DateTime, Enum, Index, Integer, Numeric, String, Text, UniqueConstraint
)

from chainfund.core.clock import utcnow
from chainfund.core.currency import PayoutProvider
from chainfund.models.base import Base, generate_id
from chainfund.models.chainer import CommissionDestination


class CommissionPayoutStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    PROCESSING = "processing"
    PAID = "paid"
    REJECTED = "rejected"
    FAILED = "failed"


class CampaignPayoutStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class CommissionPayout(Base):
    """Commission owed to one chainer for one donation"""
    __tablename__ = "commission_payouts"
    __table_args__ = (
        UniqueConstraint("chainer_id", "donation_id", name="uq_commission_chainer_donation"),
    )

    id = Column(String(36), primary_key=True, default=generate_id)
    chainer_id = Column(String(36), nullable=False, index=True)
    campaign_id = Column(String(36), nullable=False, index=True)
    donation_id = Column(String(36), nullable=False, index=True)
    amount = Column(Numeric(14, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    destination = Column(Enum(CommissionDestination), nullable=False, default=CommissionDestination.KEEP)
    status = Column(Enum(CommissionPayoutStatus), nullable=False, default=CommissionPayoutStatus.PENDING)
    provider = Column(Enum(PayoutProvider), nullable=True)
    reference = Column(String(64), nullable=True, unique=True)
    transaction_id = Column(String(255), nullable=True, index=True)  # Provider transfer id
    failure_reason = Column(String(255), nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    notes = Column(Text, nullable=True)
    processed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return (
            f"<CommissionPayout(id={self.id}, chainer_id={self.chainer_id}, "
            f"donation_id={self.donation_id}, amount={self.amount}, status='{self.status.value}')>"
        )


class CampaignPayout(Base):
    """A creator's withdrawal of raised funds"""
    __tablename__ = "campaign_payouts"

    id = Column(String(36), primary_key=True, default=generate_id)
    user_id = Column(String(36), nullable=False, index=True)
    campaign_id = Column(String(36), nullable=False, index=True)
    requested_amount = Column(Numeric(14, 2), nullable=False)
    gross_amount = Column(Numeric(14, 2), nullable=False)
    fees = Column(Numeric(14, 2), nullable=False)
    net_amount = Column(Numeric(14, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(Enum(CampaignPayoutStatus), nullable=False, default=CampaignPayoutStatus.PENDING)
    provider = Column(Enum(PayoutProvider), nullable=False)
    reference = Column(String(64), nullable=False, unique=True)
    bank_details = Column(JSON, nullable=True)  # Snapshot at request time
    provider_transfer_id = Column(String(255), nullable=True, index=True)
    failure_reason = Column(String(255), nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    notes = Column(Text, nullable=True)
    processed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return (
            f"<CampaignPayout(id={self.id}, campaign_id={self.campaign_id}, "
            f"net_amount={self.net_amount}, reference='{self.reference}', status='{self.status.value}')>"
        )


OPEN_CAMPAIGN_PAYOUT_STATUSES = (
    CampaignPayoutStatus.PENDING,
    CampaignPayoutStatus.APPROVED,
    CampaignPayoutStatus.PROCESSING,
)

# At most one open payout per campaign
Index(
    "uq_campaign_payout_open",
    CampaignPayout.campaign_id,
    unique=True,
    postgresql_where=CampaignPayout.status.in_(OPEN_CAMPAIGN_PAYOUT_STATUSES),
    sqlite_where=CampaignPayout.status.in_(OPEN_CAMPAIGN_PAYOUT_STATUSES),
)
