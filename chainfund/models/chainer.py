import enum

from sqlalchemy import (
    JSON, Boolean, Column, DateTime, Enum, Integer, Numeric, String, UniqueConstraint
)

from chainfund.core.clock import utcnow
from chainfund.models.base import Base, generate_id


class ChainerStatus(str, enum.Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    BANNED = "banned"


class CommissionDestination(str, enum.Enum):
    KEEP = "keep"
    DONATE = "donate"  # Donate the commission to another campaign


class Chainer(Base):
    """A user's referral link on one campaign and its earnings"""
    __tablename__ = "chainers"
    __table_args__ = (
        UniqueConstraint("user_id", "campaign_id", name="uq_chainer_user_campaign"),
    )

    id = Column(String(36), primary_key=True, default=generate_id)
    user_id = Column(String(36), nullable=False, index=True)
    campaign_id = Column(String(36), nullable=False, index=True)
    referral_code = Column(String(64), nullable=False, unique=True)
    total_raised = Column(Numeric(14, 2), nullable=False, default=0)
    total_referrals = Column(Integer, nullable=False, default=0)
    commission_earned = Column(Numeric(14, 2), nullable=False, default=0)
    commission_paid = Column(Boolean, nullable=False, default=False)
    commission_destination = Column(
        Enum(CommissionDestination), nullable=False, default=CommissionDestination.KEEP
    )
    status = Column(Enum(ChainerStatus), nullable=False, default=ChainerStatus.ACTIVE)
    bank_details = Column(JSON, nullable=True)  # Transfer destination for commission payouts
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return (
            f"<Chainer(id={self.id}, user_id={self.user_id}, campaign_id={self.campaign_id}, "
            f"total_raised={self.total_raised}, commission_earned={self.commission_earned})>"
        )
