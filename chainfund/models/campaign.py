import enum

from sqlalchemy import Boolean, Column, DateTime, Enum, Numeric, String

from chainfund.core.clock import utcnow
from chainfund.models.base import Base, generate_id


class CampaignStatus(str, enum.Enum):
    ACTIVE = "active"
    GOAL_REACHED = "goal_reached"
    EXPIRED = "expired"
    PAUSED = "paused"  # Set by admins only
    CLOSED = "closed"


class ClosureReason(str, enum.Enum):
    GOAL_REACHED = "goal_reached"
    EXPIRED = "expired"
    MANUAL = "manual"


class Campaign(Base):
    """Fundraising campaign with its running donation total"""
    __tablename__ = "campaigns"

    id = Column(String(36), primary_key=True, default=generate_id)
    creator_id = Column(String(36), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    goal_amount = Column(Numeric(14, 2), nullable=False)
    current_amount = Column(Numeric(14, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=False)
    chainer_commission_rate = Column(Numeric(5, 2), nullable=False, default=0)  # Percent
    is_chained = Column(Boolean, nullable=False, default=False)
    status = Column(Enum(CampaignStatus), nullable=False, default=CampaignStatus.ACTIVE, index=True)
    is_active = Column(Boolean, nullable=False, default=True)
    duration = Column(String(32), nullable=True)  # e.g. '2 weeks'; null means no expiry
    closure_reason = Column(Enum(ClosureReason), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    goal_reached_at = Column(DateTime, nullable=True)
    auto_close_at = Column(DateTime, nullable=True)
    closed_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return (
            f"<Campaign(id={self.id}, current_amount={self.current_amount}, "
            f"goal_amount={self.goal_amount}, status='{self.status.value if self.status else None}')>"
        )
