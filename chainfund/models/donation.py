import enum

from sqlalchemy import Column, DateTime, Enum, Integer, Numeric, String

from chainfund.core.clock import utcnow
from chainfund.models.base import Base, generate_id


class DonationStatus(str, enum.Enum):
    """Donation payment status"""
    PENDING = "pending"  # Payment intent created, waiting for the provider
    COMPLETED = "completed"  # Provider confirmed the charge
    FAILED = "failed"  # Charge failed, may be retried
    REFUNDED = "refunded"  # Charge refunded after completion
    CANCELED = "canceled"  # Payment intent canceled


class FailureReason(str, enum.Enum):
    CARD_DECLINED = "card_declined"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    EXPIRED_CARD = "expired_card"
    INVALID_DETAILS = "invalid_details"
    FRAUD_DETECTED = "fraud_detected"
    TIMEOUT = "timeout"
    BANK_ERROR = "bank_error"
    CURRENCY_ERROR = "currency_error"
    ACCOUNT_RESTRICTED = "account_restricted"
    MAX_RETRIES = "max_retries"
    USER_CANCELLED = "user_cancelled"
    TECHNICAL_ERROR = "technical_error"


class Donation(Base):
    """One donor-to-campaign payment attempt"""
    __tablename__ = "donations"

    id = Column(String(36), primary_key=True, default=generate_id)
    campaign_id = Column(String(36), nullable=False, index=True)
    donor_id = Column(String(36), nullable=True, index=True)  # Null for guest donations
    chainer_id = Column(String(36), nullable=True, index=True)  # Referring chainer, if any
    amount = Column(Numeric(14, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    payment_status = Column(Enum(DonationStatus), nullable=False, default=DonationStatus.PENDING)
    payment_method = Column(String(32), nullable=True)  # e.g. 'stripe', 'paystack'
    payment_provider_reference = Column(String(255), nullable=True, unique=True, index=True)
    retry_attempts = Column(Integer, nullable=False, default=0)
    failure_reason = Column(Enum(FailureReason), nullable=True)
    last_status_update = Column(DateTime, nullable=True)
    processed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return (
            f"<Donation(id={self.id}, campaign_id={self.campaign_id}, amount={self.amount}, "
            f"status='{self.payment_status.value if self.payment_status else None}')>"
        )
