"""
Donation status classification.

Pure functions deciding whether a donation is still pending, can be retried,
or has failed for good. Used by the webhook reconciler, the retry endpoint
and the housekeeping sweeps.
"""
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from chainfund.core.clock import utcnow
from chainfund.models.donation import Donation, DonationStatus, FailureReason

PENDING_MAX_AGE = timedelta(days=7)
RETRY_COOLDOWN = timedelta(hours=24)
MAX_RETRY_ATTEMPTS = 3

STRIPE_PENDING_STATES = {
    "requires_payment_method",
    "requires_confirmation",
    "requires_action",
    "processing",
}
STRIPE_FAILED_STATES = {"canceled", "payment_failed"}
PAYSTACK_PENDING_STATES = {"pending", "ongoing"}
PAYSTACK_FAILED_STATES = {"failed", "abandoned", "reversed"}

RETRYABLE_REASONS = {
    FailureReason.CARD_DECLINED,
    FailureReason.INSUFFICIENT_FUNDS,
    FailureReason.TIMEOUT,
    FailureReason.BANK_ERROR,
    FailureReason.TECHNICAL_ERROR,
}


class DonationClass(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    REFUNDED = "refunded"
    CANCELED = "canceled"
    RETRYABLE_FAILED = "retryable_failed"
    TERMINAL_FAILED = "terminal_failed"


def _age(donation: Donation, now: datetime) -> timedelta:
    return now - donation.created_at


def attempts_exhausted(donation: Donation) -> bool:
    return (donation.retry_attempts or 0) >= MAX_RETRY_ATTEMPTS


def is_pending(donation: Donation, now: Optional[datetime] = None) -> bool:
    """Pending and still inside the age and attempt limits"""
    now = now or utcnow()
    return (
        donation.payment_status == DonationStatus.PENDING
        and _age(donation, now) < PENDING_MAX_AGE
        and not attempts_exhausted(donation)
    )


def is_failed(donation: Donation, now: Optional[datetime] = None) -> bool:
    """Failed, or pending for so long (or so often) that it counts as failed"""
    now = now or utcnow()
    if donation.payment_status == DonationStatus.FAILED:
        return True
    if donation.payment_status == DonationStatus.PENDING:
        return _age(donation, now) >= PENDING_MAX_AGE or attempts_exhausted(donation)
    return False


def is_retry_eligible(donation: Donation, now: Optional[datetime] = None) -> bool:
    """
    A failed donation may be retried unless the attempt cap, the age limit
    or a non-retryable failure reason rules it out. Ignores the cooldown.
    """
    now = now or utcnow()
    if donation.payment_status != DonationStatus.FAILED:
        return False
    if attempts_exhausted(donation):
        return False
    if _age(donation, now) >= PENDING_MAX_AGE:
        return False
    if donation.failure_reason is None:
        return True
    return donation.failure_reason in RETRYABLE_REASONS


def _last_touched(donation: Donation) -> datetime:
    return donation.last_status_update or donation.created_at


def is_retryable(donation: Donation, now: Optional[datetime] = None) -> bool:
    """Retry-eligible and outside the cooldown window"""
    now = now or utcnow()
    if not is_retry_eligible(donation, now):
        return False
    return now - _last_touched(donation) >= RETRY_COOLDOWN


def next_retry_time(donation: Donation, now: Optional[datetime] = None) -> Optional[datetime]:
    if not is_retry_eligible(donation, now):
        return None
    return _last_touched(donation) + RETRY_COOLDOWN


def classify(donation: Donation, now: Optional[datetime] = None) -> DonationClass:
    now = now or utcnow()
    status = donation.payment_status
    if status == DonationStatus.COMPLETED:
        return DonationClass.COMPLETED
    if status == DonationStatus.REFUNDED:
        return DonationClass.REFUNDED
    if status == DonationStatus.CANCELED:
        return DonationClass.CANCELED
    if status == DonationStatus.PENDING:
        return DonationClass.PENDING if is_pending(donation, now) else DonationClass.TERMINAL_FAILED
    if is_retry_eligible(donation, now):
        return DonationClass.RETRYABLE_FAILED
    return DonationClass.TERMINAL_FAILED


def failure_reason_from_provider(
    provider: str,
    provider_status: str,
    provider_error: Optional[str] = None,
) -> FailureReason:
    """Map a provider outcome to a failure reason"""
    error = (provider_error or "").lower()
    provider_status = (provider_status or "").lower()

    if provider == "stripe":
        if provider_status == "payment_failed":
            if "card_declined" in error:
                return FailureReason.CARD_DECLINED
            if "insufficient_funds" in error:
                return FailureReason.INSUFFICIENT_FUNDS
            if "expired_card" in error:
                return FailureReason.EXPIRED_CARD
            if "fraud" in error:
                return FailureReason.FRAUD_DETECTED
            if "invalid" in error:
                return FailureReason.INVALID_DETAILS
        if provider_status == "canceled":
            return FailureReason.USER_CANCELLED

    if provider == "paystack":
        if provider_status == "failed":
            if "insufficient" in error:
                return FailureReason.INSUFFICIENT_FUNDS
            if "declined" in error:
                return FailureReason.CARD_DECLINED
            if "expired" in error:
                return FailureReason.EXPIRED_CARD
            if "fraud" in error:
                return FailureReason.FRAUD_DETECTED
        if provider_status == "reversed":
            return FailureReason.BANK_ERROR
        if provider_status == "abandoned":
            return FailureReason.USER_CANCELLED

    if "timeout" in error or "timed out" in error:
        return FailureReason.TIMEOUT
    if "currency" in error:
        return FailureReason.CURRENCY_ERROR
    if "restricted" in error:
        return FailureReason.ACCOUNT_RESTRICTED
    return FailureReason.TECHNICAL_ERROR


def status_message(donation: Donation, now: Optional[datetime] = None) -> str:
    """Human readable status for donors and creators"""
    now = now or utcnow()
    status = donation.payment_status
    if status == DonationStatus.COMPLETED:
        return "Payment completed successfully"
    if status == DonationStatus.REFUNDED:
        return "Payment refunded"
    if status == DonationStatus.CANCELED:
        return "Payment canceled"
    if is_pending(donation, now):
        if donation.retry_attempts:
            return f"Payment pending - attempt {donation.retry_attempts + 1} of {MAX_RETRY_ATTEMPTS}"
        return "Payment pending - awaiting confirmation"
    if is_failed(donation, now):
        if donation.failure_reason:
            return f"Payment failed - {donation.failure_reason.value.replace('_', ' ')}"
        return "Payment failed - please try again"
    return "Payment status unknown"
