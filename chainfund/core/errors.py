"""
Typed errors raised by the donation engine.

Every error carries a machine readable ``code`` and the HTTP status the API
layer answers with. Routers let these propagate; ``main.py`` renders them.
"""
from typing import Any, Optional


class ChainfundError(Exception):
    """Base class for engine errors"""
    code = "internal_error"
    status_code = 500

    def __init__(self, message: str, detail: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "detail": self.detail}


class SignatureVerificationError(ChainfundError):
    code = "invalid_signature"
    status_code = 401


class InvalidPayloadError(ChainfundError):
    code = "invalid_payload"
    status_code = 400


class ValidationError(ChainfundError):
    code = "validation_error"
    status_code = 422


class UnsupportedCurrencyError(ValidationError):
    code = "unsupported_currency"


class UnsupportedProviderError(ValidationError):
    code = "unsupported_provider"


class InsufficientFundsError(ValidationError):
    code = "insufficient_funds"


class BelowMinimumPayoutError(ValidationError):
    code = "below_minimum_payout"


class CampaignNotAcceptingError(ValidationError):
    """Campaign is not in a state that accepts donations or chain joins"""
    code = "campaign_not_accepting"

    def __init__(self, reason: str, message: str):
        super().__init__(message, detail={"reason": reason})
        self.reason = reason


class NotRetryableError(ValidationError):
    code = "not_retryable"


class NotFoundError(ChainfundError):
    code = "not_found"
    status_code = 404


class ForbiddenError(ChainfundError):
    code = "forbidden"
    status_code = 403


class PayoutConflictError(ChainfundError):
    code = "payout_conflict"
    status_code = 409


class InvalidTransitionError(ChainfundError):
    code = "invalid_transition"
    status_code = 409


class RateLimitExceededError(ChainfundError):
    code = "rate_limited"
    status_code = 429


class ProviderError(ChainfundError):
    """Payment provider call failed"""
    code = "provider_error"
    status_code = 502

    def __init__(self, message: str, transient: bool = False, detail: Optional[Any] = None):
        super().__init__(message, detail=detail)
        self.transient = transient


class AlreadyChainedError(ChainfundError):
    code = "already_chained"
    status_code = 409


class EventInFlightError(ChainfundError):
    """Another handler is applying the same provider event; the provider should redeliver"""
    code = "event_in_flight"
    status_code = 409
