from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from chainfund.models.donation import DonationStatus


class DonationStatusResponse(BaseModel):
    """Donation status as shown to donors"""
    id: str
    campaign_id: str
    amount: Decimal
    currency: str
    status: DonationStatus
    classification: str = Field(..., description="pending, completed, refunded, canceled, retryable_failed or terminal_failed")
    message: str = Field(..., description="Human readable status")
    retryable: bool
    next_retry_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "id": "c0a8012e-7f3d-4b7a-9a51-6e2f0d9b1a44",
                "campaign_id": "3f9b8a52-0c1e-4f4e-9d7a-2b6a1c0e5d11",
                "amount": "10000.00",
                "currency": "NGN",
                "status": "failed",
                "classification": "retryable_failed",
                "message": "Payment failed - card declined",
                "retryable": False,
                "next_retry_at": "2025-06-02T10:00:00"
            }
        }
    )


class AdminDonationStatusResponse(DonationStatusResponse):
    """Donation status with the raw failure details admins see"""
    failure_reason: Optional[str] = None
    retry_attempts: int = 0
    payment_provider_reference: Optional[str] = None
    last_status_update: Optional[datetime] = None


class DonationCreateRequest(BaseModel):
    """Start a donation; the provider webhook completes it"""
    campaign_id: str = Field(..., alias="campaignId", min_length=1)
    amount: Decimal = Field(..., gt=0, description="Amount in the campaign's currency")
    currency: str = Field(..., min_length=3, max_length=3)
    payment_method: str = Field(..., alias="paymentMethod", pattern="^(stripe|paystack)$")
    chainer_id: Optional[str] = Field(None, alias="chainerId", description="Referring chainer")
    referral_code: Optional[str] = Field(None, alias="referralCode", description="Referral link code")

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "campaignId": "3f9b8a52-0c1e-4f4e-9d7a-2b6a1c0e5d11",
                "amount": "10000.00",
                "currency": "NGN",
                "paymentMethod": "paystack",
                "referralCode": "usrc01-k2j9x8"
            }
        }
    )

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, value: str) -> str:
        return value.upper()
