from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from chainfund.core.currency import PayoutProvider
from chainfund.models.chainer import CommissionDestination
from chainfund.models.payout import CampaignPayoutStatus, CommissionPayoutStatus


class BankDetails(BaseModel):
    """Transfer destination; the provider-specific recipient is required"""
    account_name: Optional[str] = Field(None, description="Account holder name")
    account_number: Optional[str] = Field(None, description="Bank account number")
    bank_code: Optional[str] = Field(None, description="Bank or sort code")
    recipient_code: Optional[str] = Field(None, description="Paystack transfer recipient code")
    stripe_account_id: Optional[str] = Field(None, description="Stripe connected account id")


class PayoutRequest(BaseModel):
    """Request schema for a campaign withdrawal or a chainer's commission withdrawal"""
    campaign_id: Optional[str] = Field(None, alias="campaignId", min_length=1, description="Campaign to withdraw from")
    chainer_id: Optional[str] = Field(None, alias="chainerId", min_length=1, description="Chainer whose commission to withdraw")
    amount: Decimal = Field(..., gt=0, description="Amount requested, before fees")
    currency: str = Field(..., min_length=3, max_length=3, description="ISO currency code")
    payout_provider: PayoutProvider = Field(..., alias="payoutProvider", description="stripe or paystack")
    bank_details: BankDetails = Field(..., alias="bankDetails", description="Where to send the funds")

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "campaignId": "3f9b8a52-0c1e-4f4e-9d7a-2b6a1c0e5d11",
                "amount": "50000.00",
                "currency": "NGN",
                "payoutProvider": "paystack",
                "bankDetails": {
                    "account_name": "Ada Obi",
                    "account_number": "0123456789",
                    "bank_code": "058",
                    "recipient_code": "RCP_2x5j67tnnw1t98k"
                }
            }
        }
    )

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, value: str) -> str:
        return value.upper()

    @model_validator(mode="after")
    def one_owner(self) -> "PayoutRequest":
        if bool(self.campaign_id) == bool(self.chainer_id):
            raise ValueError("Provide exactly one of campaignId or chainerId")
        return self


class CampaignPayoutResponse(BaseModel):
    """Response schema for a campaign payout"""
    id: str
    user_id: str
    campaign_id: str
    requested_amount: Decimal
    gross_amount: Decimal
    fees: Decimal
    net_amount: Decimal
    currency: str
    status: CampaignPayoutStatus
    provider: PayoutProvider
    reference: str
    provider_transfer_id: Optional[str] = None
    failure_reason: Optional[str] = None
    retry_count: int = 0
    processed_at: Optional[datetime] = None
    created_at: datetime
    estimated_delivery: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class CommissionPayoutResponse(BaseModel):
    """Response schema for a commission payout"""
    id: str
    chainer_id: str
    campaign_id: str
    donation_id: str
    amount: Decimal
    currency: str
    destination: CommissionDestination
    status: CommissionPayoutStatus
    provider: Optional[PayoutProvider] = None
    reference: Optional[str] = None
    transaction_id: Optional[str] = None
    failure_reason: Optional[str] = None
    notes: Optional[str] = None
    processed_at: Optional[datetime] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class CommissionRejectRequest(BaseModel):
    reason: str = Field(..., min_length=1, description="Why the commission is rejected")


class CommissionStatsResponse(BaseModel):
    user_id: str
    campaigns_chained: int
    total_raised: Decimal
    total_referrals: int
    commission_earned: Decimal
    commission_pending: Decimal
    commission_paid: Decimal
    by_status: dict


class CommissionWithdrawalResponse(BaseModel):
    """Commission grants claimed by one withdrawal request, awaiting admin approval"""
    chainer_id: str
    campaign_id: str
    requested_amount: Decimal
    amount: Decimal = Field(..., description="Sum of the claimed grants; never more than requested")
    currency: str
    provider: PayoutProvider
    available_balance: Decimal = Field(..., description="Unclaimed commission left after this request")
    payouts: List[CommissionPayoutResponse]
    estimated_delivery: Optional[str] = None
