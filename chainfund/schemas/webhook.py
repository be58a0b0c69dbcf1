"""
Provider webhook payloads.

Each provider's events are parsed through an explicit union keyed on the
event type. Types outside the union are never partially matched; the
parsers return None for them and the event is acknowledged and ignored.
"""
import json
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class _ProviderModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


def _metadata_dict(value: Any) -> Dict[str, Any]:
    # Paystack sends "" or a JSON string when no metadata object was attached
    if isinstance(value, dict):
        return value
    if isinstance(value, str) and value.strip().startswith("{"):
        try:
            parsed = json.loads(value)
        except ValueError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


# ============================================================================
# STRIPE
# ============================================================================

class StripePaymentError(_ProviderModel):
    code: Optional[str] = None
    decline_code: Optional[str] = None
    message: Optional[str] = None


class StripePaymentIntent(_ProviderModel):
    id: str
    amount: int
    currency: str
    status: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    last_payment_error: Optional[StripePaymentError] = None

    normalize_metadata = field_validator("metadata", mode="before")(_metadata_dict)


class StripeCharge(_ProviderModel):
    id: str
    payment_intent: Optional[str] = None
    amount_refunded: int = 0
    currency: str
    metadata: Dict[str, Any] = Field(default_factory=dict)

    normalize_metadata = field_validator("metadata", mode="before")(_metadata_dict)


class StripeTransfer(_ProviderModel):
    id: str
    amount: int
    currency: str
    reversed: bool = False
    metadata: Dict[str, Any] = Field(default_factory=dict)

    normalize_metadata = field_validator("metadata", mode="before")(_metadata_dict)


class StripePaymentIntentData(_ProviderModel):
    object: StripePaymentIntent


class StripeChargeData(_ProviderModel):
    object: StripeCharge


class StripeTransferData(_ProviderModel):
    object: StripeTransfer


class StripePaymentIntentEvent(_ProviderModel):
    id: str
    type: Literal[
        "payment_intent.succeeded",
        "payment_intent.payment_failed",
        "payment_intent.canceled",
    ]
    data: StripePaymentIntentData


class StripeChargeRefundedEvent(_ProviderModel):
    id: str
    type: Literal["charge.refunded"]
    data: StripeChargeData


class StripeTransferEvent(_ProviderModel):
    id: str
    type: Literal[
        "transfer.created",
        "transfer.paid",
        "transfer.failed",
        "transfer.reversed",
    ]
    data: StripeTransferData


StripeEvent = Annotated[
    Union[StripePaymentIntentEvent, StripeChargeRefundedEvent, StripeTransferEvent],
    Field(discriminator="type"),
]

STRIPE_EVENT_TYPES = {
    "payment_intent.succeeded",
    "payment_intent.payment_failed",
    "payment_intent.canceled",
    "charge.refunded",
    "transfer.created",
    "transfer.paid",
    "transfer.failed",
    "transfer.reversed",
}


# ============================================================================
# PAYSTACK
# ============================================================================

class PaystackCharge(_ProviderModel):
    id: Optional[int] = None
    reference: str
    amount: int
    currency: str = "NGN"
    status: Optional[str] = None
    gateway_response: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    normalize_metadata = field_validator("metadata", mode="before")(_metadata_dict)


class PaystackRefundTransaction(_ProviderModel):
    reference: Optional[str] = None


class PaystackRefund(_ProviderModel):
    transaction_reference: Optional[str] = None
    transaction: Optional[PaystackRefundTransaction] = None
    amount: Optional[int] = None
    currency: str = "NGN"
    status: Optional[str] = None

    @property
    def reference(self) -> Optional[str]:
        if self.transaction_reference:
            return self.transaction_reference
        if self.transaction:
            return self.transaction.reference
        return None


class PaystackTransfer(_ProviderModel):
    transfer_code: Optional[str] = None
    reference: Optional[str] = None
    amount: int
    currency: str = "NGN"
    status: Optional[str] = None
    reason: Optional[str] = None
    failure_reason: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    normalize_metadata = field_validator("metadata", mode="before")(_metadata_dict)


class PaystackChargeEvent(_ProviderModel):
    event: Literal["charge.success", "charge.failed"]
    data: PaystackCharge


class PaystackRefundEvent(_ProviderModel):
    event: Literal["refund.processed"]
    data: PaystackRefund


class PaystackTransferEvent(_ProviderModel):
    event: Literal["transfer.success", "transfer.failed", "transfer.reversed"]
    data: PaystackTransfer


PaystackEvent = Annotated[
    Union[PaystackChargeEvent, PaystackRefundEvent, PaystackTransferEvent],
    Field(discriminator="event"),
]

PAYSTACK_EVENT_TYPES = {
    "charge.success",
    "charge.failed",
    "refund.processed",
    "transfer.success",
    "transfer.failed",
    "transfer.reversed",
}


# ============================================================================
# RESPONSES
# ============================================================================

class WebhookAckResponse(BaseModel):
    """Acknowledgement returned to the provider"""
    received: bool = True
    duplicate: bool = False
    event: Optional[str] = None

    model_config = ConfigDict(
        json_schema_extra={
            "example": {"received": True, "duplicate": False, "event": "payment_intent.succeeded"}
        }
    )
