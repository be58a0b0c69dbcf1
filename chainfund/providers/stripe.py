"""
Stripe adapter: webhook signatures, event parsing and transfers
"""
import hashlib
import hmac
import json
import time
from typing import Dict, List, Optional, Tuple

import structlog
from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from chainfund.core.config import get_settings
from chainfund.core.currency import from_minor_units, to_minor_units
from chainfund.core.errors import InvalidPayloadError, ProviderError, SignatureVerificationError
from chainfund.providers.base import (
    EventKind, PaymentProvider, ProviderEvent, TransferRequest, TransferResult
)
from chainfund.schemas.webhook import (
    STRIPE_EVENT_TYPES,
    StripeChargeRefundedEvent,
    StripeEvent,
    StripePaymentIntentEvent,
    StripeTransferEvent,
)

logger = structlog.get_logger(__name__)
settings = get_settings()

_event_adapter = TypeAdapter(StripeEvent)

_PAYMENT_INTENT_KINDS = {
    "payment_intent.succeeded": EventKind.PAYMENT_SUCCEEDED,
    "payment_intent.payment_failed": EventKind.PAYMENT_FAILED,
    "payment_intent.canceled": EventKind.PAYMENT_CANCELED,
}

_TRANSFER_KINDS = {
    "transfer.paid": EventKind.TRANSFER_SUCCEEDED,
    "transfer.failed": EventKind.TRANSFER_FAILED,
    "transfer.reversed": EventKind.TRANSFER_REVERSED,
}

_PAYMENT_INTENT_STATUSES = {
    "payment_intent.payment_failed": "payment_failed",
    "payment_intent.canceled": "canceled",
}

_TRANSFER_STATUSES = {
    EventKind.TRANSFER_SUCCEEDED: "paid",
    EventKind.TRANSFER_FAILED: "failed",
    EventKind.TRANSFER_REVERSED: "reversed",
}

_TRANSFER_ERRORS = {
    EventKind.TRANSFER_FAILED: "Transfer failed",
    EventKind.TRANSFER_REVERSED: "Transfer reversed",
}


def parse_signature_header(header: str) -> Tuple[Optional[int], List[str]]:
    """Split 't=...,v1=...,v1=...' into the timestamp and v1 signatures"""
    timestamp = None
    signatures = []
    for item in header.split(","):
        key, _, value = item.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                return None, []
        elif key == "v1" and value:
            signatures.append(value)
    return timestamp, signatures


def compute_signature(secret: str, timestamp: int, raw_body: bytes) -> str:
    signed_payload = f"{timestamp}.".encode("utf-8") + raw_body
    return hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()


class StripeProvider(PaymentProvider):
    name = "stripe"
    signature_header = "stripe-signature"

    def __init__(self, webhook_secret: Optional[str] = None, api_key: Optional[str] = None):
        super().__init__()
        self.webhook_secret = webhook_secret if webhook_secret is not None else settings.stripe_webhook_secret
        self.api_key = api_key if api_key is not None else settings.stripe_secret_key
        self.api_base = settings.stripe_api_base.rstrip("/")
        self.tolerance = settings.stripe_signature_tolerance_seconds

    def verify_signature(self, raw_body: bytes, signature: Optional[str], now: Optional[float] = None):
        if not self.webhook_secret:
            logger.error("Stripe webhook secret not configured")
            raise SignatureVerificationError("Webhook secret not configured")
        if not signature:
            raise SignatureVerificationError("Missing Stripe-Signature header")

        timestamp, candidates = parse_signature_header(signature)
        if timestamp is None or not candidates:
            raise SignatureVerificationError("Malformed Stripe-Signature header")

        now = time.time() if now is None else now
        if self.tolerance and abs(now - timestamp) > self.tolerance:
            raise SignatureVerificationError("Signature timestamp outside tolerance")

        expected = compute_signature(self.webhook_secret, timestamp, raw_body)
        if not any(hmac.compare_digest(expected, candidate) for candidate in candidates):
            raise SignatureVerificationError("Signature mismatch")

    def parse_event(self, raw_body: bytes) -> Optional[ProviderEvent]:
        try:
            payload = json.loads(raw_body)
        except ValueError as e:
            raise InvalidPayloadError(f"Invalid JSON body: {e}")
        if not isinstance(payload, dict):
            raise InvalidPayloadError("Event body must be an object")

        event_type = payload.get("type")
        if event_type not in STRIPE_EVENT_TYPES:
            logger.info("Ignoring unhandled Stripe event", event_type=event_type)
            return None

        try:
            event = _event_adapter.validate_python(payload)
        except PydanticValidationError as e:
            raise InvalidPayloadError(f"Malformed {event_type} event", detail=e.errors(include_url=False))

        if isinstance(event, StripePaymentIntentEvent):
            intent = event.data.object
            error = intent.last_payment_error
            error_message = None
            if error:
                error_message = " ".join(filter(None, [error.code, error.decline_code, error.message]))
            return ProviderEvent(
                provider=self.name,
                event_type=event.type,
                kind=_PAYMENT_INTENT_KINDS[event.type],
                reference=intent.id,
                amount=from_minor_units(intent.amount, intent.currency),
                currency=intent.currency.upper(),
                provider_status=_PAYMENT_INTENT_STATUSES.get(event.type, intent.status),
                error_message=error_message,
                donation_id=intent.metadata.get("donationId"),
                metadata=intent.metadata,
            )

        if isinstance(event, StripeChargeRefundedEvent):
            charge = event.data.object
            return ProviderEvent(
                provider=self.name,
                event_type=event.type,
                kind=EventKind.REFUNDED,
                reference=charge.payment_intent or charge.id,
                amount=from_minor_units(charge.amount_refunded, charge.currency),
                currency=charge.currency.upper(),
                provider_status="refunded",
                donation_id=charge.metadata.get("donationId"),
                metadata=charge.metadata,
            )

        if isinstance(event, StripeTransferEvent):
            transfer = event.data.object
            if event.type == "transfer.created":
                kind = EventKind.TRANSFER_REVERSED if transfer.reversed else EventKind.TRANSFER_SUCCEEDED
            else:
                kind = _TRANSFER_KINDS[event.type]
            return ProviderEvent(
                provider=self.name,
                event_type=event.type,
                kind=kind,
                reference=transfer.id,
                amount=from_minor_units(transfer.amount, transfer.currency),
                currency=transfer.currency.upper(),
                provider_status=_TRANSFER_STATUSES[kind],
                error_message=_TRANSFER_ERRORS.get(kind),
                payout_id=transfer.metadata.get("payoutId"),
                payout_type=transfer.metadata.get("type"),
                payout_reference=transfer.metadata.get("reference"),
                metadata=transfer.metadata,
            )

        return None

    async def _send_transfer(self, request: TransferRequest) -> TransferResult:
        account = request.destination.get("stripe_account_id")
        if not account:
            raise ProviderError("Destination has no Stripe connected account", transient=False)

        data: Dict[str, str] = {
            "amount": str(to_minor_units(request.amount, request.currency)),
            "currency": request.currency.lower(),
            "destination": account,
            "description": request.reason,
        }
        for key, value in request.metadata.items():
            data[f"metadata[{key}]"] = str(value)

        body = await self._post(
            f"{self.api_base}/v1/transfers",
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Idempotency-Key": request.idempotency_key,
            },
            data=data,
        )
        transfer_id = body.get("id")
        if not transfer_id:
            raise ProviderError("Stripe transfer response missing id", transient=False, detail=body)

        status = "failed" if body.get("reversed") else "success"
        logger.info("Stripe transfer created", transfer_id=transfer_id, status=status)
        return TransferResult(
            transfer_id=transfer_id,
            status=status,
            failure_reason="Transfer reversed" if status == "failed" else None,
            raw=body,
        )
