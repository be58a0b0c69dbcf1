"""
Paystack adapter: webhook signatures, event parsing and transfers
"""
import hashlib
import hmac
import json
from typing import Optional

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
    PAYSTACK_EVENT_TYPES,
    PaystackChargeEvent,
    PaystackEvent,
    PaystackRefundEvent,
    PaystackTransferEvent,
)

logger = structlog.get_logger(__name__)
settings = get_settings()

_event_adapter = TypeAdapter(PaystackEvent)

_TRANSFER_KINDS = {
    "transfer.success": EventKind.TRANSFER_SUCCEEDED,
    "transfer.failed": EventKind.TRANSFER_FAILED,
    "transfer.reversed": EventKind.TRANSFER_REVERSED,
}


def compute_signature(secret: str, raw_body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()


class PaystackProvider(PaymentProvider):
    name = "paystack"
    signature_header = "x-paystack-signature"

    def __init__(self, secret_key: Optional[str] = None):
        super().__init__()
        self.secret_key = secret_key if secret_key is not None else settings.paystack_secret_key
        self.api_base = settings.paystack_api_base.rstrip("/")

    def verify_signature(self, raw_body: bytes, signature: Optional[str]):
        if not self.secret_key:
            logger.error("Paystack secret key not configured")
            raise SignatureVerificationError("Webhook secret not configured")
        if not signature:
            raise SignatureVerificationError("Missing X-Paystack-Signature header")

        expected = compute_signature(self.secret_key, raw_body)
        if not hmac.compare_digest(expected, signature.strip().lower()):
            raise SignatureVerificationError("Signature mismatch")

    def parse_event(self, raw_body: bytes) -> Optional[ProviderEvent]:
        try:
            payload = json.loads(raw_body)
        except ValueError as e:
            raise InvalidPayloadError(f"Invalid JSON body: {e}")
        if not isinstance(payload, dict):
            raise InvalidPayloadError("Event body must be an object")

        event_type = payload.get("event")
        if event_type not in PAYSTACK_EVENT_TYPES:
            logger.info("Ignoring unhandled Paystack event", event_type=event_type)
            return None

        try:
            event = _event_adapter.validate_python(payload)
        except PydanticValidationError as e:
            raise InvalidPayloadError(f"Malformed {event_type} event", detail=e.errors(include_url=False))

        if isinstance(event, PaystackChargeEvent):
            charge = event.data
            succeeded = event.event == "charge.success"
            return ProviderEvent(
                provider=self.name,
                event_type=event.event,
                kind=EventKind.PAYMENT_SUCCEEDED if succeeded else EventKind.PAYMENT_FAILED,
                reference=charge.reference,
                amount=from_minor_units(charge.amount, charge.currency),
                currency=charge.currency.upper(),
                provider_status=charge.status or ("success" if succeeded else "failed"),
                error_message=None if succeeded else charge.gateway_response,
                donation_id=charge.metadata.get("donationId"),
                metadata=charge.metadata,
            )

        if isinstance(event, PaystackRefundEvent):
            refund = event.data
            if not refund.reference:
                raise InvalidPayloadError("Refund event has no transaction reference")
            return ProviderEvent(
                provider=self.name,
                event_type=event.event,
                kind=EventKind.REFUNDED,
                reference=refund.reference,
                amount=from_minor_units(refund.amount, refund.currency) if refund.amount is not None else None,
                currency=refund.currency.upper(),
                provider_status=refund.status or "processed",
            )

        if isinstance(event, PaystackTransferEvent):
            transfer = event.data
            reference = transfer.transfer_code or transfer.reference
            if not reference:
                raise InvalidPayloadError("Transfer event has no transfer code or reference")
            kind = _TRANSFER_KINDS[event.event]
            return ProviderEvent(
                provider=self.name,
                event_type=event.event,
                kind=kind,
                reference=reference,
                amount=from_minor_units(transfer.amount, transfer.currency),
                currency=transfer.currency.upper(),
                provider_status=transfer.status or event.event.split(".")[1],
                error_message=None if kind == EventKind.TRANSFER_SUCCEEDED else (
                    transfer.failure_reason or transfer.reason or f"Transfer {event.event.split('.')[1]}"
                ),
                payout_id=transfer.metadata.get("payoutId"),
                payout_type=transfer.metadata.get("type"),
                payout_reference=transfer.reference,
                metadata=transfer.metadata,
            )

        return None

    async def _send_transfer(self, request: TransferRequest) -> TransferResult:
        recipient = request.destination.get("recipient_code")
        if not recipient:
            raise ProviderError("Destination has no Paystack recipient code", transient=False)

        body = await self._post(
            f"{self.api_base}/transfer",
            headers={"Authorization": f"Bearer {self.secret_key}"},
            json={
                "source": "balance",
                "amount": to_minor_units(request.amount, request.currency),
                "recipient": recipient,
                # Paystack de-duplicates transfers on this reference
                "reference": request.idempotency_key,
                "reason": request.reason,
                "currency": request.currency.upper(),
            },
        )
        if not body.get("status"):
            raise ProviderError(body.get("message") or "Paystack rejected transfer", transient=False, detail=body)

        data = body.get("data") or {}
        transfer_code = data.get("transfer_code")
        if not transfer_code:
            raise ProviderError("Paystack transfer response missing transfer code", transient=False, detail=body)

        provider_status = (data.get("status") or "pending").lower()
        if provider_status == "success":
            status = "success"
        elif provider_status in ("failed", "reversed"):
            status = "failed"
        else:
            status = "pending"

        logger.info("Paystack transfer created", transfer_code=transfer_code, status=provider_status)
        return TransferResult(
            transfer_id=transfer_code,
            status=status,
            failure_reason=data.get("reason") if status == "failed" else None,
            raw=body,
        )
