"""
Common provider types and the HTTP transfer client
"""
import asyncio
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

import httpx
import structlog

from chainfund.core.circuit_breaker import get_breaker
from chainfund.core.config import get_settings
from chainfund.core.errors import ProviderError

logger = structlog.get_logger(__name__)
settings = get_settings()

TRANSIENT_STATUS_CODES = {429, 500, 502, 503, 504}


class EventKind(str, Enum):
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_CANCELED = "payment_canceled"
    REFUNDED = "refunded"
    TRANSFER_SUCCEEDED = "transfer_succeeded"
    TRANSFER_FAILED = "transfer_failed"
    TRANSFER_REVERSED = "transfer_reversed"


TRANSFER_KINDS = {
    EventKind.TRANSFER_SUCCEEDED,
    EventKind.TRANSFER_FAILED,
    EventKind.TRANSFER_REVERSED,
}


@dataclass
class ProviderEvent:
    """A verified provider event reduced to what reconciliation needs"""
    provider: str
    event_type: str
    kind: EventKind
    reference: str  # Payment intent id, transaction reference or transfer id
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    provider_status: Optional[str] = None
    error_message: Optional[str] = None
    donation_id: Optional[str] = None
    payout_id: Optional[str] = None
    payout_type: Optional[str] = None  # 'campaign' or 'commission'
    payout_reference: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_transfer(self) -> bool:
        return self.kind in TRANSFER_KINDS

    @property
    def claim_key(self) -> str:
        return f"webhook:{self.provider}:{self.kind.value}:{self.reference}"


@dataclass
class TransferRequest:
    amount: Decimal
    currency: str
    destination: Dict[str, Any]
    idempotency_key: str
    metadata: Dict[str, str]
    reason: str = ""


@dataclass
class TransferResult:
    transfer_id: str
    status: str  # 'pending', 'success' or 'failed'
    failure_reason: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == "success"

    @property
    def failed(self) -> bool:
        return self.status == "failed"


class PaymentProvider:
    """Base class for a payment provider adapter"""

    name: str = ""
    signature_header: str = ""

    def __init__(self):
        self.timeout = httpx.Timeout(settings.provider_timeout_seconds, connect=5.0)
        self.max_attempts = max(1, settings.transfer_max_attempts)
        self.backoff_seconds = settings.transfer_backoff_seconds

    def verify_signature(self, raw_body: bytes, signature: Optional[str]):
        raise NotImplementedError

    def parse_event(self, raw_body: bytes) -> Optional[ProviderEvent]:
        raise NotImplementedError

    async def _send_transfer(self, request: TransferRequest) -> TransferResult:
        raise NotImplementedError

    async def create_transfer(self, request: TransferRequest) -> TransferResult:
        """Create a transfer under this provider's circuit breaker"""
        return await get_breaker(self.name).call(self._send_transfer, request)

    async def _post(self, url: str, headers: Dict[str, str], **kwargs) -> Dict[str, Any]:
        """
        POST with bounded retries on transient failures. The caller's
        idempotency key travels in the headers or body on every attempt.
        """
        last_error = ""
        for attempt in range(1, self.max_attempts + 1):
            try:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(url, headers=headers, **kwargs)
            except httpx.TimeoutException:
                last_error = "timeout"
                logger.warning("Provider request timed out", provider=self.name, attempt=attempt)
            except httpx.TransportError as e:
                last_error = f"connection error: {e}"
                logger.warning("Provider connection error", provider=self.name, attempt=attempt, error=str(e))
            else:
                if response.status_code in TRANSIENT_STATUS_CODES:
                    last_error = f"HTTP {response.status_code}"
                    logger.warning(
                        "Provider returned transient error",
                        provider=self.name,
                        attempt=attempt,
                        status_code=response.status_code
                    )
                elif response.status_code >= 400:
                    message = _error_message(response)
                    logger.error(
                        "Provider rejected request",
                        provider=self.name,
                        status_code=response.status_code,
                        error=message
                    )
                    raise ProviderError(message, transient=False, detail={"status_code": response.status_code})
                else:
                    try:
                        return response.json()
                    except ValueError:
                        # The transfer may exist; the same idempotency key makes a re-send safe
                        raise ProviderError(
                            f"{self.name} returned an unreadable response (HTTP {response.status_code})",
                            transient=True,
                        )

            if attempt < self.max_attempts:
                await asyncio.sleep(self.backoff_seconds * (2 ** (attempt - 1)))

        raise ProviderError(
            f"{self.name} unavailable after {self.max_attempts} attempts: {last_error}",
            transient=True
        )


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(body.get("error"), dict):
        return body["error"].get("message") or str(body["error"])
    return body.get("message") or str(body)
