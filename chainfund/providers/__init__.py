from chainfund.core.errors import UnsupportedProviderError
from chainfund.providers.base import (
    EventKind,
    PaymentProvider,
    ProviderEvent,
    TransferRequest,
    TransferResult,
)
from chainfund.providers.paystack import PaystackProvider
from chainfund.providers.stripe import StripeProvider

_PROVIDERS = {
    "stripe": StripeProvider,
    "paystack": PaystackProvider,
}


def get_provider(name: str) -> PaymentProvider:
    try:
        return _PROVIDERS[name.lower()]()
    except KeyError:
        raise UnsupportedProviderError(f"Unsupported payment provider: {name}")


__all__ = [
    "EventKind",
    "PaymentProvider",
    "ProviderEvent",
    "TransferRequest",
    "TransferResult",
    "PaystackProvider",
    "StripeProvider",
    "get_provider",
]
