"""
Currency and payout provider tables
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Dict, Optional, Tuple


class PayoutProvider(str, Enum):
    STRIPE = "stripe"
    PAYSTACK = "paystack"


# Currencies without a minor unit; everything else uses cents
ZERO_DECIMAL_CURRENCIES = {"JPY", "KRW", "VND", "CLP", "XAF", "XOF", "UGX", "RWF"}

SUPPORTED_CURRENCIES: Dict[PayoutProvider, Tuple[str, ...]] = {
    PayoutProvider.STRIPE: ("USD", "EUR", "GBP", "CAD", "AUD", "CHF", "JPY", "SGD", "HKD", "NZD"),
    PayoutProvider.PAYSTACK: ("NGN", "GHS", "ZAR", "KES"),
}


@dataclass(frozen=True)
class FeeSchedule:
    percentage: Decimal
    fixed: Decimal
    minimum_payout: Decimal
    processing_time: str


FEE_SCHEDULES: Dict[PayoutProvider, FeeSchedule] = {
    PayoutProvider.STRIPE: FeeSchedule(
        percentage=Decimal("2.5"),
        fixed=Decimal("0.30"),
        minimum_payout=Decimal("1.00"),
        processing_time="2-7 business days",
    ),
    PayoutProvider.PAYSTACK: FeeSchedule(
        percentage=Decimal("1.5"),
        fixed=Decimal("0"),
        minimum_payout=Decimal("100.00"),
        processing_time="1-3 business days",
    ),
}


def minor_units(currency: str) -> int:
    """Number of decimal places used by a currency"""
    return 0 if currency.upper() in ZERO_DECIMAL_CURRENCIES else 2


def quantize(amount: Decimal, currency: str) -> Decimal:
    """Round an amount half-up to the currency's minor unit"""
    exponent = Decimal(1).scaleb(-minor_units(currency))
    return Decimal(amount).quantize(exponent, rounding=ROUND_HALF_UP)


def from_minor_units(value: int, currency: str) -> Decimal:
    """Convert a provider amount in minor units (cents, kobo) to a decimal amount"""
    return Decimal(value).scaleb(-minor_units(currency))


def to_minor_units(amount: Decimal, currency: str) -> int:
    return int(quantize(amount, currency).scaleb(minor_units(currency)))


def provider_for_currency(currency: str) -> Optional[PayoutProvider]:
    currency = currency.upper()
    for provider, currencies in SUPPORTED_CURRENCIES.items():
        if currency in currencies:
            return provider
    return None


def is_supported(provider: PayoutProvider, currency: str) -> bool:
    return currency.upper() in SUPPORTED_CURRENCIES.get(provider, ())


def is_known_currency(currency: str) -> bool:
    return provider_for_currency(currency) is not None
