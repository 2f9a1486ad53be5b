"""
Payment gateway protocol for penalty charges.

The reaper only sees the tri-state ``ChargeOutcome``; provider specifics stay
in the implementation (``stripe_gateway.StripeGateway``).
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Dict, Optional, Protocol


class ChargeOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    DECLINED = "declined"
    TRANSIENT_ERROR = "transient_error"


@dataclass
class ChargeResult:
    """Result of one off-session charge attempt."""
    outcome: ChargeOutcome
    payment_intent_id: Optional[str] = None
    failure_reason: Optional[str] = None
    failure_code: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome is ChargeOutcome.SUCCEEDED


class PaymentGatewayError(Exception):
    """Gateway is not usable (e.g. not configured)."""
    pass


class PaymentGateway(Protocol):
    """
    Protocol for penalty payment gateways.

    Implementations must:
    - charge off-session against a stored payment method
    - forward ``idempotency_key`` so a replayed attempt cannot double-charge
    - never raise for provider failures; map them onto ChargeOutcome
    """

    def charge(
        self,
        customer_ref: Optional[str],
        payment_method_ref: Optional[str],
        amount: Decimal,
        currency: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> ChargeResult:
        ...


# https://docs.stripe.com/currencies#zero-decimal
ZERO_DECIMAL_CURRENCIES = frozenset({
    "BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA",
    "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF",
})


def to_minor_units(amount, currency: str) -> int:
    """Base-unit amount -> provider's smallest unit ($20 -> 2000, ¥1000 -> 1000)."""
    value = Decimal(str(amount))
    if currency.upper() not in ZERO_DECIMAL_CURRENCIES:
        value = value * 100
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def idempotency_key_for(charge_id: str, attempt: int) -> str:
    """One key per (charge, attempt): a replayed attempt dedupes, a new attempt does not."""
    return f"penalty_{charge_id}_{attempt}"
