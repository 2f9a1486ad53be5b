"""
Stripe implementation of PaymentGateway.

Creates a confirmed, off-session PaymentIntent against the user's saved
payment method and maps the result onto ChargeOutcome.
"""
import logging
from decimal import Decimal
from typing import Dict, Optional

import stripe

from bookpledge.core.config import settings
from bookpledge.features.penalties.gateway import (
    ChargeOutcome,
    ChargeResult,
    PaymentGatewayError,
    to_minor_units,
)

logger = logging.getLogger("bookpledge")

# Provider hiccups: the attempt is counted and the retry pass tries again
_TRANSIENT_ERRORS = (
    stripe.RateLimitError,
    stripe.APIConnectionError,
    stripe.APIError,
    stripe.IdempotencyError,
)


class StripeGateway:
    """Stripe implementation of the PaymentGateway protocol."""

    def __init__(self, secret_key: Optional[str] = None):
        """
        Args:
            secret_key: Stripe secret key (defaults to settings.STRIPE_SECRET_KEY)
        """
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        if not self.secret_key:
            raise PaymentGatewayError("STRIPE_SECRET_KEY not configured")
        stripe.api_key = self.secret_key

    def charge(
        self,
        customer_ref: Optional[str],
        payment_method_ref: Optional[str],
        amount: Decimal,
        currency: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> ChargeResult:
        if not customer_ref or not payment_method_ref:
            return ChargeResult(
                outcome=ChargeOutcome.DECLINED,
                failure_reason="Missing customer or payment method",
                failure_code="MISSING_PAYMENT_METHOD",
            )

        minor = to_minor_units(amount, currency)
        try:
            intent = stripe.PaymentIntent.create(
                amount=minor,
                currency=currency.lower(),
                customer=customer_ref,
                payment_method=payment_method_ref,
                off_session=True,
                confirm=True,
                metadata={**(metadata or {}), "type": "penalty_charge"},
                idempotency_key=idempotency_key,
            )
        except stripe.CardError as e:
            return ChargeResult(
                outcome=ChargeOutcome.DECLINED,
                payment_intent_id=_intent_id_from_error(e),
                failure_reason=e.user_message or str(e) or "Card declined",
                failure_code=(e.code or "card_declined"),
            )
        except _TRANSIENT_ERRORS as e:
            logger.warning(
                "stripe.charge.transient",
                extra={"error_type": type(e).__name__, "idempotency_key": idempotency_key},
            )
            return ChargeResult(
                outcome=ChargeOutcome.TRANSIENT_ERROR,
                failure_reason=str(e) or type(e).__name__,
                failure_code=getattr(e, "code", None) or "STRIPE_TRANSIENT",
            )
        except stripe.StripeError as e:
            return ChargeResult(
                outcome=ChargeOutcome.DECLINED,
                failure_reason=str(e) or "Unknown Stripe error",
                failure_code=getattr(e, "code", None) or "STRIPE_ERROR",
            )

        status = getattr(intent, "status", None)
        if status == "succeeded":
            return ChargeResult(outcome=ChargeOutcome.SUCCEEDED, payment_intent_id=intent.id)
        if status == "requires_action":
            return ChargeResult(
                outcome=ChargeOutcome.DECLINED,
                payment_intent_id=intent.id,
                failure_reason="Additional authentication required (3DS)",
                failure_code="REQUIRES_ACTION",
            )
        if status == "requires_payment_method":
            return ChargeResult(
                outcome=ChargeOutcome.DECLINED,
                payment_intent_id=intent.id,
                failure_reason="Payment method failed",
                failure_code="PAYMENT_METHOD_FAILED",
            )
        return ChargeResult(
            outcome=ChargeOutcome.DECLINED,
            payment_intent_id=intent.id,
            failure_reason=f"Unexpected status: {status}",
            failure_code="UNEXPECTED_STATUS",
        )


def _intent_id_from_error(err) -> Optional[str]:
    payment_intent = getattr(getattr(err, "error", None), "payment_intent", None)
    if payment_intent is None:
        return None
    return getattr(payment_intent, "id", None) or (payment_intent.get("id") if hasattr(payment_intent, "get") else None)
