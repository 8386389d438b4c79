"""
Settlement capability used by the billing engine.

The engine only needs a pass/fail answer; anything provider specific stays
behind settle().
"""
from decimal import Decimal
import logging
from typing import Protocol

from app.core.config import Settings


logger = logging.getLogger(__name__)


class PaymentGateway(Protocol):
    name: str

    def settle(self, invoice_id: str, method: str, amount: Decimal, currency: str) -> bool:
        ...


class StripeGateway:
    """Charges the invoice amount with a confirmed Stripe PaymentIntent.

    `method` is the Stripe PaymentMethod id supplied by the client.
    """

    name = "stripe"

    def __init__(self, api_key: str) -> None:
        self.api_key = api_key

    def settle(self, invoice_id: str, method: str, amount: Decimal, currency: str) -> bool:
        import stripe as stripe_lib

        stripe_lib.api_key = self.api_key
        cents = int((amount * 100).to_integral_value())
        if cents == 0:
            return True
        try:
            intent = stripe_lib.PaymentIntent.create(
                amount=cents,
                currency=currency,
                payment_method=method,
                confirm=True,
                metadata={"invoice_id": invoice_id},
                automatic_payment_methods={"enabled": True, "allow_redirects": "never"},
            )
        except stripe_lib.StripeError as exc:
            logger.warning("stripe settlement failed invoice_id=%s error=%s", invoice_id, exc.user_message or exc)
            return False
        return intent.status == "succeeded"


class OfflineGateway:
    """Settlement recorded by an operator (bank transfer, cash, cheque)."""

    name = "offline"

    def settle(self, invoice_id: str, method: str, amount: Decimal, currency: str) -> bool:
        logger.info("offline settlement recorded invoice_id=%s method=%s amount=%s %s", invoice_id, method, amount, currency)
        return True


def build_gateway(settings: Settings) -> PaymentGateway:
    if settings.stripe_secret_key:
        return StripeGateway(settings.stripe_secret_key)
    return OfflineGateway()
