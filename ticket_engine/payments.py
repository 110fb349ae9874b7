"""Payment provider boundary.

The engine only needs one outbound call: refund a captured payment.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol

import stripe

from .config import get_settings
from .errors import PaymentProviderError
from .log import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ProviderRefund:
    id: str
    status: str
    amount: Decimal


class PaymentProvider(Protocol):
    def refund(
        self, payment_ref: str, amount: Decimal, currency: str, idempotency_key: str, metadata: dict
    ) -> ProviderRefund: ...


def to_minor_units(amount: Decimal) -> int:
    return int((amount * 100).to_integral_value())


class StripePaymentProvider:
    def __init__(self, api_key: str) -> None:
        self.api_key = api_key

    def refund(
        self, payment_ref: str, amount: Decimal, currency: str, idempotency_key: str, metadata: dict
    ) -> ProviderRefund:
        try:
            refund = stripe.Refund.create(
                api_key=self.api_key,
                payment_intent=payment_ref,
                amount=to_minor_units(amount),
                reason="requested_by_customer",
                metadata=metadata,
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as e:
            logger.error("stripe refund failed payment_ref=%s error=%s", payment_ref, e)
            raise PaymentProviderError(getattr(e, "user_message", None) or "Payment provider request failed")

        return ProviderRefund(id=refund.id, status=refund.status, amount=Decimal(refund.amount) / 100)


def get_payment_provider() -> PaymentProvider:
    return StripePaymentProvider(get_settings().STRIPE_SECRET_KEY)
