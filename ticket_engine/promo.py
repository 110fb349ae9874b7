"""Promo code validation.

Read-only: a redemption is only counted (used_count) when the order that
carries the code is paid, so abandoned carts never burn a use.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from .clock import as_utc, utcnow
from .db import execute_guarded
from .errors import InvalidPromoCode
from .log import get_logger
from .models import ORDER_CANCELLED, ORDER_FAILED, Order, PromoCode

logger = get_logger(__name__)

CENT = Decimal("0.01")


@dataclass(frozen=True)
class PromoResult:
    promo_code_id: str
    code: str
    discount_type: str
    discount_value: Decimal

    valid: bool = True

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "code": self.code,
            "discount_type": self.discount_type,
            "discount_value": str(self.discount_value),
        }


def validate(db: Session, code: str, event_id: str, user_id: str, now: datetime | None = None) -> PromoResult:
    now = now or utcnow()
    promo = db.execute(select(PromoCode).where(PromoCode.code == code)).scalar_one_or_none()

    if promo is None or not promo.is_active:
        raise InvalidPromoCode(InvalidPromoCode.NOT_FOUND)
    if promo.expires_at is not None and as_utc(promo.expires_at) <= now:
        raise InvalidPromoCode(InvalidPromoCode.EXPIRED)
    if promo.event_id is not None and promo.event_id != event_id:
        raise InvalidPromoCode(InvalidPromoCode.WRONG_EVENT)
    if promo.max_uses is not None and promo.used_count >= promo.max_uses:
        raise InvalidPromoCode(InvalidPromoCode.USAGE_LIMIT)

    prior = db.execute(
        select(func.count(Order.id)).where(
            Order.user_id == user_id,
            Order.event_id == event_id,
            Order.promo_code_id == promo.id,
            Order.status.not_in((ORDER_FAILED, ORDER_CANCELLED)),
        )
    ).scalar_one()
    if prior:
        raise InvalidPromoCode(InvalidPromoCode.ALREADY_REDEEMED)

    return PromoResult(
        promo_code_id=promo.id,
        code=promo.code,
        discount_type=promo.discount_type,
        discount_value=Decimal(promo.discount_value),
    )


def apply_discount(subtotal: Decimal, promo: PromoResult | None) -> Decimal:
    if promo is None:
        return Decimal("0.00")
    if promo.discount_type == "percentage":
        discount = (subtotal * promo.discount_value / Decimal(100)).quantize(CENT, rounding=ROUND_HALF_UP)
    else:
        discount = promo.discount_value.quantize(CENT)
    return min(discount, subtotal)


def record_redemption(db: Session, promo_code_id: str) -> bool:
    counted = execute_guarded(
        db,
        update(PromoCode)
        .where(
            PromoCode.id == promo_code_id,
            (PromoCode.max_uses.is_(None)) | (PromoCode.used_count < PromoCode.max_uses),
        )
        .values(used_count=PromoCode.used_count + 1),
    )
    if not counted:
        # the order already paid; the limit was hit by a concurrent checkout
        logger.warning("promo redemption over limit promo_code_id=%s", promo_code_id)
    return bool(counted)
