"""Order state machine.

    pending -> paid | failed | cancelled
    paid -> refunded | partially_refunded
    partially_refunded -> partially_refunded | refunded

Every transition is a compare-and-set on the persisted status. A caller whose
expected status no longer matches gets False back and nothing changes.
"""

from collections import OrderedDict
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from . import holds, inventory, promo
from .clock import as_utc, utcnow
from .config import get_settings
from .db import execute_guarded
from .errors import (
    HoldExpired,
    HoldNotFound,
    InsufficientInventory,
    InvalidRequest,
    OrderNotFound,
    OrderStateConflict,
)
from .log import get_logger
from .models import (
    ORDER_CANCELLED,
    ORDER_FAILED,
    ORDER_PAID,
    ORDER_PARTIALLY_REFUNDED,
    ORDER_PENDING,
    ORDER_REFUNDED,
    CartHold,
    Event,
    Order,
    OrderItem,
)

logger = get_logger(__name__)

VALID_TRANSITIONS = {
    ORDER_PENDING: {ORDER_PAID, ORDER_FAILED, ORDER_CANCELLED},
    ORDER_PAID: {ORDER_REFUNDED, ORDER_PARTIALLY_REFUNDED},
    ORDER_PARTIALLY_REFUNDED: {ORDER_PARTIALLY_REFUNDED, ORDER_REFUNDED},
    ORDER_FAILED: set(),
    ORDER_CANCELLED: set(),
    ORDER_REFUNDED: set(),
}

CLOSING_STATES = {ORDER_FAILED, ORDER_CANCELLED, ORDER_REFUNDED}
CENT = Decimal("0.01")


def get_order(db: Session, order_id: str) -> Order:
    order = db.get(Order, order_id)
    if order is None:
        raise OrderNotFound(order_id)
    return order


def find_order(db: Session, order_id: str | None = None, provider_ref: str | None = None) -> Order | None:
    if order_id:
        order = db.get(Order, order_id)
        if order is not None:
            return order
    if provider_ref:
        return db.execute(select(Order).where(Order.provider_ref == provider_ref)).scalar_one_or_none()
    return None


def transition(db: Session, order: Order, expected: str, new: str, now: datetime | None = None, **values) -> bool:
    if new not in VALID_TRANSITIONS.get(expected, set()):
        raise OrderStateConflict(order.id, expected, new)

    if new in CLOSING_STATES:
        values.setdefault("closed_at", now or utcnow())
    won = execute_guarded(
        db,
        update(Order).where(Order.id == order.id, Order.status == expected).values(status=new, **values),
    )
    db.refresh(order)
    if won:
        logger.info("order transition order_id=%s %s->%s", order.id, expected, new)
    else:
        logger.info("order transition skipped order_id=%s expected=%s actual=%s", order.id, expected, order.status)
    return bool(won)


def create_order(
    db: Session,
    user_id: str,
    event_id: str,
    hold_ids: list[str],
    promo_code: str | None = None,
    provider_ref: str | None = None,
    metadata: dict | None = None,
    now: datetime | None = None,
) -> Order:
    settings = get_settings()
    now = now or utcnow()
    hold_ids = list(OrderedDict.fromkeys(hold_ids))
    if not hold_ids:
        raise InvalidRequest("at least one hold is required")

    try:
        if db.get(Event, event_id) is None:
            raise InvalidRequest("Event not found", event_id=event_id)

        claimed = db.execute(select(CartHold).where(CartHold.id.in_(hold_ids))).scalars().all()
        by_id = {h.id: h for h in claimed}
        quantities: dict[str, int] = {}
        for hold_id in hold_ids:
            hold = by_id.get(hold_id)
            if hold is None or hold.user_id != user_id:
                raise HoldNotFound(hold_id)
            if hold.released or hold.order_id is not None or as_utc(hold.expires_at) <= now:
                raise HoldExpired(hold_id)
            quantities[hold.tier_id] = quantities.get(hold.tier_id, 0) + hold.quantity

        subtotal = Decimal("0.00")
        currencies = set()
        prices = {}
        for tier_id, qty in quantities.items():
            tier = inventory.get_tier(db, tier_id)
            if tier.event_id != event_id:
                raise InvalidRequest("Hold is for a different event", tier_id=tier_id)
            prices[tier_id] = Decimal(tier.price)
            currencies.add(tier.currency)
            subtotal += prices[tier_id] * qty
        if len(currencies) > 1:
            raise InvalidRequest("Tiers in one order must share a currency")

        applied = promo.validate(db, promo_code, event_id, user_id, now=now) if promo_code else None
        discount = promo.apply_discount(subtotal, applied)
        fee = ((subtotal - discount) * settings.PLATFORM_FEE_RATE).quantize(CENT, rounding=ROUND_HALF_UP)

        order = Order(
            user_id=user_id,
            event_id=event_id,
            promo_code_id=applied.promo_code_id if applied else None,
            currency=currencies.pop() if currencies else settings.DEFAULT_CURRENCY,
            subtotal=subtotal,
            discount_amount=discount,
            total=subtotal - discount + fee,
            refunded_amount=Decimal("0.00"),
            status=ORDER_PENDING,
            provider_ref=provider_ref,
            extra=dict(metadata or {}),
            created_at=now,
        )
        order.line_items = [
            OrderItem(tier_id=tier_id, quantity=qty, unit_price=prices[tier_id]) for tier_id, qty in quantities.items()
        ]
        db.add(order)
        db.flush()

        for hold_id in hold_ids:
            won = execute_guarded(
                db,
                update(CartHold)
                .where(
                    CartHold.id == hold_id,
                    CartHold.order_id.is_(None),
                    CartHold.released.is_(False),
                    CartHold.expires_at > now,
                )
                .values(order_id=order.id),
            )
            if not won:
                raise HoldExpired(hold_id)

        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(
        "order created order_id=%s user_id=%s event_id=%s total=%s holds=%s",
        order.id, user_id, event_id, order.total, len(hold_ids),
    )
    return order


def order_holds(db: Session, order_id: str) -> list[CartHold]:
    return list(db.execute(select(CartHold).where(CartHold.order_id == order_id)).scalars().all())


def mark_paid(db: Session, order: Order, provider_ref: str | None = None, now: datetime | None = None) -> bool:
    """pending -> paid, converting the order's holds into sold units. Does not commit.

    Raises HoldExpired when a hold lapsed and its capacity has since been
    taken; the caller rolls back and fails the order instead.
    """
    now = now or utcnow()
    values = {"paid_at": now}
    if provider_ref and not order.provider_ref:
        values["provider_ref"] = provider_ref
    if not transition(db, order, ORDER_PENDING, ORDER_PAID, now=now, **values):
        return False

    for hold in order_holds(db, order.id):
        if holds.consume_hold(db, hold, now):
            inventory.commit_sale(db, hold.tier_id, hold.quantity)
            continue
        try:
            inventory.sell_available(db, hold.tier_id, hold.quantity)
        except InsufficientInventory:
            raise HoldExpired(hold.id, "Hold lapsed and the tier sold out before payment") from None
        logger.warning("paid after hold lapsed order_id=%s hold_id=%s", order.id, hold.id)

    if order.promo_code_id:
        promo.record_redemption(db, order.promo_code_id)
    return True


def mark_failed(db: Session, order: Order, now: datetime | None = None) -> bool:
    """pending -> failed, handing the holds back. Does not commit."""
    now = now or utcnow()
    if not transition(db, order, ORDER_PENDING, ORDER_FAILED, now=now):
        return False
    holds.release_for_order(db, order.id, now)
    return True


def cancel_order(db: Session, order_id: str, user_id: str | None = None, now: datetime | None = None) -> Order:
    now = now or utcnow()
    order = get_order(db, order_id)
    if user_id is not None and order.user_id != user_id:
        raise OrderNotFound(order_id)

    try:
        if not transition(db, order, ORDER_PENDING, ORDER_CANCELLED, now=now):
            raise OrderStateConflict(order.id, order.status, ORDER_CANCELLED)
        holds.release_for_order(db, order.id, now)
        db.commit()
    except Exception:
        db.rollback()
        raise
    return order
