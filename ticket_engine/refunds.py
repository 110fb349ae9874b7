"""Refund processing.

The provider is asked first, with no database transaction open. Local rows
only change after the provider has confirmed, so a provider failure leaves
the order exactly as it was. Refunded tickets do not go back on sale.

Before the provider call an api refund claims its order (`refund_claim_id`)
and records itself as a pending `Refund` row in a committed transaction.
A second api refund for the same order is turned away until the first one
settles or the provider rejects it.
"""

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from .clock import utcnow
from .db import execute_guarded, expire_cached
from .errors import (
    OrderNotFound,
    OrderStateConflict,
    PaymentProviderError,
    RefundIneligible,
    RefundInProgress,
    RefundNotAuthorized,
)
from .log import get_logger
from .models import (
    ORDER_PAID,
    ORDER_PARTIALLY_REFUNDED,
    ORDER_REFUNDED,
    TICKET_ACTIVE,
    TICKET_REFUNDED,
    TRANSFER_CANCELLED,
    TRANSFER_PENDING,
    Event,
    Order,
    Refund,
    Ticket,
    TicketTransfer,
)
from .orders import find_order, get_order, transition
from .payments import PaymentProvider

logger = get_logger(__name__)

REFUNDABLE = (ORDER_PAID, ORDER_PARTIALLY_REFUNDED)
REFUND_PENDING = "pending"


def _refund_tickets(db: Session, ticket_ids: list[str], now: datetime) -> int:
    if not ticket_ids:
        return 0
    flipped = execute_guarded(
        db,
        update(Ticket)
        .where(Ticket.id.in_(ticket_ids), Ticket.status == TICKET_ACTIVE)
        .values(status=TICKET_REFUNDED),
    )
    execute_guarded(
        db,
        update(TicketTransfer)
        .where(TicketTransfer.ticket_id.in_(ticket_ids), TicketTransfer.status == TRANSFER_PENDING)
        .values(status=TRANSFER_CANCELLED, responded_at=now),
    )
    for ticket_id in ticket_ids:
        expire_cached(db, Ticket, ticket_id)
    return flipped


def _settle_order(db: Session, order: Order, amount: Decimal, now: datetime, **values) -> None:
    """Add `amount` to the refunded total and move the order to its refund state.

    Refuses with OrderStateConflict when the order is no longer refundable.
    """
    unrefunded = db.execute(
        select(func.count(Ticket.id)).where(Ticket.order_id == order.id, Ticket.status != TICKET_REFUNDED)
    ).scalar_one()
    new_status = ORDER_REFUNDED if unrefunded == 0 else ORDER_PARTIALLY_REFUNDED

    expected = order.status
    if not transition(db, order, expected, new_status, now=now, refunded_amount=Order.refunded_amount + amount, **values):
        logger.error("refund settled against unexpected order state order_id=%s status=%s", order.id, order.status)
        raise OrderStateConflict(order.id, order.status, new_status)


def _authorize(db: Session, order: Order, requested_by: str | None) -> None:
    """The buyer or the event's organizer may refund; None means an internal caller."""
    if requested_by is None or requested_by == order.user_id:
        return
    event = db.get(Event, order.event_id)
    if event is None or requested_by != event.org_id:
        logger.warning("refund refused order_id=%s requested_by=%s", order.id, requested_by)
        raise RefundNotAuthorized(order.id)


def _select_tickets(db: Session, order: Order, ticket_ids: list[str] | None) -> tuple[list[Ticket], bool]:
    """Tickets to refund, and whether they are every ticket on the order not yet refunded."""
    tickets = db.execute(select(Ticket).where(Ticket.order_id == order.id)).scalars().all()
    active = [t for t in tickets if t.status == TICKET_ACTIVE]
    unrefunded = [t for t in tickets if t.status != TICKET_REFUNDED]

    if ticket_ids is None:
        if not active:
            raise RefundIneligible("No active tickets to refund", order_id=order.id)
        return active, len(active) == len(unrefunded)

    wanted = list(dict.fromkeys(ticket_ids))
    if not wanted:
        raise RefundIneligible("No tickets selected", order_id=order.id)
    by_id = {t.id: t for t in tickets}
    chosen = []
    for ticket_id in wanted:
        ticket = by_id.get(ticket_id)
        if ticket is None:
            raise RefundIneligible("Ticket does not belong to this order", ticket_id=ticket_id)
        if ticket.status != TICKET_ACTIVE:
            raise RefundIneligible("Ticket is not active", ticket_id=ticket_id, ticket_status=ticket.status)
        chosen.append(ticket)
    return chosen, len(chosen) == len(unrefunded)


def _refund_amount(order: Order, chosen: list[Ticket], covers_rest: bool, amount: Decimal | None) -> Decimal:
    remaining = Decimal(order.total) - Decimal(order.refunded_amount)

    if amount is None:
        if covers_rest:
            # the last tickets take the remainder so discounted orders refund exactly their total
            amount = remaining
        else:
            prices = {item.tier_id: Decimal(item.unit_price) for item in order.line_items}
            amount = min(sum((prices[t.tier_id] for t in chosen), Decimal("0.00")), remaining)
    else:
        amount = Decimal(amount)
        if amount <= 0 or amount > remaining:
            raise RefundIneligible("Refund amount exceeds what is refundable", refundable=str(remaining))
    if amount <= 0:
        raise RefundIneligible("Nothing left to refund", order_id=order.id)
    return amount


def _claim(db: Session, order_id: str, refund_id: str) -> bool:
    return bool(
        execute_guarded(
            db,
            update(Order)
            .where(Order.id == order_id, Order.status.in_(REFUNDABLE), Order.refund_claim_id.is_(None))
            .values(refund_claim_id=refund_id),
        )
    )


def _release(db: Session, record: Refund) -> None:
    """Drop a pending refund the provider turned down, freeing the order."""
    db.delete(record)
    execute_guarded(
        db,
        update(Order)
        .where(Order.id == record.order_id, Order.refund_claim_id == record.id)
        .values(refund_claim_id=None),
    )
    db.commit()
    expire_cached(db, Order, record.order_id)


def refund(
    db: Session,
    provider: PaymentProvider,
    order_id: str,
    reason: str,
    ticket_ids: list[str] | None = None,
    amount: Decimal | None = None,
    requested_by: str | None = None,
    now: datetime | None = None,
) -> Refund:
    order = get_order(db, order_id)
    _authorize(db, order, requested_by)
    if order.status not in REFUNDABLE:
        raise RefundIneligible("Order is not eligible for refund", order_id=order.id, status=order.status)
    if not order.provider_ref:
        raise RefundIneligible("Order has no captured payment", order_id=order.id)

    refund_id = str(uuid.uuid4())
    if not _claim(db, order_id, refund_id):
        db.refresh(order)
        status = order.status
        db.rollback()
        if status not in REFUNDABLE:
            raise RefundIneligible("Order is not eligible for refund", order_id=order_id, status=status)
        raise RefundInProgress(order_id)

    try:
        db.refresh(order)
        chosen, covers_rest = _select_tickets(db, order, ticket_ids)
        amount = _refund_amount(order, chosen, covers_rest, amount)
        record = Refund(
            id=refund_id,
            order_id=order_id,
            amount=amount,
            reason=reason,
            ticket_ids=[t.id for t in chosen],
            status=REFUND_PENDING,
            source="api",
        )
        db.add(record)
        payment_ref, currency = order.provider_ref, order.currency
        # commit the claim: no locks are held across the provider call
        db.commit()
    except Exception:
        db.rollback()
        raise

    try:
        confirmed = provider.refund(
            payment_ref,
            amount,
            currency,
            idempotency_key=f"refund-{refund_id}",
            metadata={"order_id": order_id, "refund_id": refund_id, "reason": reason},
        )
    except PaymentProviderError:
        _release(db, record)
        raise
    except Exception:
        # the provider may or may not have moved money; the claim stays for an operator
        logger.exception("refund outcome unknown order_id=%s refund_id=%s", order_id, refund_id)
        raise

    now = now or utcnow()
    try:
        flipped = _refund_tickets(db, record.ticket_ids, now)
        if flipped != len(record.ticket_ids):
            logger.error(
                "refund confirmed but tickets changed meanwhile order_id=%s expected=%s flipped=%s",
                order_id, len(record.ticket_ids), flipped,
            )
        db.refresh(order)
        _settle_order(db, order, amount, now, refund_claim_id=None)
        record.provider_refund_id = confirmed.id
        record.status = confirmed.status
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("refund confirmed by provider but not recorded order_id=%s provider_refund_id=%s", order_id, confirmed.id)
        raise

    logger.info("refund recorded order_id=%s amount=%s tickets=%s status=%s", order_id, amount, len(record.ticket_ids), order.status)
    return record


def reconcile(
    db: Session,
    payment_ref: str,
    amount_refunded: Decimal,
    amount_total: Decimal,
    provider_refund_id: str | None = None,
    now: datetime | None = None,
) -> Refund | None:
    """Bring local state in line with a refund the provider reports. Does not commit.

    `amount_refunded` is the provider's cumulative refunded amount, so refunds
    we issued ourselves show up as already accounted for.
    """
    now = now or utcnow()
    order = find_order(db, provider_ref=payment_ref)
    if order is None:
        raise OrderNotFound(None)
    db.refresh(order)

    if provider_refund_id and db.execute(
        select(Refund.id).where(Refund.provider_refund_id == provider_refund_id)
    ).first():
        return None
    if order.status not in REFUNDABLE:
        logger.warning("provider refund for order in state order_id=%s status=%s", order.id, order.status)
        return None
    if order.refund_claim_id is not None:
        # the api refund in flight settles its own amount; later events carry the cumulative total
        logger.info(
            "provider refund during api refund order_id=%s refund_id=%s provider_refund_id=%s",
            order.id, order.refund_claim_id, provider_refund_id,
        )
        return None

    delta = Decimal(amount_refunded) - Decimal(order.refunded_amount)
    if delta <= 0:
        return None

    ticket_ids = []
    if amount_refunded >= amount_total:
        ticket_ids = list(
            db.execute(
                select(Ticket.id).where(Ticket.order_id == order.id, Ticket.status == TICKET_ACTIVE)
            ).scalars().all()
        )
        _refund_tickets(db, ticket_ids, now)

    _settle_order(db, order, delta, now)
    record = Refund(
        order_id=order.id,
        provider_refund_id=provider_refund_id,
        amount=delta,
        reason="provider_initiated",
        ticket_ids=ticket_ids,
        status="succeeded",
        source="provider",
    )
    db.add(record)
    db.flush()
    logger.info("provider refund reconciled order_id=%s amount=%s status=%s", order.id, delta, order.status)
    return record
