"""Ticket issuance: one owned ticket per purchased unit, exactly once per order.

Idempotency comes from two places: an existing ticket set for the order is
returned as-is, and the (order_id, tier_id, sequence) unique constraint stops
a concurrent issuer from writing a second set.
"""

import uuid
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .clock import utcnow
from .config import get_settings
from .db import execute_guarded
from .errors import OrderStateConflict
from .log import get_logger
from .models import (
    ORDER_PAID,
    ORDER_PARTIALLY_REFUNDED,
    ORDER_REFUNDED,
    TICKET_ACTIVE,
    TICKET_EXPIRED,
    Event,
    Order,
    Ticket,
)
from .orders import get_order
from .security import mint_qr_token

logger = get_logger(__name__)


def tickets_for_order(db: Session, order_id: str) -> list[Ticket]:
    return list(
        db.execute(
            select(Ticket)
            .where(Ticket.order_id == order_id)
            .order_by(Ticket.tier_id, Ticket.sequence)
            .execution_options(populate_existing=True)
        ).scalars().all()
    )


def build_tickets(db: Session, order: Order) -> list[Ticket]:
    """Add the ticket rows for a paid order to the session. Does not commit."""
    existing = tickets_for_order(db, order.id)
    if existing:
        return existing

    secret = get_settings().TICKET_SIGNING_SECRET
    tickets = []
    for item in order.line_items:
        for seq in range(1, item.quantity + 1):
            ticket_id = str(uuid.uuid4())
            tickets.append(
                Ticket(
                    id=ticket_id,
                    order_id=order.id,
                    tier_id=item.tier_id,
                    event_id=order.event_id,
                    user_id=order.user_id,
                    sequence=seq,
                    qr_token=mint_qr_token(ticket_id, order.event_id, item.tier_id, order.user_id, secret),
                )
            )
    db.add_all(tickets)
    db.flush()
    logger.info("tickets issued order_id=%s count=%s", order.id, len(tickets))
    return tickets


def issue_for_order(db: Session, order_id: str) -> list[Ticket]:
    order = get_order(db, order_id)
    if order.status in (ORDER_REFUNDED, ORDER_PARTIALLY_REFUNDED):
        return tickets_for_order(db, order_id)
    if order.status != ORDER_PAID:
        raise OrderStateConflict(order.id, order.status, "issued")

    try:
        tickets = build_tickets(db, order)
        db.commit()
    except IntegrityError:
        # another worker issued this order first; theirs is the set
        db.rollback()
        logger.info("ticket issuance raced order_id=%s", order_id)
        return tickets_for_order(db, order_id)
    except Exception:
        db.rollback()
        raise
    return tickets


def tickets_for_user(db: Session, user_id: str, status: str | None = None) -> list[Ticket]:
    q = select(Ticket).where(Ticket.user_id == user_id)
    if status:
        q = q.where(Ticket.status == status)
    q = q.order_by(Ticket.created_at.desc(), Ticket.sequence).execution_options(populate_existing=True)
    return list(db.execute(q).scalars().all())


def expire_past_tickets(db: Session, now: datetime | None = None) -> int:
    """Active tickets for events that have ended become expired. Does not commit."""
    now = now or utcnow()
    ended = select(Event.id).where(Event.ends_at.is_not(None), Event.ends_at < now)
    expired = execute_guarded(
        db,
        update(Ticket).where(Ticket.status == TICKET_ACTIVE, Ticket.event_id.in_(ended)).values(status=TICKET_EXPIRED),
    )
    if expired:
        logger.info("tickets expired count=%s", expired)
    return expired
