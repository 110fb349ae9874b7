"""Payment provider webhook processing.

The dedup row for a provider event is written in the same transaction as the
event's side effects and before any of them. A redelivery therefore either
finds the row (and stops) or, if the first attempt rolled back, processes the
event from scratch.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import refunds
from .clock import utcnow
from .config import get_settings
from .errors import HoldExpired, OrderNotFound
from .issuer import build_tickets
from .log import get_logger
from .models import ORDER_CANCELLED, ORDER_FAILED, ORDER_PAID, ORDER_PENDING, WebhookEvent
from .orders import find_order, mark_failed, mark_paid
from .security import parse_webhook

logger = get_logger(__name__)

PAYMENT_SUCCEEDED = "payment_succeeded"
PAYMENT_FAILED = "payment_failed"
CHARGE_REFUNDED = "charge_refunded"

EVENT_KINDS = {
    "checkout_completed": PAYMENT_SUCCEEDED,
    "checkout.session.completed": PAYMENT_SUCCEEDED,
    "payment_succeeded": PAYMENT_SUCCEEDED,
    "payment_intent.succeeded": PAYMENT_SUCCEEDED,
    "payment_failed": PAYMENT_FAILED,
    "payment_intent.payment_failed": PAYMENT_FAILED,
    "charge_refunded": CHARGE_REFUNDED,
    "charge.refunded": CHARGE_REFUNDED,
}

PROCESSED = "processed"
DUPLICATE = "duplicate"
IGNORED = "ignored"
FAILED = "failed"


@dataclass
class WebhookOutcome:
    provider_event_id: str
    type: str
    status: str
    order_id: str | None = None
    ticket_ids: list[str] = field(default_factory=list)

    @property
    def duplicate(self) -> bool:
        return self.status == DUPLICATE

    def to_dict(self) -> dict:
        return {
            "received": True,
            "provider_event_id": self.provider_event_id,
            "status": self.status,
            "order_id": self.order_id,
            "tickets_issued": len(self.ticket_ids),
        }


def _record(db: Session, provider_event_id: str, event_type: str, now: datetime) -> bool:
    db.add(WebhookEvent(provider_event_id=provider_event_id, type=event_type, processed_at=now))
    try:
        db.flush()
    except IntegrityError:
        return False
    return True


def _order_ref(payload: dict) -> tuple[str | None, str | None]:
    metadata = payload.get("metadata") or {}
    order_id = metadata.get("order_id") or payload.get("order_id")
    payment_ref = payload.get("payment_intent") or payload.get("provider_ref")
    if payment_ref is None and payload.get("object") == "payment_intent":
        payment_ref = payload.get("id")
    return order_id, payment_ref


def _on_payment_succeeded(db: Session, outcome: WebhookOutcome, payload: dict, now: datetime) -> None:
    order_id, payment_ref = _order_ref(payload)
    order = find_order(db, order_id=order_id, provider_ref=payment_ref)
    if order is None:
        raise OrderNotFound(order_id or payment_ref)
    outcome.order_id = order.id

    if order.status == ORDER_PENDING:
        mark_paid(db, order, provider_ref=payment_ref, now=now)

    if order.status == ORDER_PAID:
        outcome.ticket_ids = [t.id for t in build_tickets(db, order)]
    elif order.status in (ORDER_FAILED, ORDER_CANCELLED):
        logger.error(
            "payment captured for closed order order_id=%s status=%s payment_ref=%s; manual refund required",
            order.id, order.status, payment_ref,
        )


def _on_payment_failed(db: Session, outcome: WebhookOutcome, payload: dict, now: datetime) -> None:
    order_id, payment_ref = _order_ref(payload)
    order = find_order(db, order_id=order_id, provider_ref=payment_ref)
    if order is None:
        raise OrderNotFound(order_id or payment_ref)
    outcome.order_id = order.id
    mark_failed(db, order, now=now)


def _on_charge_refunded(db: Session, outcome: WebhookOutcome, payload: dict, now: datetime) -> None:
    _, payment_ref = _order_ref(payload)
    refund_ids = [r.get("id") for r in (payload.get("refunds") or {}).get("data") or []]
    record = refunds.reconcile(
        db,
        payment_ref,
        amount_refunded=Decimal(payload.get("amount_refunded", 0)) / 100,
        amount_total=Decimal(payload.get("amount", 0)) / 100,
        provider_refund_id=refund_ids[0] if refund_ids else None,
        now=now,
    )
    if record is not None:
        outcome.order_id = record.order_id


HANDLERS = {
    PAYMENT_SUCCEEDED: _on_payment_succeeded,
    PAYMENT_FAILED: _on_payment_failed,
    CHARGE_REFUNDED: _on_charge_refunded,
}


def _fail_unfulfillable(db: Session, provider_event_id: str, event_type: str, payload: dict, now: datetime) -> WebhookOutcome:
    """Payment arrived after the order's capacity was gone: fail it, keep the event."""
    outcome = WebhookOutcome(provider_event_id, event_type, FAILED)
    try:
        if not _record(db, provider_event_id, event_type, now):
            db.rollback()
            outcome.status = DUPLICATE
            return outcome
        _on_payment_failed(db, outcome, payload, now)
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.error(
        "paid order could not be fulfilled order_id=%s provider_event_id=%s; manual refund required",
        outcome.order_id, provider_event_id,
    )
    return outcome


def handle_event(db: Session, provider_event_id: str, event_type: str, payload: dict, now: datetime | None = None) -> WebhookOutcome:
    now = now or utcnow()
    outcome = WebhookOutcome(provider_event_id, event_type, PROCESSED)
    handler = HANDLERS.get(EVENT_KINDS.get(event_type))

    try:
        if not _record(db, provider_event_id, event_type, now):
            db.rollback()
            logger.info("duplicate webhook provider_event_id=%s type=%s", provider_event_id, event_type)
            outcome.status = DUPLICATE
            return outcome

        if handler is None:
            logger.info("unhandled webhook type=%s provider_event_id=%s", event_type, provider_event_id)
            outcome.status = IGNORED
        else:
            handler(db, outcome, payload, now)
        db.commit()
    except HoldExpired:
        db.rollback()
        return _fail_unfulfillable(db, provider_event_id, event_type, payload, now)
    except Exception:
        db.rollback()
        logger.exception("webhook processing failed provider_event_id=%s type=%s", provider_event_id, event_type)
        raise

    logger.info(
        "webhook processed provider_event_id=%s type=%s order_id=%s tickets=%s",
        provider_event_id, event_type, outcome.order_id, len(outcome.ticket_ids),
    )
    return outcome


def handle_payment_webhook(db: Session, signature: str | None, raw_body: bytes | str, now: datetime | None = None) -> WebhookOutcome:
    settings = get_settings()
    # nothing touches the database until the signature checks out
    event = parse_webhook(raw_body, signature, settings.STRIPE_WEBHOOK_SECRET, settings.WEBHOOK_TOLERANCE_SECONDS)
    payload = (event.get("data") or {}).get("object") or {}
    return handle_event(db, event["id"], event["type"], payload, now=now)
