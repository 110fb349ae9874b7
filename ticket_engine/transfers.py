"""Peer-to-peer ticket transfers.

    active ticket -> transfer pending -> accepted | declined | cancelled | expired

At most one pending transfer per ticket, enforced by a partial unique index.
Accepting moves ownership and re-signs the ticket's QR token for the new
owner, so the sender's copy stops scanning.
"""

from datetime import datetime, timedelta

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .clock import as_utc, utcnow
from .config import get_settings
from .db import execute_guarded
from .errors import (
    InvalidRequest,
    TicketNotFound,
    TransferAlreadyPending,
    TransferExpired,
    TransferNotAllowed,
    TransferNotAuthorized,
    TransferNotFound,
)
from .log import get_logger
from .models import (
    TICKET_ACTIVE,
    TRANSFER_ACCEPTED,
    TRANSFER_CANCELLED,
    TRANSFER_DECLINED,
    TRANSFER_EXPIRED,
    TRANSFER_PENDING,
    Event,
    Ticket,
    TicketTransfer,
)
from .security import mint_qr_token

logger = get_logger(__name__)

ACCEPT = "accept"
DECLINE = "decline"


def sweep_expired_transfers(db: Session, ticket_id: str | None = None, now: datetime | None = None) -> int:
    now = now or utcnow()
    stmt = update(TicketTransfer).where(
        TicketTransfer.status == TRANSFER_PENDING, TicketTransfer.expires_at <= now
    )
    if ticket_id is not None:
        stmt = stmt.where(TicketTransfer.ticket_id == ticket_id)
    swept = execute_guarded(db, stmt.values(status=TRANSFER_EXPIRED, responded_at=now))
    if swept:
        logger.info("transfers expired count=%s", swept)
    return swept


def get_transfer(db: Session, transfer_id: str) -> TicketTransfer:
    transfer = db.get(TicketTransfer, transfer_id)
    if transfer is None:
        raise TransferNotFound(transfer_id)
    return transfer


def create_transfer(
    db: Session,
    from_user_id: str,
    to_user_id: str,
    ticket_id: str,
    ttl_hours: int | None = None,
    message: str | None = None,
    now: datetime | None = None,
) -> TicketTransfer:
    now = now or utcnow()
    ttl = ttl_hours if ttl_hours is not None else get_settings().TRANSFER_TTL_HOURS
    if ttl < 1:
        raise InvalidRequest("ttl_hours must be positive")

    try:
        ticket = db.get(Ticket, ticket_id)
        if ticket is None:
            raise TicketNotFound(ticket_id)
        if ticket.user_id != from_user_id:
            raise TransferNotAuthorized("Ticket is not owned by this user")
        if to_user_id == from_user_id:
            raise TransferNotAllowed("Cannot transfer a ticket to yourself")
        if ticket.status != TICKET_ACTIVE:
            raise TransferNotAllowed("Ticket cannot be transferred", ticket_status=ticket.status)
        event = db.get(Event, ticket.event_id)
        if event is not None and as_utc(event.starts_at) <= now:
            raise TransferNotAllowed("Event has already started")

        sweep_expired_transfers(db, ticket_id=ticket_id, now=now)
        pending = db.execute(
            select(TicketTransfer.id).where(
                TicketTransfer.ticket_id == ticket_id, TicketTransfer.status == TRANSFER_PENDING
            )
        ).first()
        if pending:
            raise TransferAlreadyPending(ticket_id)

        transfer = TicketTransfer(
            ticket_id=ticket_id,
            from_user_id=from_user_id,
            to_user_id=to_user_id,
            status=TRANSFER_PENDING,
            message=message,
            expires_at=now + timedelta(hours=ttl),
            created_at=now,
        )
        db.add(transfer)
        try:
            db.flush()
        except IntegrityError:
            raise TransferAlreadyPending(ticket_id) from None
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(
        "transfer created transfer_id=%s ticket_id=%s from=%s to=%s",
        transfer.id, ticket_id, from_user_id, to_user_id,
    )
    return transfer


def _close(db: Session, transfer: TicketTransfer, new_status: str, now: datetime) -> bool:
    won = execute_guarded(
        db,
        update(TicketTransfer)
        .where(
            TicketTransfer.id == transfer.id,
            TicketTransfer.status == TRANSFER_PENDING,
            TicketTransfer.expires_at > now,
        )
        .values(status=new_status, responded_at=now),
    )
    db.refresh(transfer)
    return bool(won)


def _explain_failed_close(db: Session, transfer: TicketTransfer, now: datetime) -> None:
    """The guarded close matched nothing: raise the reason, expiring the row if that is it."""
    if transfer.status == TRANSFER_PENDING:
        sweep_expired_transfers(db, ticket_id=transfer.ticket_id, now=now)
        db.commit()
        raise TransferExpired(transfer.id)
    if transfer.status == TRANSFER_EXPIRED:
        raise TransferExpired(transfer.id)
    raise TransferNotAllowed("Transfer is no longer pending", transfer_status=transfer.status)


def _accept(db: Session, transfer: TicketTransfer, now: datetime) -> None:
    ticket = db.get(Ticket, transfer.ticket_id)
    if ticket is None:
        raise TicketNotFound(transfer.ticket_id)

    token = mint_qr_token(
        ticket.id, ticket.event_id, ticket.tier_id, transfer.to_user_id, get_settings().TICKET_SIGNING_SECRET
    )
    moved = execute_guarded(
        db,
        update(Ticket)
        .where(
            Ticket.id == ticket.id,
            Ticket.user_id == transfer.from_user_id,
            Ticket.status == TICKET_ACTIVE,
        )
        .values(user_id=transfer.to_user_id, qr_token=token),
    )
    if not moved:
        # sender no longer holds an active ticket (used, refunded or moved)
        raise TransferNotAuthorized("Ticket is no longer transferable by the sender")
    db.refresh(ticket)


def respond_to_transfer(
    db: Session, transfer_id: str, user_id: str, action: str, now: datetime | None = None
) -> TicketTransfer:
    if action not in (ACCEPT, DECLINE):
        raise InvalidRequest("action must be 'accept' or 'decline'")
    now = now or utcnow()

    try:
        transfer = get_transfer(db, transfer_id)
        if transfer.to_user_id != user_id:
            raise TransferNotAuthorized("Only the recipient can respond to this transfer")

        new_status = TRANSFER_ACCEPTED if action == ACCEPT else TRANSFER_DECLINED
        if not _close(db, transfer, new_status, now):
            _explain_failed_close(db, transfer, now)
        if action == ACCEPT:
            _accept(db, transfer, now)
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info("transfer %s transfer_id=%s ticket_id=%s by=%s", new_status, transfer.id, transfer.ticket_id, user_id)
    return transfer


def cancel_transfer(db: Session, transfer_id: str, user_id: str, now: datetime | None = None) -> TicketTransfer:
    now = now or utcnow()
    try:
        transfer = get_transfer(db, transfer_id)
        if transfer.from_user_id != user_id:
            raise TransferNotAuthorized("Only the sender can cancel this transfer")
        if not _close(db, transfer, TRANSFER_CANCELLED, now):
            _explain_failed_close(db, transfer, now)
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info("transfer cancelled transfer_id=%s ticket_id=%s", transfer.id, transfer.ticket_id)
    return transfer


def list_transfers(db: Session, user_id: str, status: str | None = None, now: datetime | None = None) -> dict:
    try:
        sweep_expired_transfers(db, now=now)
        q = select(TicketTransfer).where(
            or_(TicketTransfer.from_user_id == user_id, TicketTransfer.to_user_id == user_id)
        )
        if status:
            q = q.where(TicketTransfer.status == status)
        q = q.order_by(TicketTransfer.created_at.desc()).execution_options(populate_existing=True)
        rows = db.execute(q).scalars().all()
        db.commit()
    except Exception:
        db.rollback()
        raise

    incoming = [t for t in rows if t.to_user_id == user_id]
    outgoing = [t for t in rows if t.from_user_id == user_id]
    stats = {
        "total": len(rows),
        "incoming": len(incoming),
        "outgoing": len(outgoing),
        "pending_incoming": sum(1 for t in incoming if t.status == TRANSFER_PENDING),
        "pending_outgoing": sum(1 for t in outgoing if t.status == TRANSFER_PENDING),
    }
    return {"incoming": incoming, "outgoing": outgoing, "stats": stats}
