"""Gate scanning: offline token check, then a one-shot active -> used flip."""

import uuid
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import update
from sqlalchemy.orm import Session

from .clock import utcnow
from .config import get_settings
from .db import execute_guarded, expire_cached
from .log import get_logger
from .models import TICKET_ACTIVE, TICKET_USED, AuditLog, Ticket
from .security import verify_qr_token

logger = get_logger(__name__)

ACCEPTED = "ACCEPTED"
REJECTED = "REJECTED"


@dataclass
class ScanDecision:
    status: str
    reason_code: str
    ticket_id: str | None
    decision_id: str

    @classmethod
    def rejected(cls, reason_code: str, ticket_id: str | None = None) -> "ScanDecision":
        return cls(REJECTED, reason_code, ticket_id, str(uuid.uuid4()))

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "reason_code": self.reason_code,
            "ticket_id": self.ticket_id,
            "decision_id": self.decision_id,
        }


def _decide(db: Session, qr_token: str, event_id: str, now: datetime) -> tuple[str, str, str | None]:
    try:
        payload = verify_qr_token(qr_token, get_settings().TICKET_SIGNING_SECRET)
    except ValueError as e:
        return REJECTED, str(e), None

    ticket_id = payload["ticket_id"]
    if payload["event_id"] != event_id:
        return REJECTED, "WRONG_EVENT", ticket_id

    used = execute_guarded(
        db,
        update(Ticket)
        .where(
            Ticket.id == ticket_id,
            Ticket.event_id == event_id,
            Ticket.user_id == payload["user_id"],
            Ticket.status == TICKET_ACTIVE,
        )
        .values(status=TICKET_USED, used_at=now),
    )
    expire_cached(db, Ticket, ticket_id)
    if used:
        return ACCEPTED, "OK", ticket_id

    ticket = db.get(Ticket, ticket_id)
    if ticket is None:
        return REJECTED, "NOT_FOUND", ticket_id
    if ticket.user_id != payload["user_id"]:
        return REJECTED, "STALE_TOKEN", ticket_id
    if ticket.status == TICKET_USED:
        return REJECTED, "ALREADY_USED", ticket_id
    return REJECTED, "NOT_ACTIVE", ticket_id


def scan_ticket(
    db: Session, qr_token: str, event_id: str, ip: str = "unknown", user_agent: str = "", now: datetime | None = None
) -> ScanDecision:
    now = now or utcnow()
    decision_id = str(uuid.uuid4())
    try:
        status, reason, ticket_id = _decide(db, qr_token, event_id, now)
        db.add(AuditLog(
            decision_id=decision_id,
            ip=ip,
            user_agent=user_agent,
            event_id=event_id,
            ticket_id=ticket_id,
            status=status,
            reason_code=reason,
        ))
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info("scan decision_id=%s ticket_id=%s status=%s reason=%s", decision_id, ticket_id, status, reason)
    return ScanDecision(status, reason, ticket_id, decision_id)


def audit_rejection(db: Session, decision: ScanDecision, event_id: str, ip: str, user_agent: str) -> None:
    """Record a decision made before the database was consulted (rate limiting)."""
    try:
        db.add(AuditLog(
            decision_id=decision.decision_id,
            ip=ip,
            user_agent=user_agent,
            event_id=event_id,
            ticket_id=decision.ticket_id,
            status=decision.status,
            reason_code=decision.reason_code,
        ))
        db.commit()
    except Exception:
        db.rollback()
        raise
