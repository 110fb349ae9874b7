"""Organizer tooling: seed events, tiers and promo codes; inspect scans; run a sweep."""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .clock import as_utc
from .config import get_settings
from .deps import get_db
from .errors import InvalidRequest
from .log import get_logger
from .models import ACCESS_LEVELS, AuditLog, Event, PromoCode, Ticket, TicketTier
from .serializers import ticket_out, tier_out
from .worker import run_sweep

logger = get_logger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])

DISCOUNT_TYPES = ("percentage", "fixed")


def _event_out(e: Event) -> dict:
    return {
        "event_id": e.id,
        "name": e.name,
        "org_id": e.org_id,
        "starts_at": as_utc(e.starts_at).isoformat(),
        "ends_at": as_utc(e.ends_at).isoformat() if e.ends_at else None,
    }


# -------------------------
# Events + tiers
# -------------------------
class CreateEventReq(BaseModel):
    name: str
    starts_at: datetime
    ends_at: datetime | None = None
    org_id: str = "org_1"


@router.post("/events", status_code=201)
def create_event(req: CreateEventReq, db: Session = Depends(get_db)):
    if req.ends_at and req.ends_at <= req.starts_at:
        raise InvalidRequest("ends_at must be after starts_at")

    ev = Event(name=req.name, org_id=req.org_id, starts_at=req.starts_at, ends_at=req.ends_at)
    db.add(ev)
    db.commit()
    logger.info("event created event_id=%s name=%s", ev.id, ev.name)
    return _event_out(ev)


@router.get("/events")
def list_events(db: Session = Depends(get_db)):
    rows = db.execute(select(Event).order_by(Event.starts_at)).scalars().all()
    return [_event_out(e) for e in rows]


class CreateTierReq(BaseModel):
    name: str
    price: Decimal
    total_quantity: int
    currency: str | None = None
    access_level: str = "general"


@router.post("/events/{event_id}/tiers", status_code=201)
def create_tier(event_id: str, req: CreateTierReq, db: Session = Depends(get_db)):
    if db.get(Event, event_id) is None:
        raise InvalidRequest("Unknown event", event_id=event_id)
    if req.total_quantity < 1:
        raise InvalidRequest("total_quantity must be positive")
    if req.price < 0:
        raise InvalidRequest("price must not be negative")
    if req.access_level not in ACCESS_LEVELS:
        raise InvalidRequest("access_level must be one of " + ", ".join(ACCESS_LEVELS))

    tier = TicketTier(
        event_id=event_id,
        name=req.name,
        price=req.price,
        currency=(req.currency or get_settings().DEFAULT_CURRENCY).upper(),
        total_quantity=req.total_quantity,
        sold_quantity=0,
        held_quantity=0,
        access_level=req.access_level,
    )
    db.add(tier)
    db.commit()
    logger.info("tier created tier_id=%s event_id=%s total=%s", tier.id, event_id, tier.total_quantity)
    return tier_out(tier)


@router.get("/events/{event_id}/tickets")
def list_tickets(event_id: str, limit: int = 500, db: Session = Depends(get_db)):
    tickets = db.execute(
        select(Ticket).where(Ticket.event_id == event_id).order_by(Ticket.created_at).limit(limit)
    ).scalars().all()
    return [ticket_out(t) for t in tickets]


# -------------------------
# Promo codes
# -------------------------
class CreatePromoReq(BaseModel):
    code: str
    discount_type: str
    discount_value: Decimal
    event_id: Optional[str] = None
    max_uses: Optional[int] = None
    expires_at: Optional[datetime] = None


@router.post("/promo-codes", status_code=201)
def create_promo(req: CreatePromoReq, db: Session = Depends(get_db)):
    if req.discount_type not in DISCOUNT_TYPES:
        raise InvalidRequest("discount_type must be 'percentage' or 'fixed'")
    if req.discount_value <= 0 or (req.discount_type == "percentage" and req.discount_value > 100):
        raise InvalidRequest("discount_value out of range")

    promo = PromoCode(
        code=req.code,
        event_id=req.event_id,
        discount_type=req.discount_type,
        discount_value=req.discount_value,
        max_uses=req.max_uses,
        used_count=0,
        expires_at=req.expires_at,
    )
    db.add(promo)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise InvalidRequest("Promo code already exists", code=req.code)
    return {"promo_code_id": promo.id, "code": promo.code}


# -------------------------
# Logs + maintenance
# -------------------------
@router.get("/audit")
def get_audit(limit: int = 80, event_id: Optional[str] = None, db: Session = Depends(get_db)):
    q = db.query(AuditLog, Event).join(Event, Event.id == AuditLog.event_id, isouter=True)
    if event_id:
        q = q.filter(AuditLog.event_id == event_id)
    rows = q.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(limit).all()

    out = []
    for log, ev in rows:
        out.append({
            "created_at": str(log.created_at),
            "ticket_id": log.ticket_id,
            "event_id": log.event_id,
            "event_name": ev.name if ev else None,
            "status": log.status,
            "reason_code": log.reason_code,
            "decision_id": log.decision_id,
        })
    return out


@router.post("/sweep")
def sweep(db: Session = Depends(get_db)):
    return run_sweep(db)
