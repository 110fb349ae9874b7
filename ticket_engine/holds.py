"""Cart holds: short-lived claims on tier capacity.

Expiry is enforced lazily (every inventory read sweeps first) and by the
background worker, so a lapsed hold never keeps capacity for long.
"""

from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from . import inventory
from .clock import utcnow
from .config import get_settings
from .db import execute_guarded
from .errors import HoldNotFound, InvalidRequest
from .log import get_logger
from .models import CartHold

logger = get_logger(__name__)

RELEASED = "released"
EXPIRED = "expired"
CONSUMED = "consumed"
ORDER_CLOSED = "order_closed"


def _close_hold(db: Session, hold: CartHold, reason: str, now: datetime) -> bool:
    """Flip one hold to released. Only the caller that wins the flip gives capacity back."""
    won = execute_guarded(
        db,
        update(CartHold)
        .where(CartHold.id == hold.id, CartHold.released.is_(False))
        .values(released=True, released_at=now, release_reason=reason),
    )
    db.refresh(hold)
    if not won:
        return False
    if reason != CONSUMED:
        inventory.release(db, hold.tier_id, hold.quantity)
    return True


def sweep_expired_holds(db: Session, tier_id: str | None = None, now: datetime | None = None) -> int:
    now = now or utcnow()
    q = select(CartHold).where(CartHold.released.is_(False), CartHold.expires_at < now)
    if tier_id is not None:
        q = q.where(CartHold.tier_id == tier_id)

    swept = 0
    for hold in db.execute(q).scalars().all():
        if _close_hold(db, hold, EXPIRED, now):
            swept += 1
            logger.info("hold expired hold_id=%s tier_id=%s qty=%s", hold.id, hold.tier_id, hold.quantity)
    return swept


def create_hold(
    db: Session,
    user_id: str,
    tier_id: str,
    quantity: int,
    ttl_minutes: int | None = None,
    now: datetime | None = None,
) -> CartHold:
    settings = get_settings()
    now = now or utcnow()
    ttl = ttl_minutes if ttl_minutes is not None else settings.HOLD_TTL_MINUTES

    if quantity < 1 or quantity > settings.MAX_HOLD_QUANTITY:
        raise InvalidRequest(f"quantity must be between 1 and {settings.MAX_HOLD_QUANTITY}")
    if ttl < 1:
        raise InvalidRequest("ttl_minutes must be positive")

    try:
        inventory.get_tier(db, tier_id, active_only=True)
        sweep_expired_holds(db, tier_id=tier_id, now=now)
        inventory.try_reserve(db, tier_id, quantity)

        hold = CartHold(
            user_id=user_id,
            tier_id=tier_id,
            quantity=quantity,
            expires_at=now + timedelta(minutes=ttl),
            released=False,
        )
        db.add(hold)
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info("hold created hold_id=%s user_id=%s tier_id=%s qty=%s", hold.id, user_id, tier_id, quantity)
    return hold


def release_hold(db: Session, hold_id: str, now: datetime | None = None) -> CartHold:
    """Give a hold back. Releasing twice is a no-op."""
    hold = db.get(CartHold, hold_id)
    if hold is None:
        raise HoldNotFound(hold_id)

    try:
        released = _close_hold(db, hold, RELEASED, now or utcnow())
        db.commit()
    except Exception:
        db.rollback()
        raise

    if released:
        logger.info("hold released hold_id=%s tier_id=%s qty=%s", hold.id, hold.tier_id, hold.quantity)
    return hold


def availability(db: Session, tier_id: str, now: datetime | None = None) -> dict:
    try:
        inventory.get_tier(db, tier_id)
        sweep_expired_holds(db, tier_id=tier_id, now=now)
        snap = inventory.snapshot(db, tier_id)
        db.commit()
    except Exception:
        db.rollback()
        raise
    return snap


# --- helpers used by the order state machine (no commit) ---

def release_for_order(db: Session, order_id: str, now: datetime) -> int:
    holds = db.execute(select(CartHold).where(CartHold.order_id == order_id)).scalars().all()
    return sum(1 for h in holds if _close_hold(db, h, ORDER_CLOSED, now))


def consume_hold(db: Session, hold: CartHold, now: datetime) -> bool:
    """Mark a hold used by a paid order. False when it had already lapsed."""
    return _close_hold(db, hold, CONSUMED, now)
