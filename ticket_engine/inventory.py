"""Inventory ledger for ticket tiers.

Every mutation is one conditional UPDATE whose WHERE clause carries the
capacity guard; the row count tells us whether the guard held. Nothing here
reads a count and then writes it back.
"""

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from .db import execute_guarded, expire_cached
from .errors import InsufficientInventory, TierNotFound
from .log import get_logger
from .models import TicketTier

logger = get_logger(__name__)

_AVAILABLE = TicketTier.total_quantity - TicketTier.sold_quantity - TicketTier.held_quantity


def _rowcount(db: Session, tier_id: str, stmt) -> int:
    count = execute_guarded(db, stmt)
    expire_cached(db, TicketTier, tier_id)
    return count


def try_reserve(db: Session, tier_id: str, qty: int) -> None:
    stmt = (
        update(TicketTier)
        .where(TicketTier.id == tier_id, TicketTier.is_active.is_(True), _AVAILABLE >= qty)
        .values(held_quantity=TicketTier.held_quantity + qty)
    )
    if _rowcount(db, tier_id, stmt) != 1:
        raise InsufficientInventory(tier_id, qty)


def release(db: Session, tier_id: str, qty: int) -> None:
    stmt = (
        update(TicketTier)
        .where(TicketTier.id == tier_id, TicketTier.held_quantity >= qty)
        .values(held_quantity=TicketTier.held_quantity - qty)
    )
    if _rowcount(db, tier_id, stmt) != 1:
        # a hold row was released twice; the hold CAS should make this unreachable
        logger.error("ledger release underflow tier_id=%s qty=%s", tier_id, qty)


def commit_sale(db: Session, tier_id: str, qty: int) -> None:
    """Move held units to sold. Total committed capacity does not change."""
    stmt = (
        update(TicketTier)
        .where(TicketTier.id == tier_id, TicketTier.held_quantity >= qty)
        .values(
            held_quantity=TicketTier.held_quantity - qty,
            sold_quantity=TicketTier.sold_quantity + qty,
        )
    )
    if _rowcount(db, tier_id, stmt) != 1:
        raise InsufficientInventory(tier_id, qty)


def sell_available(db: Session, tier_id: str, qty: int) -> None:
    """Sell straight from free capacity, for payments whose hold already lapsed."""
    stmt = (
        update(TicketTier)
        .where(TicketTier.id == tier_id, _AVAILABLE >= qty)
        .values(sold_quantity=TicketTier.sold_quantity + qty)
    )
    if _rowcount(db, tier_id, stmt) != 1:
        raise InsufficientInventory(tier_id, qty)


def get_tier(db: Session, tier_id: str, active_only: bool = False) -> TicketTier:
    tier = db.get(TicketTier, tier_id)
    if tier is None or (active_only and not tier.is_active):
        raise TierNotFound(tier_id)
    return tier


def snapshot(db: Session, tier_id: str) -> dict:
    row = db.execute(
        select(
            TicketTier.total_quantity,
            TicketTier.sold_quantity,
            TicketTier.held_quantity,
        ).where(TicketTier.id == tier_id)
    ).one_or_none()
    if row is None:
        raise TierNotFound(tier_id)
    total, sold, held = row
    return {
        "tier_id": tier_id,
        "total": total,
        "sold": sold,
        "held": held,
        "available": total - sold - held,
    }
