"""Background sweeper: lapsed holds, lapsed transfers, tickets for ended events."""

import asyncio
from datetime import datetime

from sqlalchemy.orm import Session

from .config import get_settings
from .db import Base, SessionLocal, engine
from .holds import sweep_expired_holds
from .issuer import expire_past_tickets
from .log import get_logger, setup_logging
from .transfers import sweep_expired_transfers

logger = get_logger(__name__)


def run_sweep(db: Session, now: datetime | None = None) -> dict:
    try:
        result = {
            "holds_expired": sweep_expired_holds(db, now=now),
            "transfers_expired": sweep_expired_transfers(db, now=now),
            "tickets_expired": expire_past_tickets(db, now=now),
        }
        db.commit()
    except Exception:
        db.rollback()
        raise
    return result


def sweep_once() -> dict:
    db = SessionLocal()
    try:
        return run_sweep(db)
    finally:
        db.close()


async def main():
    setup_logging()
    Base.metadata.create_all(bind=engine)
    interval = get_settings().SWEEP_INTERVAL_SECONDS
    logger.info("sweeper started interval=%ss", interval)

    while True:
        try:
            result = await asyncio.to_thread(sweep_once)
            if any(result.values()):
                logger.info("sweep %s", " ".join(f"{k}={v}" for k, v in result.items()))
        except Exception:
            # keep the loop alive; the next pass retries
            logger.exception("sweep failed")
        await asyncio.sleep(interval)


if __name__ == "__main__":
    asyncio.run(main())
