# app/services/deal_launcher.py
import logging
from datetime import datetime

from app.core.config import settings
from app.core.redis import acquire_lock, release_lock
from app.crud import deal as crud_deal
from app.db.session import SessionLocal
from app.services import lifecycle
from app.services.dispatch import dispatch_events
from app.services.events import DealEventBuffer
from app.utils.clock import utcnow

logger = logging.getLogger(__name__)

LAUNCH_LOCK_NAME = "flash_deal_launch_lock"


async def launch_scheduled_deals_task(now: datetime | None = None) -> int:
    """Переводит в live запланированные акции, время старта которых наступило."""
    lock = await acquire_lock(LAUNCH_LOCK_NAME, settings.SWEEP_LOCK_TTL_SECONDS)
    if not lock:
        logger.info("Deal launcher is already running in another worker. Skipping.")
        return 0

    logger.info("--- Starting scheduled job: Launch Scheduled Flash Deals ---")
    launched = 0
    try:
        now = now or utcnow()
        with SessionLocal() as db:
            deal_ids = crud_deal.get_scheduled_deal_ids_ready_to_launch(db, now)

        for deal_id in deal_ids:
            events = DealEventBuffer()
            with SessionLocal() as db:
                try:
                    deal = crud_deal.lock_deal(db, deal_id)
                    if deal is not None and lifecycle.go_live(db, deal, events, now=now):
                        launched += 1
                    db.commit()
                except Exception:
                    logger.error(f"Failed to launch deal {deal_id}", exc_info=True)
                    db.rollback()
                    continue
            await dispatch_events(events.events)
    finally:
        await release_lock(lock)
        logger.info(f"--- Finished scheduled job: Launch Scheduled Flash Deals ({launched} launched) ---")
    return launched
