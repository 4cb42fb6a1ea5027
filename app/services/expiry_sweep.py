# app/services/expiry_sweep.py

import asyncio
import logging
from datetime import datetime

from app.core.config import settings
from app.core.exceptions import SweepItemFailure
from app.core.redis import acquire_lock, release_lock
from app.crud import deal as crud_deal
from app.db.session import SessionLocal
from app.services import lifecycle
from app.services.dispatch import dispatch_events
from app.services.events import DealEvent, DealEventBuffer
from app.utils.clock import utcnow

logger = logging.getLogger(__name__)

SWEEP_LOCK_NAME = "flash_deal_sweep_lock"

# Обработки, пережившие таймаут прохода. Ссылки держим до их завершения
_pending_resolutions: set[asyncio.Task] = set()


def resolve_expired_deal(deal_id: int, now: datetime | None = None) -> tuple[str | None, list[DealEvent]]:
    """
    Разрешает одну истекшую акцию в собственной сессии и транзакции.
    Возвращает итог ('activated', 'expired' или None) и события для рассылки.
    """
    events = DealEventBuffer()
    with SessionLocal() as db:
        try:
            deal = crud_deal.lock_deal(db, deal_id)
            if deal is None:
                db.rollback()
                return None, []
            outcome = lifecycle.expire(db, deal, events, now=now or utcnow())
            db.commit()
        except Exception as e:
            db.rollback()
            raise SweepItemFailure(f"Deal {deal_id}: {e}", deal_id=deal_id) from e
    return outcome, events.events


async def _finish_late_resolution(deal_id: int, resolution: asyncio.Future):
    """
    Дожидается обработки, не уложившейся в таймаут прохода.
    Поток с транзакцией не прерывается: если он закоммитил, его события рассылаются здесь.
    """
    try:
        outcome, events = await resolution
    except SweepItemFailure as e:
        logger.error(f"Late resolution of deal {deal_id} failed: {e.message}")
        return
    logger.warning(f"Deal {deal_id}: late expiry finished with outcome '{outcome}', dispatching its events.")
    await dispatch_events(events)


async def wait_for_pending_resolutions():
    """Ждет завершения всех запоздавших обработок (используется при остановке приложения)."""
    if _pending_resolutions:
        await asyncio.gather(*list(_pending_resolutions), return_exceptions=True)


async def run_expiry_sweep(now: datetime | None = None) -> dict:
    """
    Периодический проход по живым акциям с истекшим таймером.
    Одновременно работает только один экземпляр (блокировка в Redis).
    Ошибка или таймаут одной акции не останавливает проход.
    """
    summary = {"checked": 0, "activated": 0, "expired": 0, "skipped": 0, "failed": 0}

    lock = await acquire_lock(SWEEP_LOCK_NAME, settings.SWEEP_LOCK_TTL_SECONDS)
    if not lock:
        logger.info("Expiry sweep is already running in another worker. Skipping.")
        return summary

    logger.info("--- Starting scheduled job: Flash Deal Expiry Sweep ---")
    try:
        now = now or utcnow()
        with SessionLocal() as db:
            deal_ids = crud_deal.get_live_deal_ids_past_expiry(db, now)

        if not deal_ids:
            logger.info("No expired live deals found.")
            return summary

        logger.info(f"Found {len(deal_ids)} live deals past expiry to process.")
        for deal_id in deal_ids:
            summary["checked"] += 1
            resolution = asyncio.ensure_future(asyncio.to_thread(resolve_expired_deal, deal_id, now))
            try:
                outcome, events = await asyncio.wait_for(
                    asyncio.shield(resolution), timeout=settings.SWEEP_DEAL_TIMEOUT_SECONDS
                )
            except asyncio.TimeoutError:
                summary["failed"] += 1
                logger.error(
                    f"Deal {deal_id}: expiry timed out after {settings.SWEEP_DEAL_TIMEOUT_SECONDS}s, "
                    f"moving on. Its events are dispatched if the transaction still commits."
                )
                late = asyncio.create_task(_finish_late_resolution(deal_id, resolution))
                _pending_resolutions.add(late)
                late.add_done_callback(_pending_resolutions.discard)
                continue
            except SweepItemFailure as e:
                summary["failed"] += 1
                logger.error(f"Failed to resolve expired deal {deal_id}: {e.message}", exc_info=True)
                continue

            if outcome is None:
                summary["skipped"] += 1
            else:
                summary[outcome] += 1
            await dispatch_events(events)

    finally:
        await release_lock(lock)
        logger.info(f"--- Finished scheduled job: Flash Deal Expiry Sweep {summary} ---")
    return summary
