# app/services/rescue.py

import logging
from datetime import datetime, timedelta

from app.core.config import settings
from app.models.deal import Deal
from app.services.events import DealEventBuffer, DealEventType

logger = logging.getLogger(__name__)


def qualifies_for_rescue(deal: Deal, now: datetime) -> bool:
    """
    Акция "почти получилась": набрано >= 80% цели, до конца < 5 минут,
    и цель еще не достигнута.
    """
    if not deal.target_claims or deal.current_claims >= deal.target_claims:
        return False
    if deal.current_claims * 100 < settings.RESCUE_THRESHOLD_PERCENT * deal.target_claims:
        return False
    time_left = deal.expires_at - now
    return time_left < timedelta(minutes=settings.RESCUE_WINDOW_MINUTES)


def apply_rescue(deal: Deal, now: datetime, events: DealEventBuffer) -> list[str]:
    """
    Две независимые одноразовые меры: продление времени и бонусная скидка.
    Каждая защищена своим флагом и больше не срабатывает после первого раза.
    Возвращает список примененных мер.
    """
    if deal.rescue_extended and deal.rescue_bonus_added:
        return []
    if not qualifies_for_rescue(deal, now):
        return []

    applied = []

    if not deal.rescue_extended:
        minutes = deal.rescue_extension_minutes or settings.RESCUE_EXTENSION_MINUTES
        old_expires_at = deal.expires_at
        deal.expires_at = deal.expires_at + timedelta(minutes=minutes)
        deal.rescue_extended = True
        deal.rescue_extended_at = now
        applied.append("extended")
        events.emit(
            DealEventType.RESCUE_EXTENDED, deal.id,
            minutes=minutes,
            expires_at=deal.expires_at.isoformat(),
        )
        logger.info(f"Deal {deal.id}: rescue extension +{minutes} min ({old_expires_at} -> {deal.expires_at}).")

    if not deal.rescue_bonus_added:
        bonus = deal.rescue_bonus_percent or settings.RESCUE_BONUS_PERCENT
        deal.original_discount_percent = deal.discount_percent
        # Потолок скидки не должен опускать текущую скидку
        new_discount = max(
            deal.discount_percent,
            min(deal.discount_percent + bonus, settings.MAX_DISCOUNT_PERCENT)
        )
        deal.discount_percent = new_discount
        deal.rescue_bonus_added = True
        applied.append("bonus")
        events.emit(
            DealEventType.RESCUE_BONUS, deal.id,
            bonus_percent=new_discount - deal.original_discount_percent,
            discount_percent=new_discount,
            original_discount_percent=deal.original_discount_percent,
        )
        logger.info(
            f"Deal {deal.id}: rescue bonus {deal.original_discount_percent}% -> {new_discount}%."
        )

    return applied
