# app/services/lifecycle.py

import logging
from datetime import datetime

from sqlalchemy.orm import Session

from app.crud import claim as crud_claim
from app.models.deal import Deal, DealStatus
from app.services.analytics import compute_deal_analytics
from app.services.coupon import CouponCodeGenerator
from app.services.events import DealEventBuffer, DealEventType
from app.utils.clock import utcnow

logger = logging.getLogger(__name__)

# Все функции ниже ожидают, что строка акции уже заблокирована (crud_deal.lock_deal)
# и что commit выполнит вызывающий код.


def go_live(db: Session, deal: Deal, events: DealEventBuffer, now: datetime | None = None) -> bool:
    """scheduled -> live. Возвращает False, если акция уже не в статусе scheduled."""
    if deal.status != DealStatus.SCHEDULED:
        logger.info(f"Deal {deal.id}: go_live skipped, status is '{deal.status.value}'.")
        return False
    now = now or utcnow()
    deal.transition_to(DealStatus.LIVE)
    events.emit(DealEventType.DEAL_LIVE, deal.id)
    logger.info(f"Deal {deal.id} is LIVE (expires at {deal.expires_at}, started {now}).")
    return True


def activate(db: Session, deal: Deal, events: DealEventBuffer, now: datetime | None = None) -> bool:
    """
    live -> activated и выдача купонов всем участникам без кода.
    Идемпотентна: повторный вызов (из прохода истечения или параллельной заявки)
    видит терминальный статус и ничего не делает.
    """
    if deal.status != DealStatus.LIVE:
        logger.info(f"Deal {deal.id}: activation skipped, status is '{deal.status.value}'.")
        return False

    now = now or utcnow()
    deal.transition_to(DealStatus.ACTIVATED)
    deal.activated_at = now

    # Новая заявка могла быть еще не сброшена в БД
    db.flush()
    generator = CouponCodeGenerator(db)
    claims = crud_claim.get_claims_without_coupon(db, deal.id)
    for claim in claims:
        claim.coupon_code = generator.generate(deal.coupon_prefix)
    db.flush()

    events.emit(
        DealEventType.ACTIVATED, deal.id,
        claims=deal.current_claims,
        coupons_issued=len(claims),
    )
    logger.info(
        f"Deal {deal.id} ACTIVATED: {deal.current_claims}/{deal.target_claims} claims, "
        f"{len(claims)} coupons issued."
    )
    return True


def expire(db: Session, deal: Deal, events: DealEventBuffer, now: datetime | None = None) -> str | None:
    """
    Разрешает гонку "цель против таймера" для живой акции с истекшим временем.
    Возвращает 'activated', 'expired' или None, если делать нечего.
    """
    if deal.status != DealStatus.LIVE:
        logger.info(f"Deal {deal.id}: expiry skipped, status is '{deal.status.value}'.")
        return None

    now = now or utcnow()

    # Цель могла быть достигнута между выборкой и обработкой: такую акцию активируем
    if deal.current_claims >= deal.target_claims:
        logger.info(f"Deal {deal.id}: target reached at the last second, activating instead of expiring.")
        activate(db, deal, events, now=now)
        return DealStatus.ACTIVATED.value

    # Таймер мог быть продлен режимом "спасения" уже после выборки
    if deal.expires_at > now:
        logger.info(f"Deal {deal.id}: timer was extended to {deal.expires_at}, not expiring yet.")
        return None

    deal.transition_to(DealStatus.EXPIRED)
    deal.expired_at = now

    claims = crud_claim.get_deal_claims(db, deal.id)
    analytics = compute_deal_analytics(deal, claims)

    events.emit(
        DealEventType.EXPIRED, deal.id,
        shortfall=analytics.shortfall,
        analytics=analytics.model_dump(),
    )
    logger.info(
        f"Deal {deal.id} EXPIRED: {deal.current_claims}/{deal.target_claims} claims, "
        f"shortfall {analytics.shortfall}."
    )
    return DealStatus.EXPIRED.value


def cancel(db: Session, deal: Deal, reason: str, events: DealEventBuffer, now: datetime | None = None) -> None:
    """scheduled | live -> cancelled. Купоны не выдаются, заявки остаются как история."""
    deal.transition_to(DealStatus.CANCELLED)
    deal.cancelled_at = now or utcnow()
    deal.cancel_reason = reason
    events.emit(DealEventType.CANCELLED, deal.id, reason=reason)
    logger.info(f"Deal {deal.id} CANCELLED: {reason}")
