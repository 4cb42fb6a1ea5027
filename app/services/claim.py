# app/services/claim.py

import asyncio
import logging
from datetime import datetime

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import (
    AlreadyClaimed, ConcurrencyConflict, DealExpired, DealNotFound, DealNotLive,
    DealValidationError, FlashDealError
)
from app.crud import claim as crud_claim
from app.crud import deal as crud_deal
from app.crud import user as crud_user
from app.models.claim import DealClaim
from app.models.deal import Deal, DealStatus
from app.schemas.deal import ClaimResult
from app.services import lifecycle
from app.services.chain import evaluate_chain_tiers
from app.services.dispatch import dispatch_events
from app.services.events import DealEvent, DealEventBuffer, DealEventType
from app.services.rescue import apply_rescue
from app.services.surprise import revealed_content
from app.utils.clock import utcnow

logger = logging.getLogger(__name__)


def _record_milestones(deal: Deal, claim: DealClaim, events: DealEventBuffer, announce: bool) -> list[int]:
    """
    Отмечает все пороги прогресса <= текущего процента, о которых еще не сообщали.
    Проверяем "<=", а не равенство: заявка может перескочить порог (24% -> 26%).
    """
    already = set(deal.milestones_notified or [])
    crossed = [
        threshold for threshold in sorted(settings.MILESTONE_THRESHOLDS)
        if threshold not in already and deal.current_claims * 100 >= threshold * deal.target_claims
    ]
    if not crossed:
        return []

    # Присваиваем новые списки, чтобы SQLAlchemy увидел изменение JSON-поля
    deal.milestones_notified = sorted(already | set(crossed))
    claim.milestone_notifications_sent = sorted(set(claim.milestone_notifications_sent or []) | set(crossed))

    if announce:
        for threshold in crossed:
            events.emit(
                DealEventType.MILESTONE, deal.id,
                percent=threshold,
                current_claims=deal.current_claims,
                target_claims=deal.target_claims,
            )
    return crossed


def admit_claim(
    db: Session,
    deal_id: int,
    customer_id: int,
    referred_by: int | None = None,
    claim_source: str | None = None,
    now: datetime | None = None,
) -> tuple[DealClaim, Deal, DealEventBuffer]:
    """
    Регистрирует одну заявку под блокировкой строки акции.
    Ничего не коммитит: commit (и снятие блокировки) делает вызывающий код.
    """
    events = DealEventBuffer()
    now = now or utcnow()

    # Шаг 0: БЛОКИРУЕМ строку акции. Все проверки ниже видят актуальный счетчик.
    deal = crud_deal.lock_deal(db, deal_id)
    if deal is None:
        raise DealNotFound(f"Deal {deal_id} not found.", deal_id=deal_id)
    if deal.status != DealStatus.LIVE:
        raise DealNotLive(f"Deal {deal_id} is '{deal.status.value}', not accepting claims.", deal_id=deal_id)
    if now >= deal.expires_at:
        raise DealExpired(f"Deal {deal_id} expired at {deal.expires_at}.", deal_id=deal_id)
    if crud_claim.get_user_claim(db, deal.id, customer_id) is not None:
        raise AlreadyClaimed(f"Customer {customer_id} already claimed deal {deal_id}.", deal_id=deal_id)
    if crud_user.get_user_by_id(db, customer_id) is None:
        raise DealValidationError(f"Customer {customer_id} not found.", deal_id=deal_id)

    if referred_by is not None and (
        referred_by == customer_id or crud_user.get_user_by_id(db, referred_by) is None
    ):
        logger.info(f"Deal {deal_id}: ignoring invalid referrer {referred_by} for customer {customer_id}.")
        referred_by = None

    if claim_source is None:
        if deal.is_surprise_deal:
            claim_source = "surprise_reveal"
        elif referred_by is not None:
            claim_source = "share"
        else:
            claim_source = "notification"

    # Шаг 1: счетчик и позиция
    deal.current_claims += 1
    claim = crud_claim.create_claim(
        db,
        deal_id=deal.id,
        user_id=customer_id,
        position=deal.current_claims,
        claimed_at=now,
        referred_by_user_id=referred_by,
        claim_source=claim_source,
    )

    # Шаг 2: уровни цепочки считаем ДО снимка, чтобы снимок совпадал с состоянием после заявки
    evaluate_chain_tiers(deal, events)
    claim.claimed_at_level = deal.current_chain_level
    claim.claimed_discount_percent = deal.discount_percent
    db.flush()

    events.emit(
        DealEventType.CLAIMED, deal.id,
        claim_id=claim.id,
        user_id=customer_id,
        position=claim.position,
        referred_by=referred_by,
    )

    # Шаг 3: режим "спасения"
    apply_rescue(deal, now, events)

    # Шаг 4: досрочная активация в той же транзакции
    activated = False
    if deal.current_claims >= deal.target_claims and deal.status == DealStatus.LIVE:
        activated = lifecycle.activate(db, deal, events, now=now)

    # Шаг 5: пороги прогресса. После активации о них не пишем: уходит сообщение об активации.
    _record_milestones(deal, claim, events, announce=not activated)

    db.flush()
    logger.info(
        f"Deal {deal.id}: customer {customer_id} claimed position #{claim.position} "
        f"({deal.current_claims}/{deal.target_claims}), source '{claim_source}'."
    )
    return claim, deal, events


def build_claim_result(deal: Deal, claim: DealClaim) -> ClaimResult:
    return ClaimResult(
        deal_id=deal.id,
        claim_id=claim.id,
        position=claim.position,
        deal_status=deal.status.value,
        activated=deal.status == DealStatus.ACTIVATED,
        coupon_code=claim.coupon_code,
        discount_percent=deal.discount_percent,
        claims_remaining=deal.claims_remaining,
        revealed=revealed_content(deal) if deal.is_surprise_deal else None,
    )


def register_claim(
    db: Session,
    deal_id: int,
    customer_id: int,
    referred_by: int | None = None,
    claim_source: str | None = None,
    now: datetime | None = None,
) -> tuple[ClaimResult, list[DealEvent]]:
    """
    Принимает заявку и коммитит транзакцию.
    Таймаут блокировки повторяется ограниченное число раз, затем ConcurrencyConflict.
    """
    attempts = settings.CLAIM_LOCK_RETRIES
    for attempt in range(1, attempts + 1):
        try:
            claim, deal, events = admit_claim(
                db, deal_id, customer_id,
                referred_by=referred_by, claim_source=claim_source, now=now
            )
            db.commit()
            return build_claim_result(deal, claim), events.events

        except FlashDealError:
            db.rollback()
            raise
        except IntegrityError:
            db.rollback()
            # Параллельная заявка того же покупателя успела закоммитить раньше нас
            if crud_claim.get_user_claim(db, deal_id, customer_id) is not None:
                raise AlreadyClaimed(f"Customer {customer_id} already claimed deal {deal_id}.", deal_id=deal_id)
            logger.warning(f"Integrity conflict on deal {deal_id}, attempt {attempt}/{attempts}.", exc_info=True)
        except OperationalError:
            db.rollback()
            logger.warning(f"Could not lock deal {deal_id}, attempt {attempt}/{attempts}.", exc_info=True)

    logger.error(f"Giving up on claim for deal {deal_id} by customer {customer_id} after {attempts} attempts.")
    raise ConcurrencyConflict(deal_id=deal_id)


async def claim_deal(
    db: Session,
    deal_id: int,
    customer_id: int,
    referred_by: int | None = None,
    claim_source: str | None = None,
) -> ClaimResult:
    """
    Точка входа для приема заявки: транзакция, затем уведомления.
    Уведомления уходят уже после commit, блокировка акции к этому моменту снята.
    """
    # Ожидание блокировки строки не должно останавливать event loop
    result, events = await asyncio.to_thread(
        register_claim, db, deal_id, customer_id, referred_by=referred_by, claim_source=claim_source
    )
    await dispatch_events(events)
    return result
