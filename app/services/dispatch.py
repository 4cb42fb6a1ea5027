# app/services/dispatch.py
import asyncio
import logging
from typing import Iterable

from sqlalchemy.orm import Session

from app.bot.services import notification as bot_notification_service
from app.core.config import settings
from app.crud import claim as crud_claim
from app.crud import deal as crud_deal
from app.crud import user as crud_user
from app.db.session import SessionLocal
from app.models.deal import Deal
from app.schemas.analytics import DealAnalytics
from app.services.events import DealEvent, DealEventType
from app.utils.geo import distance_km

logger = logging.getLogger(__name__)


async def _notify_deal_live(db: Session, deal: Deal, event: DealEvent):
    shop = deal.shop
    if shop is None or shop.latitude is None or shop.longitude is None:
        logger.warning(f"Deal {deal.id}: shop has no coordinates, nobody to notify.")
        return

    nearby = [
        customer for customer in crud_user.get_reachable_customers_with_location(db)
        if distance_km(shop.latitude, shop.longitude, customer.latitude, customer.longitude)
        <= settings.NOTIFY_RADIUS_KM
    ]
    logger.info(f"Deal {deal.id}: notifying {len(nearby)} customers within {settings.NOTIFY_RADIUS_KM} km.")

    notified = 0
    for customer in nearby:
        if await bot_notification_service.send_deal_live(db, customer, deal):
            notified += 1
        await asyncio.sleep(settings.NOTIFICATION_SEND_PAUSE_SECONDS)

    # Атомарный UPDATE без блокировки строки: счетчик только растет
    db.query(Deal).filter(Deal.id == deal.id).update(
        {Deal.notified_customers_count: Deal.notified_customers_count + notified},
        synchronize_session=False
    )
    db.commit()


async def _notify_claimed(db: Session, deal: Deal, event: DealEvent):
    claim = crud_claim.get_user_claim(db, deal.id, event.payload["user_id"])
    if claim is None:
        logger.warning(f"Deal {deal.id}: claim for user {event.payload['user_id']} vanished before dispatch.")
        return
    await bot_notification_service.send_claim_confirmation(db, claim.user, claim, deal)


async def _notify_activated(db: Session, deal: Deal, event: DealEvent):
    for claim in crud_claim.get_deal_claims(db, deal.id):
        await bot_notification_service.send_activation(db, claim.user, claim, deal)
        await asyncio.sleep(settings.NOTIFICATION_SEND_PAUSE_SECONDS)
    await bot_notification_service.send_activation_to_shop(db, deal)


async def _notify_expired(db: Session, deal: Deal, event: DealEvent):
    for claim in crud_claim.get_deal_claims(db, deal.id):
        await bot_notification_service.send_expiry(db, claim.user, deal)
        await asyncio.sleep(settings.NOTIFICATION_SEND_PAUSE_SECONDS)

    owner = deal.shop.owner if deal.shop else None
    if owner is None:
        logger.warning(f"Deal {deal.id}: no shop owner to send analytics to.")
        return
    analytics = DealAnalytics.model_validate(event.payload["analytics"])
    await bot_notification_service.send_analytics(db, owner, deal, analytics)


async def _notify_cancelled(db: Session, deal: Deal, event: DealEvent):
    for claim in crud_claim.get_deal_claims(db, deal.id):
        await bot_notification_service.send_cancellation(db, claim.user, deal)
        await asyncio.sleep(settings.NOTIFICATION_SEND_PAUSE_SECONDS)


async def _dispatch_one(db: Session, event: DealEvent, activated_deal_ids: set[int]):
    deal = crud_deal.get_deal(db, event.deal_id)
    if deal is None:
        logger.warning(f"Event '{event.type.value}' refers to missing deal {event.deal_id}.")
        return

    if event.type == DealEventType.DEAL_LIVE:
        await _notify_deal_live(db, deal, event)
    elif event.type == DealEventType.CLAIMED:
        # Заявка, активировавшая акцию, получит купон в сообщении об активации
        if deal.id not in activated_deal_ids:
            await _notify_claimed(db, deal, event)
    elif event.type == DealEventType.MILESTONE:
        await bot_notification_service.send_milestone(db, deal, event.payload["percent"])
    elif event.type == DealEventType.TIER_UNLOCKED:
        await bot_notification_service.send_tier_unlocked(
            db, deal, event.payload["level"], event.payload["discount_percent"]
        )
    elif event.type == DealEventType.RESCUE_EXTENDED:
        await bot_notification_service.send_rescue_applied(db, deal, "extended", event.payload)
    elif event.type == DealEventType.RESCUE_BONUS:
        await bot_notification_service.send_rescue_applied(db, deal, "bonus", event.payload)
    elif event.type == DealEventType.ACTIVATED:
        await _notify_activated(db, deal, event)
    elif event.type == DealEventType.EXPIRED:
        await _notify_expired(db, deal, event)
    elif event.type == DealEventType.CANCELLED:
        await _notify_cancelled(db, deal, event)


async def dispatch_events(events: Iterable[DealEvent]):
    """
    Рассылает уведомления по событиям, накопленным в уже закоммиченной транзакции.
    Открывает собственную сессию. Ошибка одного события не прерывает остальные.
    """
    events = list(events)
    if not events:
        return

    activated_deal_ids = {event.deal_id for event in events if event.type == DealEventType.ACTIVATED}

    with SessionLocal() as db:
        for event in events:
            try:
                await _dispatch_one(db, event, activated_deal_ids)
            except Exception:
                logger.error(
                    f"Failed to dispatch '{event.type.value}' for deal {event.deal_id}", exc_info=True
                )
                db.rollback()
