# app/services/deal.py

import asyncio
import logging
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import DealNotFound, FlashDealError, ShopAccessDenied
from app.crud import claim as crud_claim
from app.crud import deal as crud_deal
from app.crud import user as crud_user
from app.models.deal import Deal, DealStatus
from app.models.user import User
from app.schemas.analytics import DealAnalytics
from app.schemas.deal import DealCreate, DealSnapshot, MyClaim
from app.services import lifecycle
from app.services.analytics import compute_deal_analytics
from app.services.chain import get_next_tier
from app.services.dispatch import dispatch_events
from app.services.events import DealEventBuffer
from app.services.surprise import mystery_title, revealed_content
from app.utils.clock import utcnow

logger = logging.getLogger(__name__)


def coupon_valid_until(starts_at: datetime) -> datetime:
    """Купоны действуют до закрытия (22:00) в день старта; после 22:00 - до следующего вечера."""
    closing = starts_at.replace(
        hour=settings.COUPON_VALID_UNTIL_HOUR, minute=0, second=0, microsecond=0
    )
    if starts_at >= closing:
        closing += timedelta(days=1)
    return closing


def _check_owner(deal: Deal, owner: User):
    if deal.shop is None or deal.shop.owner_id != owner.id:
        raise ShopAccessDenied(f"User {owner.id} does not own deal {deal.id}.", deal_id=deal.id)


async def create_deal(db: Session, owner: User, data: DealCreate) -> Deal:
    """
    Создает акцию. Если время старта не задано или уже наступило, акция сразу становится live
    и покупатели поблизости получают уведомление.
    """
    shop = crud_user.get_shop_by_id(db, data.shop_id)
    if shop is None or shop.owner_id != owner.id:
        raise ShopAccessDenied(f"User {owner.id} cannot create deals for shop {data.shop_id}.")

    now = utcnow()
    starts_at = data.starts_at if data.starts_at and data.starts_at > now else now

    fields = dict(
        shop_id=shop.id,
        title=data.title,
        description=data.description,
        image_url=data.image_url,
        category=data.category,
        discount_percent=data.discount_percent,
        max_discount_value=data.max_discount_value,
        coupon_prefix=data.coupon_prefix,
        target_claims=data.target_claims,
        time_limit_minutes=data.time_limit_minutes,
        starts_at=starts_at,
        expires_at=starts_at + timedelta(minutes=data.time_limit_minutes),
        coupon_valid_until=coupon_valid_until(starts_at),
        status=DealStatus.SCHEDULED,
        current_claims=0,
        notified_customers_count=0,
        milestones_notified=[],
        is_chain_deal=data.is_chain_deal,
        current_chain_level=0,
        is_surprise_deal=data.is_surprise_deal,
        rescue_extension_minutes=data.rescue_extension_minutes,
        rescue_bonus_percent=data.rescue_bonus_percent,
    )
    if data.is_chain_deal:
        fields["chain_tiers"] = [tier.model_dump() for tier in data.chain_tiers]
    if data.is_surprise_deal:
        # Настоящее содержимое прячем, публично виден только "загадочный" заголовок
        fields.update(
            hidden_title=data.title,
            hidden_discount=data.discount_percent,
            hidden_product=data.hidden_product,
            mystery_image_url=data.mystery_image_url,
            title=mystery_title(shop.name, data.category),
        )

    events = DealEventBuffer()
    try:
        deal = crud_deal.create_deal(db, **fields)
        db.flush()
        if starts_at <= now:
            lifecycle.go_live(db, deal, events, now=now)
        db.commit()
    except FlashDealError:
        db.rollback()
        raise
    db.refresh(deal)

    logger.info(
        f"Shop {shop.id} created deal {deal.id} '{deal.title}': target {deal.target_claims} "
        f"in {deal.time_limit_minutes} min, status '{deal.status.value}'."
    )
    await dispatch_events(events.events)
    return deal


def get_deal_snapshot(db: Session, deal_id: int, viewer: User | None = None) -> DealSnapshot:
    """
    Состояние акции для просмотра. Содержимое сюрприза открыто только участникам
    и владельцу магазина.
    """
    deal = crud_deal.get_deal(db, deal_id)
    if deal is None:
        raise DealNotFound(f"Deal {deal_id} not found.", deal_id=deal_id)

    my_claim = crud_claim.get_user_claim(db, deal.id, viewer.id) if viewer else None
    is_owner = viewer is not None and deal.shop is not None and deal.shop.owner_id == viewer.id
    content_visible = not deal.is_surprise_deal or my_claim is not None or is_owner

    now = utcnow()
    time_remaining = 0
    if deal.status in (DealStatus.SCHEDULED, DealStatus.LIVE):
        time_remaining = max(0, int((deal.expires_at - now).total_seconds()))

    return DealSnapshot(
        id=deal.id,
        shop_id=deal.shop_id,
        status=deal.status.value,
        title=deal.title,
        description=deal.description if content_visible else None,
        image_url=deal.image_url if not deal.is_surprise_deal else deal.mystery_image_url,
        category=deal.category,
        discount_percent=deal.discount_percent if content_visible else None,
        max_discount_value=deal.max_discount_value if content_visible else None,
        target_claims=deal.target_claims,
        current_claims=deal.current_claims,
        claims_remaining=deal.claims_remaining,
        progress_percent=deal.progress_percent,
        starts_at=deal.starts_at,
        expires_at=deal.expires_at,
        time_remaining_seconds=time_remaining,
        coupon_valid_until=deal.coupon_valid_until,
        is_chain_deal=deal.is_chain_deal,
        current_chain_level=deal.current_chain_level,
        next_tier=get_next_tier(deal),
        is_surprise_deal=deal.is_surprise_deal,
        revealed=revealed_content(deal) if deal.is_surprise_deal and content_visible else None,
        rescue_extended=deal.rescue_extended,
        rescue_bonus_added=deal.rescue_bonus_added,
        activated_at=deal.activated_at,
        expired_at=deal.expired_at,
        my_claim=MyClaim.model_validate(my_claim) if my_claim else None,
    )


def _cancel_in_transaction(db: Session, deal_id: int, owner: User, reason: str, events: DealEventBuffer) -> Deal:
    try:
        deal = crud_deal.lock_deal(db, deal_id)
        if deal is None:
            raise DealNotFound(f"Deal {deal_id} not found.", deal_id=deal_id)
        _check_owner(deal, owner)
        lifecycle.cancel(db, deal, reason, events)
        db.commit()
    except FlashDealError:
        db.rollback()
        raise
    return deal


async def cancel_deal(db: Session, deal_id: int, owner: User, reason: str) -> Deal:
    """Отмена акции владельцем. Разрешена только из scheduled и live."""
    events = DealEventBuffer()
    deal = await asyncio.to_thread(_cancel_in_transaction, db, deal_id, owner, reason, events)
    await dispatch_events(events.events)
    return deal


def get_deal_analytics(db: Session, deal_id: int, owner: User) -> DealAnalytics:
    deal = crud_deal.get_deal(db, deal_id)
    if deal is None:
        raise DealNotFound(f"Deal {deal_id} not found.", deal_id=deal_id)
    _check_owner(deal, owner)
    return compute_deal_analytics(deal, crud_claim.get_deal_claims(db, deal.id))
