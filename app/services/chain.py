# app/services/chain.py

import logging
from typing import List

from app.models.deal import Deal
from app.schemas.deal import ChainTier, NextTier
from app.services.events import DealEventBuffer, DealEventType

logger = logging.getLogger(__name__)


def get_tiers(deal: Deal) -> List[ChainTier]:
    """Уровни цепочки по возрастанию порога. Уровень N соответствует tiers[N-1]."""
    if not deal.is_chain_deal or not deal.chain_tiers:
        return []
    tiers = [ChainTier.model_validate(tier) for tier in deal.chain_tiers]
    return sorted(tiers, key=lambda tier: tier.claim_threshold)


def evaluate_chain_tiers(deal: Deal, events: DealEventBuffer) -> int:
    """
    Поднимает уровень цепочки для всех порогов, которые уже пройдены.
    Проходит по уровням по возрастанию, так что одна заявка, перескочившая несколько
    порогов, оставит акцию на самом старшем из них.
    Возвращает количество открытых уровней.
    """
    unlocked = 0
    for level, tier in enumerate(get_tiers(deal), start=1):
        if level <= deal.current_chain_level:
            continue
        if tier.claim_threshold > deal.current_claims:
            break

        previous_discount = deal.discount_percent
        deal.current_chain_level = level
        # Скидка никогда не уменьшается, даже если бонус "спасения" уже выше уровня
        deal.discount_percent = max(deal.discount_percent, tier.discount_percent)
        unlocked += 1

        events.emit(
            DealEventType.TIER_UNLOCKED, deal.id,
            level=level,
            discount_percent=deal.discount_percent,
            previous_discount_percent=previous_discount,
        )
        logger.info(
            f"Deal {deal.id}: chain level {level} unlocked at {deal.current_claims} claims, "
            f"discount {previous_discount}% -> {deal.discount_percent}%."
        )
    return unlocked


def get_next_tier(deal: Deal) -> NextTier | None:
    """Следующий закрытый уровень и сколько заявок до него осталось."""
    for level, tier in enumerate(get_tiers(deal), start=1):
        if level > deal.current_chain_level:
            return NextTier(
                level=level,
                claim_threshold=tier.claim_threshold,
                discount_percent=tier.discount_percent,
                claims_needed=max(0, tier.claim_threshold - deal.current_claims),
            )
    return None
