# app/routers/v1/endpoints/deals.py

from typing import Optional

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.limiter import limiter
from app.dependencies import get_current_user, get_db, get_optional_current_user, get_shop_owner
from app.models.user import User
from app.schemas.analytics import DealAnalytics
from app.schemas.deal import CancelRequest, ClaimCreate, ClaimResult, DealCreate, DealSnapshot
from app.services import claim as claim_service
from app.services import deal as deal_service

router = APIRouter(prefix="/deals")


@router.post("", response_model=DealSnapshot, status_code=status.HTTP_201_CREATED)
async def create_deal(
    deal_data: DealCreate,
    owner: User = Depends(get_shop_owner),
    db: Session = Depends(get_db)
):
    """Создание флеш-акции. Без starts_at акция стартует сразу."""
    deal = await deal_service.create_deal(db, owner, deal_data)
    return deal_service.get_deal_snapshot(db, deal.id, owner)


@router.post("/{deal_id}/claims", response_model=ClaimResult, status_code=status.HTTP_201_CREATED)
@limiter.limit(settings.CLAIM_RATE_LIMIT)
async def claim_deal(
    request: Request,
    deal_id: int,
    claim_data: Optional[ClaimCreate] = None,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Заявка покупателя на участие в акции.
    Если заявка добирает цель, акция активируется и купон возвращается сразу.
    """
    return await claim_service.claim_deal(
        db, deal_id, current_user.id,
        referred_by=claim_data.referred_by if claim_data else None
    )


@router.get("/{deal_id}", response_model=DealSnapshot)
def get_deal(
    deal_id: int,
    current_user: Optional[User] = Depends(get_optional_current_user),
    db: Session = Depends(get_db)
):
    return deal_service.get_deal_snapshot(db, deal_id, current_user)


@router.post("/{deal_id}/cancel", response_model=DealSnapshot)
async def cancel_deal(
    deal_id: int,
    cancel_data: CancelRequest,
    owner: User = Depends(get_shop_owner),
    db: Session = Depends(get_db)
):
    await deal_service.cancel_deal(db, deal_id, owner, cancel_data.reason)
    return deal_service.get_deal_snapshot(db, deal_id, owner)


@router.get("/{deal_id}/analytics", response_model=DealAnalytics)
def get_deal_analytics(
    deal_id: int,
    owner: User = Depends(get_shop_owner),
    db: Session = Depends(get_db)
):
    """Итоги акции для владельца магазина. Доступны в любом статусе."""
    return deal_service.get_deal_analytics(db, deal_id, owner)
