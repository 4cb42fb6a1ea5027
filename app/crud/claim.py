# app/crud/claim.py

from datetime import datetime
from sqlalchemy import func
from sqlalchemy.orm import Session

from app.models.claim import DealClaim


def create_claim(
    db: Session,
    deal_id: int,
    user_id: int,
    position: int,
    claimed_at: datetime,
    referred_by_user_id: int | None = None,
    claim_source: str | None = None,
) -> DealClaim:
    """
    Создает объект заявки и добавляет его в сессию.
    Вызывать только из приема заявок, под блокировкой строки акции.
    Требует внешнего вызова db.commit().
    """
    claim = DealClaim(
        deal_id=deal_id,
        user_id=user_id,
        position=position,
        claimed_at=claimed_at,
        referred_by_user_id=referred_by_user_id,
        claim_source=claim_source,
        milestone_notifications_sent=[],
    )
    db.add(claim)
    return claim

def get_user_claim(db: Session, deal_id: int, user_id: int) -> DealClaim | None:
    return db.query(DealClaim).filter_by(deal_id=deal_id, user_id=user_id).first()

def get_deal_claims(db: Session, deal_id: int) -> list[DealClaim]:
    """Все заявки акции в порядке позиций."""
    return db.query(DealClaim).filter(
        DealClaim.deal_id == deal_id
    ).order_by(DealClaim.position.asc()).all()

def get_claims_without_coupon(db: Session, deal_id: int) -> list[DealClaim]:
    return db.query(DealClaim).filter(
        DealClaim.deal_id == deal_id,
        DealClaim.coupon_code.is_(None)
    ).order_by(DealClaim.position.asc()).all()

def count_deal_claims(db: Session, deal_id: int) -> int:
    return db.query(func.count(DealClaim.id)).filter(DealClaim.deal_id == deal_id).scalar() or 0

def coupon_code_exists(db: Session, code: str) -> bool:
    return db.query(DealClaim.id).filter(DealClaim.coupon_code == code).first() is not None
