# app/crud/deal.py

from datetime import datetime
from sqlalchemy import text
from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.deal import Deal, DealStatus


def get_deal(db: Session, deal_id: int) -> Deal | None:
    return db.query(Deal).filter(Deal.id == deal_id).first()

def lock_deal(db: Session, deal_id: int) -> Deal | None:
    """
    Выбирает и БЛОКИРУЕТ строку акции до конца транзакции (`SELECT ... FOR UPDATE`).
    populate_existing гарантирует, что мы работаем со свежими данными, а не с кэшем сессии.
    """
    if db.get_bind().dialect.name == "postgresql":
        # Ограничиваем ожидание блокировки, чтобы не висеть за "зависшей" транзакцией
        db.execute(text(f"SET LOCAL lock_timeout = '{int(settings.DEAL_LOCK_TIMEOUT_MS)}ms'"))
    return db.query(Deal).filter(
        Deal.id == deal_id
    ).populate_existing().with_for_update().first()

def create_deal(db: Session, **fields) -> Deal:
    """
    Создает объект акции и добавляет его в сессию.
    Требует внешнего вызова db.commit().
    """
    deal = Deal(**fields)
    db.add(deal)
    return deal

def get_live_deal_ids_past_expiry(db: Session, now: datetime) -> list[int]:
    """ID живых акций, у которых истек таймер. Это "кандидаты" для прохода истечения."""
    rows = db.query(Deal.id).filter(
        Deal.status == DealStatus.LIVE,
        Deal.expires_at <= now
    ).order_by(Deal.expires_at.asc()).all()
    return [deal_id for deal_id, in rows]

def get_scheduled_deal_ids_ready_to_launch(db: Session, now: datetime) -> list[int]:
    rows = db.query(Deal.id).filter(
        Deal.status == DealStatus.SCHEDULED,
        Deal.starts_at <= now
    ).order_by(Deal.starts_at.asc()).all()
    return [deal_id for deal_id, in rows]
