# app/crud/notification.py
from datetime import timedelta
from sqlalchemy.orm import Session
from app.models.notification import NotificationLog
from app.utils.clock import utcnow

def create_notification_log(
    db: Session,
    type: str,
    status: str,
    user_id: int | None = None,
    deal_id: int | None = None,
    error: str | None = None
) -> NotificationLog:
    """Записывает результат отправки одного сообщения."""
    db_log = NotificationLog(
        user_id=user_id,
        deal_id=deal_id,
        type=type,
        status=status,
        error=error
    )
    db.add(db_log)
    db.commit()
    return db_log

def get_deal_logs(db: Session, deal_id: int, type: str | None = None) -> list[NotificationLog]:
    query = db.query(NotificationLog).filter(NotificationLog.deal_id == deal_id)
    if type:
        query = query.filter(NotificationLog.type == type)
    return query.order_by(NotificationLog.id.asc()).all()

def delete_old_logs(db: Session, older_than_days: int) -> int:
    """Удаляет записи журнала старше заданного количества дней."""
    threshold = utcnow() - timedelta(days=older_than_days)
    result = db.query(NotificationLog).filter(
        NotificationLog.created_at < threshold
    ).delete(synchronize_session=False)
    db.commit()
    return result
