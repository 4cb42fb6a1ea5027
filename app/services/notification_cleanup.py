# app/services/notification_cleanup.py
import logging
from app.db.session import SessionLocal
from app.crud import notification as crud_notification

logger = logging.getLogger(__name__)

# Журнал отправок нужен для разбора жалоб, дольше не храним
DELETE_NOTIFICATION_LOGS_AFTER_DAYS = 30

def cleanup_old_notifications_task():
    """Фоновая задача для удаления старых записей журнала уведомлений."""
    logger.info("--- Starting scheduled job: Cleanup of Old Notification Logs ---")
    with SessionLocal() as db:
        try:
            deleted_count = crud_notification.delete_old_logs(
                db, older_than_days=DELETE_NOTIFICATION_LOGS_AFTER_DAYS
            )
            if deleted_count > 0:
                logger.info(f"Successfully deleted {deleted_count} old notification logs.")
            else:
                logger.info("No old notification logs to delete.")
        except Exception:
            logger.error("An error occurred during notification cleanup task", exc_info=True)
            db.rollback()
    logger.info("--- Finished scheduled job: Cleanup of Old Notification Logs ---")
