# app/models/notification.py
from sqlalchemy import Column, Integer, String, Text, ForeignKey, DateTime, func
from app.db.session import Base
from app.models.user import User
from sqlalchemy.orm import relationship

class NotificationLog(Base):
    __tablename__ = "notification_logs"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    deal_id = Column(Integer, ForeignKey("flash_deals.id"), nullable=True, index=True)

    # Тип уведомления: 'deal_live', 'milestone', 'activation', 'expiry', 'analytics', etc.
    type = Column(String, nullable=False, index=True)
    # 'sent', 'failed', 'skipped'
    status = Column(String, nullable=False)
    error = Column(Text, nullable=True)

    created_at = Column(DateTime, server_default=func.now())

    user = relationship(User)
