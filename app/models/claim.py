# app/models/claim.py
from sqlalchemy import (
    Column, Integer, String, Boolean, ForeignKey, DateTime, JSON, UniqueConstraint, Index, func
)
from sqlalchemy.orm import relationship

from app.db.session import Base
from app.models.user import User

class DealClaim(Base):
    __tablename__ = "flash_deal_claims"

    id = Column(Integer, primary_key=True, index=True)
    deal_id = Column(Integer, ForeignKey("flash_deals.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    # Позиция в очереди (1, 2, 3...). Назначается один раз при создании заявки
    position = Column(Integer, nullable=False)

    # Заполняется только при активации акции
    coupon_code = Column(String(20), nullable=True, unique=True)
    coupon_redeemed = Column(Boolean, nullable=False, default=False, server_default='false')
    redeemed_at = Column(DateTime, nullable=True)

    # Кто поделился ссылкой на акцию
    referred_by_user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    # 'notification', 'share', 'surprise_reveal'
    claim_source = Column(String(30), nullable=True)

    # Уровень цепочки и скидка на момент заявки
    claimed_at_level = Column(Integer, nullable=True)
    claimed_discount_percent = Column(Integer, nullable=True)

    # Пороги прогресса, которые пересекла именно эта заявка
    milestone_notifications_sent = Column(JSON, nullable=False, default=list)

    claimed_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)

    # --- СВЯЗИ ---
    deal = relationship("Deal", back_populates="claims")
    user = relationship(User, foreign_keys=[user_id])
    referred_by = relationship(User, foreign_keys=[referred_by_user_id])

    __table_args__ = (
        UniqueConstraint("deal_id", "user_id", name="uq_flash_deal_claims_deal_user"),
        Index("ix_flash_deal_claims_deal_position", "deal_id", "position", unique=True),
    )
