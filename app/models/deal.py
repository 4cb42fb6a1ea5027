# app/models/deal.py

import enum
from sqlalchemy import (
    Column, Integer, String, Text, Boolean, ForeignKey, DateTime, JSON, Enum, Index, func
)
from sqlalchemy.orm import relationship

from app.db.session import Base
from app.core.exceptions import InvalidDealTransition
from app.models.claim import DealClaim
from app.models.shop import Shop


class DealStatus(str, enum.Enum):
    """
    Жизненный цикл акции:
    scheduled -> live -> activated | expired
    scheduled | live -> cancelled
    activated, expired, cancelled - терминальные.
    """
    SCHEDULED = "scheduled"
    LIVE = "live"
    ACTIVATED = "activated"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

    def can_transition_to(self, target: "DealStatus") -> bool:
        return target in ALLOWED_TRANSITIONS[self]

    @property
    def is_terminal(self) -> bool:
        return not ALLOWED_TRANSITIONS[self]


ALLOWED_TRANSITIONS = {
    DealStatus.SCHEDULED: {DealStatus.LIVE, DealStatus.CANCELLED},
    DealStatus.LIVE: {DealStatus.ACTIVATED, DealStatus.EXPIRED, DealStatus.CANCELLED},
    DealStatus.ACTIVATED: set(),
    DealStatus.EXPIRED: set(),
    DealStatus.CANCELLED: set(),
}


class Deal(Base):
    __tablename__ = "flash_deals"

    id = Column(Integer, primary_key=True, index=True)
    shop_id = Column(Integer, ForeignKey("shops.id"), nullable=False, index=True)

    # --- Контент ---
    title = Column(String(150), nullable=False)
    description = Column(Text, nullable=True)
    image_url = Column(String(500), nullable=True)
    category = Column(String(50), nullable=True)

    # --- Экономика ---
    # Текущая скидка: растет при разблокировке уровней и бонусе "спасения"
    discount_percent = Column(Integer, nullable=False)
    max_discount_value = Column(Integer, nullable=True)
    # Скидка до бонуса "спасения"
    original_discount_percent = Column(Integer, nullable=True)
    coupon_prefix = Column(String(10), nullable=False, default="FLASH", server_default="FLASH")

    # --- Цель и время ---
    target_claims = Column(Integer, nullable=False)
    time_limit_minutes = Column(Integer, nullable=False)
    starts_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    coupon_valid_until = Column(DateTime, nullable=True)

    # --- Прогресс ---
    status = Column(
        Enum(DealStatus, native_enum=False, length=20, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=DealStatus.SCHEDULED,
        index=True,
    )
    current_claims = Column(Integer, nullable=False, default=0, server_default="0")
    notified_customers_count = Column(Integer, nullable=False, default=0, server_default="0")
    # Проценты прогресса (25/50/75/90), о которых уже сообщили участникам
    milestones_notified = Column(JSON, nullable=False, default=list)

    # --- Цепочка уровней ---
    is_chain_deal = Column(Boolean, nullable=False, default=False, server_default='false')
    # [{"claim_threshold": 20, "discount_percent": 20}, ...] по возрастанию порога
    chain_tiers = Column(JSON, nullable=True)
    current_chain_level = Column(Integer, nullable=False, default=0, server_default="0")

    # --- Сюрприз ---
    is_surprise_deal = Column(Boolean, nullable=False, default=False, server_default='false')
    hidden_title = Column(String(150), nullable=True)
    hidden_discount = Column(Integer, nullable=True)
    hidden_product = Column(String(200), nullable=True)
    mystery_image_url = Column(String(500), nullable=True)

    # --- Режим "спасения" ---
    rescue_extended = Column(Boolean, nullable=False, default=False, server_default='false')
    rescue_extended_at = Column(DateTime, nullable=True)
    rescue_extension_minutes = Column(Integer, nullable=False, default=10, server_default="10")
    rescue_bonus_added = Column(Boolean, nullable=False, default=False, server_default='false')
    rescue_bonus_percent = Column(Integer, nullable=False, default=5, server_default="5")

    activated_at = Column(DateTime, nullable=True)
    expired_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancel_reason = Column(String, nullable=True)

    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=False)

    shop = relationship(Shop)
    claims = relationship("DealClaim", back_populates="deal", order_by="DealClaim.position")

    __table_args__ = (
        Index("ix_flash_deals_status_expires_at", "status", "expires_at"),
        Index("ix_flash_deals_status_starts_at", "status", "starts_at"),
    )

    def transition_to(self, target: DealStatus) -> None:
        """Меняет статус, если переход разрешен таблицей ALLOWED_TRANSITIONS."""
        current = DealStatus(self.status)
        if not current.can_transition_to(target):
            raise InvalidDealTransition(
                f"Deal {self.id} cannot move from '{current.value}' to '{target.value}'.",
                deal_id=self.id,
            )
        self.status = target

    @property
    def claims_remaining(self) -> int:
        return max(0, self.target_claims - self.current_claims)

    @property
    def progress_percent(self) -> int:
        if not self.target_claims:
            return 0
        return min(100, round(self.current_claims * 100 / self.target_claims))
