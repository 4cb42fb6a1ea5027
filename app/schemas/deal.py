# app/schemas/deal.py

from datetime import datetime, timezone
from typing import List, Literal, Optional
from pydantic import BaseModel, Field, field_validator, model_validator

from app.core.config import settings


class ChainTier(BaseModel):
    """Один уровень цепочки: сколько заявок нужно и какая скидка открывается."""
    claim_threshold: int = Field(..., ge=1)
    discount_percent: int = Field(..., ge=1, le=90)


class DealCreate(BaseModel):
    """Схема для создания новой флеш-акции владельцем магазина."""
    shop_id: int
    title: str = Field(..., min_length=1, max_length=150)
    description: Optional[str] = None
    image_url: Optional[str] = Field(None, max_length=500)
    category: Optional[str] = Field(None, max_length=50)

    discount_percent: int = Field(..., ge=5, le=90, description="Базовая скидка, %")
    max_discount_value: Optional[int] = Field(None, gt=0, description="Потолок скидки в рублях/рупиях")
    coupon_prefix: str = Field(settings.COUPON_PREFIX, min_length=1, max_length=10, pattern=r"^[A-Z0-9]+$")

    target_claims: Optional[int] = Field(None, ge=1, description="Для цепочек по умолчанию равен старшему порогу")
    time_limit_minutes: int = Field(..., ge=1, le=24 * 60)
    starts_at: Optional[datetime] = Field(None, description="UTC. Пусто - акция стартует сразу")

    is_chain_deal: bool = False
    chain_tiers: Optional[List[ChainTier]] = None

    is_surprise_deal: bool = False
    hidden_product: Optional[str] = Field(None, max_length=200)
    mystery_image_url: Optional[str] = Field(None, max_length=500)

    rescue_extension_minutes: int = Field(settings.RESCUE_EXTENSION_MINUTES, ge=1, le=120)
    rescue_bonus_percent: int = Field(settings.RESCUE_BONUS_PERCENT, ge=1, le=50)

    @field_validator("starts_at")
    def starts_at_to_naive_utc(cls, v):
        # В БД время хранится как naive UTC
        if v is not None and v.tzinfo is not None:
            return v.astimezone(timezone.utc).replace(tzinfo=None)
        return v

    @model_validator(mode="after")
    def check_target_and_tiers(self):
        if not self.is_chain_deal:
            if self.chain_tiers:
                raise ValueError("chain_tiers are only allowed for chain deals")
            if self.target_claims is None:
                raise ValueError("target_claims is required")
            return self

        tiers = self.chain_tiers or [ChainTier(**tier) for tier in settings.DEFAULT_CHAIN_TIERS]
        tiers = sorted(tiers, key=lambda tier: tier.claim_threshold)
        for lower, higher in zip(tiers, tiers[1:]):
            if higher.claim_threshold <= lower.claim_threshold:
                raise ValueError("chain tier thresholds must be strictly increasing")
            if higher.discount_percent <= lower.discount_percent:
                raise ValueError("chain tier discounts must be strictly increasing")
        if tiers[0].discount_percent < self.discount_percent:
            raise ValueError("first chain tier cannot lower the base discount")

        highest = tiers[-1].claim_threshold
        if self.target_claims is None:
            self.target_claims = highest
        elif self.target_claims < highest:
            raise ValueError("target_claims cannot be below the highest chain tier threshold")
        self.chain_tiers = tiers
        return self


class NextTier(BaseModel):
    level: int
    claim_threshold: int
    discount_percent: int
    claims_needed: int


class RevealedContent(BaseModel):
    """Настоящее содержимое акции-сюрприза, открывается после заявки."""
    title: str
    discount_percent: int
    product: Optional[str] = None
    max_discount_value: Optional[int] = None


class MyClaim(BaseModel):
    position: int
    coupon_code: Optional[str] = None
    claimed_at: datetime
    claimed_at_level: Optional[int] = None
    claimed_discount_percent: Optional[int] = None

    class Config:
        from_attributes = True


class DealSnapshot(BaseModel):
    """Текущее состояние акции для покупателя или владельца магазина."""
    id: int
    shop_id: int
    status: Literal["scheduled", "live", "activated", "expired", "cancelled"]
    title: str
    description: Optional[str] = None
    image_url: Optional[str] = None
    category: Optional[str] = None

    # None, если скидка скрыта (сюрприз до заявки)
    discount_percent: Optional[int] = None
    max_discount_value: Optional[int] = None

    target_claims: int
    current_claims: int
    claims_remaining: int
    progress_percent: int

    starts_at: datetime
    expires_at: datetime
    time_remaining_seconds: int
    coupon_valid_until: Optional[datetime] = None

    is_chain_deal: bool
    current_chain_level: int
    next_tier: Optional[NextTier] = None

    is_surprise_deal: bool
    revealed: Optional[RevealedContent] = None

    rescue_extended: bool
    rescue_bonus_added: bool

    activated_at: Optional[datetime] = None
    expired_at: Optional[datetime] = None

    my_claim: Optional[MyClaim] = None


class ClaimCreate(BaseModel):
    referred_by: Optional[int] = Field(None, description="ID покупателя, который поделился акцией")


class ClaimResult(BaseModel):
    deal_id: int
    claim_id: int
    position: int
    deal_status: str
    activated: bool
    coupon_code: Optional[str] = None
    discount_percent: int
    claims_remaining: int
    revealed: Optional[RevealedContent] = None


class CancelRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=255)
