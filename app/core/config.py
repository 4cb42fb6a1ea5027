# app/core/config.py

import json
from typing import Any, Dict, List
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # Настройки базы данных
    DATABASE_USER: str = "postgres"
    DATABASE_PASSWORD: str = "postgres"
    DATABASE_HOST: str = "localhost"
    DATABASE_PORT: int = 5432
    DATABASE_NAME: str = "flash_deals"
    # Полный URL (например, sqlite для локального запуска) перекрывает части выше
    DATABASE_URL_OVERRIDE: str | None = None

    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379

    # Настройки WhatsApp Cloud API
    WHATSAPP_API_URL: str = "https://graph.facebook.com/v19.0"
    WHATSAPP_PHONE_NUMBER_ID: str = ""
    WHATSAPP_ACCESS_TOKEN: str = ""
    ADMIN_PHONE_NUMBERS_STR: str = Field(default="", alias="ADMIN_PHONE_NUMBERS")

    # Настройки JWT токенов (токены выпускает сервис аккаунтов)
    SECRET_KEY: str = "change-me"
    ALGORITHM: str = "HS256"

    # --- Флеш-акции ---
    SWEEP_INTERVAL_SECONDS: int = 60
    SWEEP_LOCK_TTL_SECONDS: int = 60
    SWEEP_DEAL_TIMEOUT_SECONDS: float = 20.0
    DEAL_LOCK_TIMEOUT_MS: int = 5000
    CLAIM_LOCK_RETRIES: int = 3

    RESCUE_THRESHOLD_PERCENT: int = 80
    RESCUE_WINDOW_MINUTES: int = 5
    RESCUE_EXTENSION_MINUTES: int = 10
    RESCUE_BONUS_PERCENT: int = 5
    MAX_DISCOUNT_PERCENT: int = 90

    MILESTONE_THRESHOLDS: List[int] = [25, 50, 75, 90]
    DEFAULT_CHAIN_TIERS_JSON: str = Field(
        default='[{"claim_threshold": 20, "discount_percent": 20}, '
                '{"claim_threshold": 35, "discount_percent": 35}, '
                '{"claim_threshold": 50, "discount_percent": 50}]'
    )
    # Это поле будет автоматически заполнено из JSON
    DEFAULT_CHAIN_TIERS: List[Dict[str, Any]] = []

    COUPON_PREFIX: str = "FLASH"
    COUPON_CODE_LENGTH: int = 6
    COUPON_MAX_ATTEMPTS: int = 20
    COUPON_VALID_UNTIL_HOUR: int = 22

    NOTIFY_RADIUS_KM: float = 3.0
    NOTIFICATION_SEND_PAUSE_SECONDS: float = 0.1

    # Лимит заявок с одного покупателя (формат slowapi)
    CLAIM_RATE_LIMIT: str = "10/minute"

    @property
    def ADMIN_PHONE_NUMBERS(self) -> List[str]:
        return [phone.strip() for phone in self.ADMIN_PHONE_NUMBERS_STR.split(',') if phone.strip()]

    @field_validator("DEFAULT_CHAIN_TIERS", mode="before")
    def parse_default_chain_tiers(cls, v, values):
        # values.data содержит уже провалидированные поля, включая DEFAULT_CHAIN_TIERS_JSON
        json_str = values.data.get("DEFAULT_CHAIN_TIERS_JSON")
        if json_str:
            return json.loads(json_str)
        return v

    @property
    def REDIS_URL(self) -> str:
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}"

    @property
    def DATABASE_URL(self) -> str:
        if self.DATABASE_URL_OVERRIDE:
            return self.DATABASE_URL_OVERRIDE
        return f"postgresql+psycopg2://{self.DATABASE_USER}:{self.DATABASE_PASSWORD}@{self.DATABASE_HOST}:{self.DATABASE_PORT}/{self.DATABASE_NAME}"

    model_config = SettingsConfigDict(env_file=".env", populate_by_name=True, validate_default=True)

settings = Settings()
