# app/services/coupon.py

import logging
import secrets
import string

from sqlalchemy.orm import Session

from app.core.config import settings
from app.crud import claim as crud_claim

logger = logging.getLogger(__name__)

COUPON_ALPHABET = string.ascii_uppercase + string.digits


class CouponCodeGenerator:
    """
    Генерирует глобально уникальные коды купонов вида FLASH-7K2QXM.
    Уникальность проверяется по БД и по кодам, выданным этим генератором в текущей пачке
    (они еще могут быть не сброшены в БД).
    """
    def __init__(self, db: Session, length: int = None, max_attempts: int = None):
        self.db = db
        self.length = length or settings.COUPON_CODE_LENGTH
        self.max_attempts = max_attempts or settings.COUPON_MAX_ATTEMPTS
        self._issued: set[str] = set()

    def _random_part(self) -> str:
        return "".join(secrets.choice(COUPON_ALPHABET) for _ in range(self.length))

    def generate(self, prefix: str | None = None) -> str:
        prefix = (prefix or settings.COUPON_PREFIX).upper()
        for attempt in range(1, self.max_attempts + 1):
            code = f"{prefix}-{self._random_part()}"
            if code in self._issued or crud_claim.coupon_code_exists(self.db, code):
                logger.warning(f"Coupon code collision on attempt {attempt}, retrying.")
                continue
            self._issued.add(code)
            return code
        raise RuntimeError(f"Could not generate a unique coupon code after {self.max_attempts} attempts.")
