# app/core/exceptions.py

from fastapi import status


class FlashDealError(Exception):
    """Базовая ошибка домена флеш-акций."""
    status_code: int = status.HTTP_400_BAD_REQUEST
    code: str = "flash_deal_error"

    def __init__(self, message: str | None = None, deal_id: int | None = None):
        self.deal_id = deal_id
        self.message = message or self.__class__.__doc__ or self.code
        super().__init__(self.message)


# --- Ошибки валидации: возвращаются вызывающему сразу, без повторов ---

class DealValidationError(FlashDealError):
    """Запрос нарушает правила акции."""
    status_code = status.HTTP_409_CONFLICT
    code = "validation_error"


class DealNotFound(DealValidationError):
    """Акция не найдена."""
    status_code = status.HTTP_404_NOT_FOUND
    code = "deal_not_found"


class DealNotLive(DealValidationError):
    """Акция сейчас не принимает заявки."""
    code = "deal_not_live"


class DealExpired(DealValidationError):
    """Время акции истекло."""
    code = "deal_expired"


class AlreadyClaimed(DealValidationError):
    """Покупатель уже участвует в этой акции."""
    code = "already_claimed"


class InvalidDealTransition(DealValidationError):
    """Недопустимый переход статуса акции."""
    code = "invalid_transition"


class ShopAccessDenied(FlashDealError):
    """Акция принадлежит другому магазину."""
    status_code = status.HTTP_403_FORBIDDEN
    code = "shop_access_denied"


# --- Инфраструктурные ошибки ---

class ConcurrencyConflict(FlashDealError):
    """Не удалось захватить блокировку акции, попробуйте позже."""
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "concurrency_conflict"


class NotificationFailure(FlashDealError):
    """Сообщение не доставлено получателю."""
    status_code = status.HTTP_502_BAD_GATEWAY
    code = "notification_failure"

    def __init__(self, message: str | None = None, recipient: str | None = None, forbidden: bool = False):
        super().__init__(message)
        self.recipient = recipient
        # True, если WhatsApp сообщил, что номер недоступен для сообщений
        self.forbidden = forbidden


class SweepItemFailure(FlashDealError):
    """Не удалось обработать истекшую акцию в рамках прохода."""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "sweep_item_failure"
