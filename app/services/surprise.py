# app/services/surprise.py

from app.models.deal import Deal
from app.schemas.deal import RevealedContent

HIDDEN_TEXT = "???"


def mystery_title(shop_name: str | None, category: str | None = None) -> str:
    """Публичный заголовок акции-сюрприза до раскрытия."""
    shop_name = shop_name or "a Shop"
    if category:
        return f"Mystery {category} Deal from {shop_name}"
    return f"Mystery Deal from {shop_name}"


def revealed_content(deal: Deal) -> RevealedContent:
    """
    Настоящее содержимое акции. Скидка берется текущая: уровни цепочки
    и бонус "спасения" могли ее поднять после создания.
    """
    return RevealedContent(
        title=deal.hidden_title or deal.title,
        discount_percent=deal.discount_percent,
        product=deal.hidden_product,
        max_discount_value=deal.max_discount_value,
    )
