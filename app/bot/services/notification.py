# app/bot/services/notification.py
import asyncio
import logging
from datetime import datetime

from sqlalchemy.orm import Session

from app.bot.payloads import ButtonsPayload, NotificationPayload, ReplyButton, TextPayload
from app.clients.whatsapp import whatsapp_client
from app.core.config import settings
from app.core.exceptions import NotificationFailure
from app.crud import claim as crud_claim
from app.crud import notification as crud_notification
from app.crud import user as crud_user
from app.models.claim import DealClaim
from app.models.deal import Deal
from app.models.user import User
from app.schemas.analytics import DealAnalytics
from app.services.surprise import HIDDEN_TEXT, revealed_content
from app.utils.clock import utcnow

logger = logging.getLogger(__name__)


async def _send_message(
    db: Session,
    user: User,
    payload: NotificationPayload,
    type: str,
    deal_id: int | None = None
) -> tuple[bool, str | None]:
    """
    Приватная функция-обертка для безопасной отправки сообщений.
    Никогда не выбрасывает исключений: ошибка одного получателя не мешает остальным.
    Обновляет статус 'whatsapp_accessible', если номер недоступен.
    Возвращает кортеж (успех: bool, причина_неудачи: str | None).
    """
    if not user.whatsapp_accessible:
        reason = "WhatsApp is marked as inaccessible"
        logger.info(f"Skipping '{type}' notification for user {user.id}: {reason}.")
        _log(db, type, "skipped", user.id, deal_id, reason)
        return False, reason

    try:
        await whatsapp_client.send(user.phone, payload)
        _log(db, type, "sent", user.id, deal_id)
        return True, None
    except NotificationFailure as e:
        reason = e.message
        if e.forbidden:
            logger.error(f"User {user.id} cannot receive WhatsApp messages. Updating status.")
            crud_user.mark_whatsapp_inaccessible(db, user)
        else:
            logger.error(f"Failed to send '{type}' to user {user.id}: {reason}")
        _log(db, type, "failed", user.id, deal_id, reason)
        return False, reason
    except Exception as e:
        reason = str(e)  # Любая другая ошибка
        logger.error(f"Unexpected error sending '{type}' to user {user.id}", exc_info=True)
        _log(db, type, "failed", user.id, deal_id, reason)
        return False, reason


def _log(db: Session, type: str, status: str, user_id: int | None, deal_id: int | None, error: str | None = None):
    try:
        crud_notification.create_notification_log(
            db, type=type, status=status, user_id=user_id, deal_id=deal_id, error=error
        )
    except Exception:
        logger.error(f"Failed to write notification log for user {user_id}", exc_info=True)
        db.rollback()


async def _fan_out_to_claimants(db: Session, deal: Deal, payload: NotificationPayload, type: str) -> int:
    """Отправляет одно и то же сообщение всем участникам акции. Возвращает число доставленных."""
    delivered = 0
    for claim in crud_claim.get_deal_claims(db, deal.id):
        ok, _ = await _send_message(db, claim.user, payload, type, deal.id)
        if ok:
            delivered += 1
        await asyncio.sleep(settings.NOTIFICATION_SEND_PAUSE_SECONDS)
    return delivered


# --- Форматирование ---

def _time_remaining(deal: Deal, now: datetime | None = None) -> str:
    seconds = max(0, int((deal.expires_at - (now or utcnow())).total_seconds()))
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours:02d}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


def _progress_bar(deal: Deal) -> str:
    filled = round(deal.progress_percent / 10)
    return "🟩" * filled + "⬜" * (10 - filled)


def _discount_display(deal: Deal) -> str:
    display = f"{deal.discount_percent}% OFF"
    if deal.max_discount_value:
        display += f" (max ₹{deal.max_discount_value})"
    return display


def _shop_name(deal: Deal) -> str:
    return deal.shop.name if deal.shop else "the shop"


# --- Порт уведомлений ---

async def send_deal_live(db: Session, customer: User, deal: Deal) -> bool:
    """Оповещение покупателя поблизости о старте акции."""
    if deal.is_surprise_deal:
        body = (
            f"🎁✨ *MYSTERY DEAL!* ✨🎁\n\n"
            f"🏪 *{_shop_name(deal)}*\n\n"
            f"🎁 *{HIDDEN_TEXT}% OFF* on *{HIDDEN_TEXT}*\n"
            f"❓ _What's the deal? Only one way to find out!_\n\n"
            f"👥 First *{deal.target_claims}* people discover the offer!\n"
            f"⏰ {_time_remaining(deal)} remaining"
        )
        buttons = [
            ReplyButton(id=f"surprise_reveal_{deal.id}", title="🎁 Reveal & Claim!"),
            ReplyButton(id=f"surprise_skip_{deal.id}", title="⏭️ Skip"),
        ]
        header = "🎁 MYSTERY DEAL!"
    else:
        body = (
            f"⚡ *FLASH DEAL!*\n\n"
            f"*{deal.title}*\n"
            f"🏪 {_shop_name(deal)}\n"
            f"💰 *{_discount_display(deal)}*\n\n"
            f"🎯 Unlocks only if *{deal.target_claims}* people claim in *{deal.time_limit_minutes} min*!\n"
            f"⏰ {_time_remaining(deal)} remaining"
        )
        buttons = [
            ReplyButton(id=f"flash_claim_{deal.id}", title="⚡ Claim Now"),
            ReplyButton(id=f"flash_skip_{deal.id}", title="⏭️ Skip"),
        ]
        header = "⚡ FLASH DEAL"
    payload = ButtonsPayload(body=body, buttons=buttons, header=header)
    ok, _ = await _send_message(db, customer, payload, "deal_live", deal.id)
    return ok


async def send_claim_confirmation(db: Session, customer: User, claim: DealClaim, deal: Deal) -> bool:
    """Подтверждение заявки: позиция в очереди и прогресс."""
    if deal.is_surprise_deal:
        revealed = revealed_content(deal)
        lines = [
            "🎁✨ *REVEALED!* ✨🎁\n",
            f"🎯 *{revealed.title}*",
            f"💰 *{revealed.discount_percent}% OFF!*",
        ]
        if revealed.product:
            lines.append(f"🛍️ *On:* {revealed.product}")
        lines.append("")
    else:
        lines = [f"✅ *You're in!* {deal.title}\n"]

    lines.append(f"🎟️ Your position: *#{claim.position}*")
    if claim.coupon_code:
        lines.append(f"🎉 Deal activated! Your coupon: *{claim.coupon_code}*")
    else:
        lines.append(f"📊 {deal.current_claims}/{deal.target_claims} {_progress_bar(deal)}")
        lines.append(f"👥 *{deal.claims_remaining}* more needed, share with friends!")
        lines.append(f"⏰ {_time_remaining(deal)} remaining")

    payload = ButtonsPayload(
        body="\n".join(lines),
        buttons=[ReplyButton(id=f"flash_share_{deal.id}", title="📤 Share Deal")],
    )
    ok, _ = await _send_message(db, customer, payload, "claim_confirmation", deal.id)
    return ok


async def send_milestone(db: Session, deal: Deal, percent: int) -> int:
    """Сообщение всем участникам о достигнутом проценте цели."""
    body = (
        f"🔥 *{percent}% there!*\n\n"
        f"*{deal.title}*\n"
        f"📊 {deal.current_claims}/{deal.target_claims} {_progress_bar(deal)}\n"
        f"👥 Only *{deal.claims_remaining}* more needed!\n"
        f"⏰ {_time_remaining(deal)} remaining"
    )
    payload = ButtonsPayload(
        body=body,
        buttons=[ReplyButton(id=f"flash_share_{deal.id}", title="📤 Share Deal")],
    )
    return await _fan_out_to_claimants(db, deal, payload, f"milestone_{percent}")


async def send_tier_unlocked(db: Session, deal: Deal, level: int, discount_percent: int) -> int:
    """Цепочка: открыт новый уровень, скидка выросла для всех участников."""
    body = (
        f"🔓 *LEVEL {level} UNLOCKED!*\n\n"
        f"*{deal.title}*\n"
        f"💰 Discount is now *{discount_percent}% OFF* for everyone!\n"
        f"📊 {deal.current_claims} people claimed so far"
    )
    payload = TextPayload(body=body)
    return await _fan_out_to_claimants(db, deal, payload, "tier_unlocked")


async def send_rescue_applied(db: Session, deal: Deal, kind: str, details: dict) -> int:
    """Режим "спасения": продление или бонусная скидка. Пишем участникам и владельцу."""
    if kind == "extended":
        body = (
            f"⏰ *EXTRA TIME!*\n\n"
            f"*{deal.title}* is so close! We added *{details.get('minutes')} minutes*.\n"
            f"👥 Only *{deal.claims_remaining}* more needed!"
        )
    else:
        body = (
            f"🎁 *BONUS DISCOUNT!*\n\n"
            f"*{deal.title}* now gives *{details.get('discount_percent')}% OFF* "
            f"(was {details.get('original_discount_percent')}%)!\n"
            f"👥 Only *{deal.claims_remaining}* more needed!"
        )
    payload = TextPayload(body=body)
    delivered = await _fan_out_to_claimants(db, deal, payload, f"rescue_{kind}")

    owner = deal.shop.owner if deal.shop else None
    if owner:
        owner_payload = TextPayload(
            body=f"🛟 *Rescue mode applied* to *{deal.title}*: "
                 f"{'time extended' if kind == 'extended' else 'bonus discount added'}.\n"
                 f"📊 {deal.current_claims}/{deal.target_claims}"
        )
        ok, _ = await _send_message(db, owner, owner_payload, f"rescue_{kind}_owner", deal.id)
        if ok:
            delivered += 1
    return delivered


async def send_activation(db: Session, customer: User, claim: DealClaim, deal: Deal) -> bool:
    """Купон участнику после активации акции."""
    valid_until = deal.coupon_valid_until.strftime("%b %d, %I:%M %p") if deal.coupon_valid_until else "Today"
    body = (
        f"🎉🎉🎉 *DEAL ACTIVATED!* 🎉🎉🎉\n\n"
        f"⚡ *{revealed_content(deal).title if deal.is_surprise_deal else deal.title}*\n"
        f"💰 {_discount_display(deal)}!\n\n"
        f"🎫 *Your Coupon:*\n*{claim.coupon_code}*\n\n"
        f"🏪 {_shop_name(deal)}\n"
        f"⏰ Valid till: {valid_until}"
    )
    payload = ButtonsPayload(
        body=body,
        buttons=[
            ReplyButton(id=f"flash_directions_{deal.id}", title="📍 Get Directions"),
            ReplyButton(id=f"flash_share_{deal.id}", title="📤 Share Victory!"),
        ],
        header="🎉 COUPON UNLOCKED!",
    )
    ok, _ = await _send_message(db, customer, payload, "activation", deal.id)
    return ok


async def send_activation_to_shop(db: Session, deal: Deal) -> bool:
    """Сводка для владельца магазина об активации."""
    owner = deal.shop.owner if deal.shop else None
    if not owner:
        logger.warning(f"Deal {deal.id}: no shop owner to notify about activation.")
        return False
    body = (
        f"🎉 *Flash Deal Activated!*\n\n"
        f"⚡ {deal.title}\n"
        f"👥 {deal.current_claims} people claimed!\n"
        f"💰 Final discount: {deal.discount_percent}%\n\n"
        f"_Get ready for customers!_"
    )
    payload = ButtonsPayload(
        body=body,
        buttons=[
            ReplyButton(id=f"view_claims_{deal.id}", title="📋 View Claims"),
            ReplyButton(id="main_menu", title="🏠 Menu"),
        ],
        header="🎉 Deal Activated!",
    )
    ok, _ = await _send_message(db, owner, payload, "activation_shop", deal.id)
    return ok


async def send_expiry(db: Session, customer: User, deal: Deal) -> bool:
    """Участнику: акция не набрала цель. С кнопкой подписки на магазин."""
    shortfall = max(0, deal.target_claims - deal.current_claims)
    body = (
        f"😕 *Flash Deal Expired*\n\n"
        f"⚡ *{deal.title}*\n"
        f"🏪 {_shop_name(deal)}\n\n"
        f"📊 *Final Count:* {deal.current_claims}/{deal.target_claims}\n"
        f"{_progress_bar(deal)}\n\n"
        f"❌ *{shortfall} more were needed*\n"
        f"_Better luck next time!_\n\n"
        f"🔔 Follow *{_shop_name(deal)}* to get notified of future deals!"
    )
    payload = ButtonsPayload(
        body=body,
        buttons=[
            ReplyButton(id=f"follow_shop_{deal.shop_id}", title="🔔 Follow Shop"),
            ReplyButton(id="browse_flash_deals", title="⚡ Other Deals"),
            ReplyButton(id="main_menu", title="🏠 Menu"),
        ],
        header="⏰ Deal Expired",
    )
    ok, _ = await _send_message(db, customer, payload, "expiry", deal.id)
    return ok


async def send_cancellation(db: Session, customer: User, deal: Deal) -> bool:
    body = (
        f"❌ *Deal Cancelled*\n\n"
        f"*{deal.title}* by {_shop_name(deal)} was cancelled.\n"
        f"_Sorry! Stay tuned for the next one._"
    )
    ok, _ = await _send_message(db, customer, TextPayload(body=body), "cancellation", deal.id)
    return ok


async def send_analytics(db: Session, shop_owner: User, deal: Deal, analytics: DealAnalytics) -> bool:
    """Отчет владельцу магазина по истекшей акции."""
    suggestions = "\n".join(f"• {suggestion}" for suggestion in analytics.suggestions)
    body = (
        f"📊 *Flash Deal Report*\n\n"
        f"⚡ *{deal.title}*\n\n"
        f"📈 *Results:*\n"
        f"• Claims: *{deal.current_claims}/{deal.target_claims}* ({analytics.completion_percent}%)\n"
        f"• Shortfall: *{analytics.shortfall}* people\n"
        f"• Notified: {deal.notified_customers_count} customers\n"
        f"• Conversion: {analytics.conversion_rate}%\n"
        f"• Via referrals: {analytics.referral_percent}%\n\n"
        f"⏰ *Timing:*\n"
        f"• Peak time: {analytics.peak_time}\n"
        f"• Duration: {deal.time_limit_minutes} mins\n"
        f"• Avg speed: {analytics.avg_speed}\n\n"
        f"💡 *Suggestions for next time:*\n{suggestions}"
    )
    payload = ButtonsPayload(
        body=body,
        buttons=[
            ReplyButton(id="flash_create", title="⚡ Try Again"),
            ReplyButton(id="my_flash_deals", title="📋 My Deals"),
        ],
        header="📊 Deal Analytics",
    )
    ok, _ = await _send_message(db, shop_owner, payload, "analytics", deal.id)
    return ok


async def send_error_to_admins(text: str):
    """Отправляет сообщение об ошибке всем администраторам из настроек."""
    for phone in settings.ADMIN_PHONE_NUMBERS:
        try:
            await whatsapp_client.send(phone, TextPayload(body=text[:4000]))
        except Exception:
            logger.error(f"Failed to send error alert to admin {phone}", exc_info=True)
