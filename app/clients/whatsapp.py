# app/clients/whatsapp.py

import httpx
import logging

from app.bot.payloads import ButtonsPayload, ListPayload, NotificationPayload, TextPayload
from app.core.config import settings
from app.core.exceptions import NotificationFailure

logger = logging.getLogger(__name__)

# Ограничения WhatsApp Cloud API на длину полей интерактивных сообщений
BUTTON_TITLE_LIMIT = 20
HEADER_LIMIT = 60
LIST_ROW_TITLE_LIMIT = 24

# Коды ошибок, после которых писать на номер бессмысленно
UNREACHABLE_ERROR_CODES = {131026, 131047, 131051}


def build_message(to: str, payload: NotificationPayload) -> dict:
    """Единственная точка, где вариант сообщения превращается в тело запроса к API."""
    message = {"messaging_product": "whatsapp", "recipient_type": "individual", "to": to}

    if isinstance(payload, TextPayload):
        message["type"] = "text"
        message["text"] = {"body": payload.body, "preview_url": False}
        return message

    if isinstance(payload, ButtonsPayload):
        interactive = {
            "type": "button",
            "body": {"text": payload.body},
            "action": {
                "buttons": [
                    {"type": "reply", "reply": {"id": button.id, "title": button.title[:BUTTON_TITLE_LIMIT]}}
                    for button in payload.buttons
                ]
            },
        }
    elif isinstance(payload, ListPayload):
        interactive = {
            "type": "list",
            "body": {"text": payload.body},
            "action": {
                "button": payload.button_text[:BUTTON_TITLE_LIMIT],
                "sections": [
                    {
                        "title": section.title,
                        "rows": [
                            {"id": row.id, "title": row.title[:LIST_ROW_TITLE_LIMIT], "description": row.description or ""}
                            for row in section.rows
                        ],
                    }
                    for section in payload.sections
                ],
            },
        }
    else:
        raise TypeError(f"Unsupported payload type: {type(payload).__name__}")

    if payload.header:
        interactive["header"] = {"type": "text", "text": payload.header[:HEADER_LIMIT]}
    message["type"] = "interactive"
    message["interactive"] = interactive
    return message


class WhatsAppClient:
    """
    Асинхронный клиент для WhatsApp Cloud API.
    Отправляет сообщения от имени одного бизнес-номера.
    """
    def __init__(self, base_url: str, phone_number_id: str, access_token: str):
        self.phone_number_id = phone_number_id
        timeouts = httpx.Timeout(10.0, read=30.0)
        self.async_client = httpx.AsyncClient(
            base_url=base_url,
            headers={"Authorization": f"Bearer {access_token}"},
            timeout=timeouts
        )

    async def send(self, to: str, payload: NotificationPayload) -> dict:
        """
        Отправляет одно сообщение. В случае успеха возвращает JSON-ответ (dict).
        Любая ошибка превращается в NotificationFailure.
        """
        body = build_message(to, payload)
        try:
            response = await self.async_client.post(f"/{self.phone_number_id}/messages", json=body)
            response.raise_for_status()
            return response.json()
        except httpx.RequestError as e:
            logger.error(f"Network error during WhatsApp send to {to}: {e!r}", exc_info=True)
            raise NotificationFailure(str(e), recipient=to) from e
        except httpx.HTTPStatusError as e:
            error_code = None
            try:
                error_code = e.response.json().get("error", {}).get("code")
            except ValueError:
                pass
            forbidden = e.response.status_code == 403 or error_code in UNREACHABLE_ERROR_CODES
            logger.error(f"HTTP error during WhatsApp send to {to}: {e.response.text}")
            raise NotificationFailure(e.response.text, recipient=to, forbidden=forbidden) from e

    async def close(self):
        await self.async_client.aclose()

# Создаем синглтон
whatsapp_client = WhatsAppClient(
    base_url=settings.WHATSAPP_API_URL,
    phone_number_id=settings.WHATSAPP_PHONE_NUMBER_ID,
    access_token=settings.WHATSAPP_ACCESS_TOKEN
)
