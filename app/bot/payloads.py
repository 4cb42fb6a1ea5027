# app/bot/payloads.py

from typing import Annotated, List, Literal, Optional, Union
from pydantic import BaseModel, Field


class ReplyButton(BaseModel):
    id: str
    title: str


class ListRow(BaseModel):
    id: str
    title: str
    description: Optional[str] = None


class ListSection(BaseModel):
    title: str
    rows: List[ListRow]


class TextPayload(BaseModel):
    """Обычное текстовое сообщение."""
    type: Literal["text"] = "text"
    body: str


class ButtonsPayload(BaseModel):
    """Сообщение с кнопками быстрого ответа (WhatsApp разрешает до 3 кнопок)."""
    type: Literal["buttons"] = "buttons"
    body: str
    buttons: List[ReplyButton] = Field(..., min_length=1, max_length=3)
    header: Optional[str] = None


class ListPayload(BaseModel):
    """Сообщение со списком вариантов."""
    type: Literal["list"] = "list"
    body: str
    button_text: str
    sections: List[ListSection] = Field(..., min_length=1)
    header: Optional[str] = None


NotificationPayload = Annotated[
    Union[TextPayload, ButtonsPayload, ListPayload],
    Field(discriminator="type"),
]
