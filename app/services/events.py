# app/services/events.py

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, List


class DealEventType(str, enum.Enum):
    DEAL_LIVE = "deal_live"
    CLAIMED = "claimed"
    MILESTONE = "milestone"
    TIER_UNLOCKED = "tier_unlocked"
    RESCUE_EXTENDED = "rescue_extended"
    RESCUE_BONUS = "rescue_bonus"
    ACTIVATED = "activated"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


@dataclass
class DealEvent:
    type: DealEventType
    deal_id: int
    payload: Dict[str, Any] = field(default_factory=dict)


class DealEventBuffer:
    """
    Копит события, возникшие внутри транзакции.
    Отправка уведомлений идет только после commit, без удержания блокировки акции.
    """
    def __init__(self):
        self._events: List[DealEvent] = []

    def emit(self, type: DealEventType, deal_id: int, **payload) -> DealEvent:
        event = DealEvent(type=type, deal_id=deal_id, payload=payload)
        self._events.append(event)
        return event

    @property
    def events(self) -> List[DealEvent]:
        return list(self._events)

    def of_type(self, type: DealEventType) -> List[DealEvent]:
        return [event for event in self._events if event.type == type]

    def __len__(self) -> int:
        return len(self._events)

    def __iter__(self):
        return iter(list(self._events))
