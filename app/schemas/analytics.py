# app/schemas/analytics.py
from typing import Dict, List, Optional
from pydantic import BaseModel


class DealAnalytics(BaseModel):
    """Итоги акции для владельца магазина."""
    completion_percent: float
    shortfall: int
    conversion_rate: float
    # Час с наибольшим числом заявок, например "7 PM"; "N/A" без заявок
    peak_time: str
    avg_claims_per_minute: Optional[float] = None
    avg_speed: str
    # Заявки по четвертям отведенного времени: q1..q4
    claim_timeline: Dict[str, int] = {}
    referral_percent: float
    suggestions: List[str] = []
