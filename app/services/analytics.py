# app/services/analytics.py

from collections import Counter
from typing import Dict, List, Sequence

from app.models.claim import DealClaim
from app.models.deal import Deal
from app.schemas.analytics import DealAnalytics

# Сколько советов показываем владельцу магазина
MAX_SUGGESTIONS = 2

GENERIC_SUGGESTIONS = [
    "Share the deal in local WhatsApp groups",
    "Create urgency with a shorter time window",
]


def _format_hour(hour: int) -> str:
    """17 -> '5 PM', 0 -> '12 AM'."""
    suffix = "AM" if hour < 12 else "PM"
    return f"{hour % 12 or 12} {suffix}"


def _peak_time(claims: Sequence[DealClaim]) -> str:
    if not claims:
        return "N/A"
    counts = Counter(claim.claimed_at.hour for claim in claims)
    # При равенстве берем более ранний час
    peak_hour = min(counts, key=lambda hour: (-counts[hour], hour))
    return _format_hour(peak_hour)


def _claim_speed(claims: Sequence[DealClaim]) -> tuple[float | None, str]:
    if len(claims) < 2:
        return None, "N/A"
    first, last = claims[0].claimed_at, claims[-1].claimed_at
    minutes = int((last - first).total_seconds() // 60)
    if minutes <= 0:
        return None, "Burst!"
    per_minute = round(len(claims) / minutes, 2)
    return per_minute, f"{per_minute}/min"


def _claim_timeline(deal: Deal, claims: Sequence[DealClaim]) -> Dict[str, int]:
    """Распределение заявок по четвертям изначально отведенного времени."""
    if not claims:
        return {}
    quarter = deal.time_limit_minutes / 4
    timeline = {"q1": 0, "q2": 0, "q3": 0, "q4": 0}
    for claim in claims:
        elapsed = (claim.claimed_at - deal.starts_at).total_seconds() / 60
        if elapsed <= quarter:
            timeline["q1"] += 1
        elif elapsed <= quarter * 2:
            timeline["q2"] += 1
        elif elapsed <= quarter * 3:
            timeline["q3"] += 1
        else:
            timeline["q4"] += 1
    return timeline


def _suggestions(deal: Deal, completion: float, conversion: float,
                 timeline: Dict[str, int], referral_percent: float) -> List[str]:
    suggestions = []

    if completion < 50 and deal.target_claims > 20:
        suggestions.append(f"Try a lower target ({int(deal.target_claims * 0.6)} people)")

    if completion > 70 and deal.time_limit_minutes <= 30:
        suggestions.append(f"Extend the time window to {deal.time_limit_minutes * 2} minutes (you were close!)")

    if conversion < 5 and deal.discount_percent < 30:
        suggestions.append("Offer a higher discount (40%+ attracts more customers)")

    if timeline and timeline["q1"] > timeline["q2"] * 2:
        suggestions.append("Send sharing reminders mid-deal, claims slowed down after the start")

    if referral_percent < 20:
        suggestions.append("Encourage sharing with referral bonuses")

    suggestions = suggestions[:MAX_SUGGESTIONS]
    for generic in GENERIC_SUGGESTIONS:
        if len(suggestions) >= MAX_SUGGESTIONS:
            break
        suggestions.append(generic)
    return suggestions


def compute_deal_analytics(deal: Deal, claims: Sequence[DealClaim]) -> DealAnalytics:
    """
    Чистая функция: итоги акции по ее заявкам на момент истечения.
    Ничего не пишет в БД.
    """
    claims = sorted(claims, key=lambda claim: claim.claimed_at)

    completion = round(deal.current_claims * 100 / deal.target_claims, 1) if deal.target_claims else 0.0
    shortfall = max(0, deal.target_claims - deal.current_claims)
    conversion = (
        round(deal.current_claims * 100 / deal.notified_customers_count, 1)
        if deal.notified_customers_count else 0.0
    )

    per_minute, speed_display = _claim_speed(claims)
    timeline = _claim_timeline(deal, claims)

    referred = sum(1 for claim in claims if claim.referred_by_user_id is not None)
    referral_percent = round(referred * 100 / len(claims), 1) if claims else 0.0

    return DealAnalytics(
        completion_percent=completion,
        shortfall=shortfall,
        conversion_rate=conversion,
        peak_time=_peak_time(claims),
        avg_claims_per_minute=per_minute,
        avg_speed=speed_display,
        claim_timeline=timeline,
        referral_percent=referral_percent,
        suggestions=_suggestions(deal, completion, conversion, timeline, referral_percent),
    )
