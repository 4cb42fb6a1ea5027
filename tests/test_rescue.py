# tests/test_rescue.py

from datetime import timedelta

from app.models.deal import Deal
from app.services.claim import register_claim
from app.services.events import DealEventBuffer, DealEventType
from app.services.rescue import apply_rescue, qualifies_for_rescue
from app.utils.clock import utcnow


def _deal(**fields):
    now = utcnow()
    values = dict(
        id=1, target_claims=20, current_claims=17, discount_percent=20,
        expires_at=now + timedelta(minutes=3), rescue_extended=False, rescue_bonus_added=False,
        rescue_extension_minutes=10, rescue_bonus_percent=5,
    )
    values.update(fields)
    return Deal(**values), now


def test_qualifies_only_when_close_and_running_out_of_time():
    deal, now = _deal()
    assert qualifies_for_rescue(deal, now)

    deal.current_claims = 15  # 75%
    assert not qualifies_for_rescue(deal, now)

    deal.current_claims = 17
    deal.expires_at = now + timedelta(minutes=6)
    assert not qualifies_for_rescue(deal, now)

    deal.current_claims = 20  # цель уже достигнута
    deal.expires_at = now + timedelta(minutes=3)
    assert not qualifies_for_rescue(deal, now)


def test_both_interventions_apply_once():
    deal, now = _deal()
    original_expiry = deal.expires_at
    events = DealEventBuffer()

    assert apply_rescue(deal, now, events) == ["extended", "bonus"]
    assert deal.expires_at == original_expiry + timedelta(minutes=10)
    assert deal.rescue_extended_at == now
    assert deal.original_discount_percent == 20
    assert deal.discount_percent == 25
    assert [event.type for event in events] == [DealEventType.RESCUE_EXTENDED, DealEventType.RESCUE_BONUS]

    # Даже если условия снова выполнены, повторно ничего не срабатывает
    deal.expires_at = now + timedelta(minutes=1)
    assert apply_rescue(deal, now, events) == []
    assert deal.discount_percent == 25
    assert len(events) == 2


def test_flags_are_independent():
    deal, now = _deal(rescue_extended=True)
    original_expiry = deal.expires_at
    events = DealEventBuffer()

    assert apply_rescue(deal, now, events) == ["bonus"]
    assert deal.expires_at == original_expiry
    assert deal.rescue_bonus_added is True


def test_bonus_is_capped_and_never_lowers_discount():
    deal, now = _deal(discount_percent=88)
    apply_rescue(deal, now, DealEventBuffer())
    assert deal.discount_percent == 90

    deal, now = _deal(discount_percent=90, rescue_extended=True)
    apply_rescue(deal, now, DealEventBuffer())
    assert deal.discount_percent == 90
    assert deal.rescue_bonus_added is True


def test_rescue_window_during_claims(db_session, make_deal, make_customers, claim_many):
    """
    Акция на 85% цели за 3 минуты до конца: ровно одно продление и один бонус,
    сколько бы заявок ни пришло после.
    """
    deal = make_deal(target_claims=20, discount_percent=20, rescue_extension_minutes=10, rescue_bonus_percent=5)
    original_expiry = deal.expires_at
    customers = make_customers(19)
    claim_many(deal, customers[:16], now=deal.starts_at + timedelta(minutes=1))

    rescue_events = []
    late = original_expiry - timedelta(minutes=3)
    for offset, customer in enumerate(customers[16:]):
        _, events = register_claim(db_session, deal.id, customer.id, now=late + timedelta(seconds=offset))
        rescue_events += [
            event.type for event in events
            if event.type in (DealEventType.RESCUE_EXTENDED, DealEventType.RESCUE_BONUS)
        ]

    assert rescue_events == [DealEventType.RESCUE_EXTENDED, DealEventType.RESCUE_BONUS]
    db_session.expire_all()
    assert deal.current_claims == 19
    assert deal.rescue_extended is True
    assert deal.rescue_bonus_added is True
    assert deal.expires_at == original_expiry + timedelta(minutes=10)
    assert deal.original_discount_percent == 20
    assert deal.discount_percent == 25
