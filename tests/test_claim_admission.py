# tests/test_claim_admission.py

import asyncio
import re
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.exc import OperationalError

from app.core.exceptions import AlreadyClaimed, ConcurrencyConflict, DealExpired, DealNotFound, DealNotLive
from app.crud import claim as crud_claim
from app.db.session import SessionLocal
from app.models.deal import DealStatus
from app.services import claim as claim_service
from app.services.claim import admit_claim, register_claim
from app.services.events import DealEventType
from app.utils.clock import utcnow


def test_positions_are_dense_and_counter_matches(db_session, make_deal, make_customers, claim_many):
    deal = make_deal(target_claims=10)
    customers = make_customers(6)

    results = claim_many(deal, customers)

    assert [result.position for result in results] == [1, 2, 3, 4, 5, 6]
    db_session.expire_all()
    claims = crud_claim.get_deal_claims(db_session, deal.id)
    assert [claim.position for claim in claims] == list(range(1, deal.current_claims + 1))
    assert deal.current_claims == crud_claim.count_deal_claims(db_session, deal.id) == 6
    assert results[-1].claims_remaining == 4
    assert results[-1].activated is False
    assert results[-1].coupon_code is None


def test_second_claim_by_same_customer_is_rejected(db_session, make_deal, make_customers):
    deal = make_deal()
    customer, = make_customers(1)
    register_claim(db_session, deal.id, customer.id)

    with pytest.raises(AlreadyClaimed):
        register_claim(db_session, deal.id, customer.id)

    db_session.expire_all()
    assert deal.current_claims == 1
    assert crud_claim.count_deal_claims(db_session, deal.id) == 1


def test_claim_on_unknown_deal(db_session, make_customers):
    customer, = make_customers(1)
    with pytest.raises(DealNotFound):
        register_claim(db_session, 999, customer.id)


@pytest.mark.parametrize("status", [DealStatus.SCHEDULED, DealStatus.EXPIRED, DealStatus.CANCELLED])
def test_claim_requires_live_deal(db_session, make_deal, make_customers, status):
    deal = make_deal(status=status)
    customer, = make_customers(1)

    with pytest.raises(DealNotLive):
        register_claim(db_session, deal.id, customer.id)

    db_session.expire_all()
    assert deal.current_claims == 0


def test_claim_after_timer_ran_out_is_rejected(db_session, make_deal, make_customers):
    deal = make_deal()
    customer, = make_customers(1)

    with pytest.raises(DealExpired):
        register_claim(db_session, deal.id, customer.id, now=deal.expires_at)


def test_thirtieth_claim_one_second_before_expiry_activates(db_session, make_deal, make_customers, claim_many):
    deal = make_deal(target_claims=30, time_limit_minutes=30)
    customers = make_customers(30)
    claim_many(deal, customers[:29], now=deal.starts_at + timedelta(minutes=1))

    last, events = register_claim(
        db_session, deal.id, customers[29].id, now=deal.expires_at - timedelta(seconds=1)
    )

    assert last.position == 30
    assert last.activated is True
    assert re.fullmatch(r"FLASH-[A-Z0-9]{6}", last.coupon_code)
    assert [event.type for event in events].count(DealEventType.ACTIVATED) == 1

    db_session.expire_all()
    assert deal.status == DealStatus.ACTIVATED
    assert deal.activated_at == deal.expires_at - timedelta(seconds=1)
    codes = [claim.coupon_code for claim in crud_claim.get_deal_claims(db_session, deal.id)]
    assert len(codes) == 30
    assert all(codes)
    assert len(set(codes)) == 30


def test_claim_after_activation_is_rejected(db_session, make_deal, make_customers, claim_many):
    deal = make_deal(target_claims=2)
    first, second, late = make_customers(3)
    claim_many(deal, [first, second])

    with pytest.raises(DealNotLive):
        register_claim(db_session, deal.id, late.id)

    db_session.expire_all()
    assert deal.current_claims == 2


def test_repeated_activation_after_target_changes_nothing(db_session, make_deal, make_customers, claim_many):
    """Повторная активация и проход истечения после достижения цели ничего не меняют."""
    deal = make_deal(target_claims=30)
    customers = make_customers(31)
    claim_many(deal, customers[:28])

    r29, _ = register_claim(db_session, deal.id, customers[28].id)
    r30, _ = register_claim(db_session, deal.id, customers[29].id)

    assert sorted([r29.position, r30.position]) == [29, 30]
    assert [r29.activated, r30.activated].count(True) == 1

    db_session.expire_all()
    activated_at = deal.activated_at
    codes = {claim.id: claim.coupon_code for claim in crud_claim.get_deal_claims(db_session, deal.id)}

    from app.crud import deal as crud_deal
    from app.services import lifecycle
    from app.services.events import DealEventBuffer

    events = DealEventBuffer()
    locked = crud_deal.lock_deal(db_session, deal.id)
    assert lifecycle.activate(db_session, locked, events, now=utcnow() + timedelta(seconds=5)) is False
    assert lifecycle.expire(db_session, locked, events, now=utcnow() + timedelta(hours=1)) is None
    db_session.commit()

    assert len(events) == 0
    db_session.expire_all()
    assert deal.activated_at == activated_at
    assert {claim.id: claim.coupon_code for claim in crud_claim.get_deal_claims(db_session, deal.id)} == codes


@pytest.fixture
def serialized_engine(db_session):
    """
    Отдельный движок на тот же файл БД для параллельных потоков.
    SQLite игнорирует FOR UPDATE, поэтому транзакция сразу берет блокировку записи (BEGIN IMMEDIATE).
    """
    engine = create_engine(db_session.get_bind().url, connect_args={"check_same_thread": False, "timeout": 30})

    @event.listens_for(engine, "connect")
    def _disable_driver_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    yield engine
    engine.dispose()


def test_concurrent_last_claims_activate_exactly_once(
    db_session, serialized_engine, make_deal, make_customers, claim_many
):
    """29-я и 30-я заявки при цели 30 приходят одновременно из разных сессий."""
    deal = make_deal(target_claims=30)
    customers = make_customers(30)
    claim_many(deal, customers[:28])
    deal_id = deal.id
    racing_ids = [customers[28].id, customers[29].id]
    db_session.commit()
    barrier = threading.Barrier(2)

    def submit(customer_id):
        barrier.wait()
        with SessionLocal(bind=serialized_engine) as db:
            return register_claim(db, deal_id, customer_id)

    with ThreadPoolExecutor(max_workers=2) as pool:
        results = list(pool.map(submit, racing_ids))

    assert sorted(result.position for result, _ in results) == [29, 30]
    assert [result.activated for result, _ in results].count(True) == 1
    activations = [e for _, events in results for e in events if e.type == DealEventType.ACTIVATED]
    assert len(activations) == 1

    db_session.expire_all()
    assert deal.status == DealStatus.ACTIVATED
    assert deal.current_claims == 30
    assert deal.activated_at is not None
    codes = [claim.coupon_code for claim in crud_claim.get_deal_claims(db_session, deal_id)]
    assert len(codes) == 30
    assert None not in codes
    assert len(set(codes)) == 30


@pytest.mark.asyncio
async def test_waiting_for_the_deal_lock_does_not_block_other_requests(mocker):
    def slow_register(*args, **kwargs):
        time.sleep(0.3)
        return "result", []

    mocker.patch.object(claim_service, "register_claim", side_effect=slow_register)
    mocker.patch.object(claim_service, "dispatch_events", new_callable=AsyncMock)
    finished = False
    ticks = 0

    async def other_request():
        nonlocal ticks
        while not finished:
            ticks += 1
            await asyncio.sleep(0.01)

    async def claim():
        nonlocal finished
        result = await claim_service.claim_deal(None, 1, 2)
        finished = True
        return result

    result, _ = await asyncio.gather(claim(), other_request())

    assert result == "result"
    assert ticks >= 5


def test_milestones_are_recorded_once_and_never_skipped(db_session, make_deal, make_customers):
    deal = make_deal(target_claims=8)
    customers = make_customers(5)

    milestone_percents = []
    for customer in customers:
        _, events = register_claim(db_session, deal.id, customer.id)
        milestone_percents += [event.payload["percent"] for event in events if event.type == DealEventType.MILESTONE]

    # 2/8 = 25%, 4/8 = 50%, 5/8 = 62.5%
    assert milestone_percents == [25, 50]
    db_session.expire_all()
    assert deal.milestones_notified == [25, 50]
    second = crud_claim.get_user_claim(db_session, deal.id, customers[1].id)
    assert second.milestone_notifications_sent == [25]


def test_claim_jumping_over_a_milestone_still_records_it(db_session, make_deal, make_customers):
    # 3 заявки из 11: 27%, порог 25% пройден без точного попадания
    deal = make_deal(target_claims=11)
    customers = make_customers(3)
    percents = []
    for customer in customers:
        _, events = register_claim(db_session, deal.id, customer.id)
        percents += [event.payload["percent"] for event in events if event.type == DealEventType.MILESTONE]

    assert percents == [25]


def test_referral_and_claim_source(db_session, make_deal, make_customers):
    deal = make_deal()
    friend, customer, loner = make_customers(3)
    register_claim(db_session, deal.id, friend.id)
    register_claim(db_session, deal.id, customer.id, referred_by=friend.id)
    register_claim(db_session, deal.id, loner.id, referred_by=loner.id)

    referred = crud_claim.get_user_claim(db_session, deal.id, customer.id)
    assert referred.referred_by_user_id == friend.id
    assert referred.claim_source == "share"

    self_referred = crud_claim.get_user_claim(db_session, deal.id, loner.id)
    assert self_referred.referred_by_user_id is None
    assert self_referred.claim_source == "notification"


def test_lock_timeouts_are_retried_then_surface_as_conflict(db_session, make_deal, make_customers, mocker, monkeypatch):
    from app.core.config import settings
    monkeypatch.setattr(settings, "CLAIM_LOCK_RETRIES", 3)

    deal = make_deal()
    customer, = make_customers(1)
    locked = mocker.patch.object(
        claim_service, "admit_claim",
        side_effect=OperationalError("SELECT ... FOR UPDATE", {}, Exception("lock timeout"))
    )

    with pytest.raises(ConcurrencyConflict):
        register_claim(db_session, deal.id, customer.id)
    assert locked.call_count == 3


def test_lock_timeout_then_success(db_session, make_deal, make_customers, mocker):
    deal = make_deal()
    customer, = make_customers(1)
    calls = {"n": 0}

    def flaky(*args, **kwargs):
        calls["n"] += 1
        if calls["n"] == 1:
            raise OperationalError("SELECT ... FOR UPDATE", {}, Exception("lock timeout"))
        return admit_claim(*args, **kwargs)

    mocker.patch.object(claim_service, "admit_claim", side_effect=flaky)

    result, _ = register_claim(db_session, deal.id, customer.id)
    assert result.position == 1
    assert calls["n"] == 2


@pytest.mark.asyncio
async def test_claim_deal_dispatches_after_commit(db_session, make_deal, make_customers, mocker):
    deal = make_deal()
    customer, = make_customers(1)
    dispatch = mocker.patch.object(claim_service, "dispatch_events", new_callable=mocker.AsyncMock)

    result = await claim_service.claim_deal(db_session, deal.id, customer.id)

    assert result.position == 1
    dispatch.assert_awaited_once()
    dispatched = dispatch.await_args.args[0]
    assert [event.type for event in dispatched] == [DealEventType.CLAIMED]
