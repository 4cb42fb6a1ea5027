# tests/test_api_deals.py

import pytest

from app.core.config import settings
from app.core.exceptions import ConcurrencyConflict
from app.models.deal import DealStatus
from app.services import claim as claim_service

pytestmark = pytest.mark.asyncio


async def test_owner_creates_a_live_deal(client, auth_headers, owner, shop, whatsapp_send):
    response = await client.post(
        "/api/v1/deals",
        json={"shop_id": shop.id, "title": "Masala Chai", "discount_percent": 30,
              "target_claims": 10, "time_limit_minutes": 30},
        headers=auth_headers(owner),
    )

    assert response.status_code == 201
    data = response.json()
    assert data["status"] == "live"
    assert data["claims_remaining"] == 10
    assert data["discount_percent"] == 30


async def test_customer_cannot_create_deals(client, auth_headers, shop, make_customers):
    customer, = make_customers(1)
    response = await client.post(
        "/api/v1/deals",
        json={"shop_id": shop.id, "title": "Chai", "discount_percent": 30,
              "target_claims": 10, "time_limit_minutes": 30},
        headers=auth_headers(customer),
    )
    assert response.status_code == 403


async def test_invalid_deal_is_rejected(client, auth_headers, owner, shop):
    response = await client.post(
        "/api/v1/deals",
        json={"shop_id": shop.id, "title": "Chai", "discount_percent": 95,
              "target_claims": 10, "time_limit_minutes": 30},
        headers=auth_headers(owner),
    )
    assert response.status_code == 422


async def test_claim_flow(client, auth_headers, make_deal, make_customers, whatsapp_send):
    deal = make_deal(target_claims=2)
    first, second = make_customers(2)

    response = await client.post(f"/api/v1/deals/{deal.id}/claims", headers=auth_headers(first))
    assert response.status_code == 201
    assert response.json()["position"] == 1
    assert response.json()["activated"] is False

    again = await client.post(f"/api/v1/deals/{deal.id}/claims", headers=auth_headers(first))
    assert again.status_code == 409
    assert again.json()["code"] == "already_claimed"

    response = await client.post(
        f"/api/v1/deals/{deal.id}/claims", json={"referred_by": first.id}, headers=auth_headers(second)
    )
    assert response.status_code == 201
    data = response.json()
    assert data["activated"] is True
    assert data["deal_status"] == DealStatus.ACTIVATED.value
    assert data["coupon_code"].startswith("FLASH-")


async def test_claim_requires_authentication(client, make_deal):
    deal = make_deal()
    response = await client.post(f"/api/v1/deals/{deal.id}/claims")
    assert response.status_code in (401, 403)


async def test_lock_contention_is_reported_as_temporarily_unavailable(
    client, auth_headers, make_deal, make_customers, mocker
):
    deal = make_deal()
    customer, = make_customers(1)
    mocker.patch.object(claim_service, "register_claim", side_effect=ConcurrencyConflict(deal_id=deal.id))

    response = await client.post(f"/api/v1/deals/{deal.id}/claims", headers=auth_headers(customer))

    assert response.status_code == 503
    assert response.json()["code"] == "concurrency_conflict"


async def test_claim_on_cancelled_deal(client, auth_headers, make_deal, make_customers):
    deal = make_deal(status=DealStatus.CANCELLED)
    customer, = make_customers(1)
    response = await client.post(f"/api/v1/deals/{deal.id}/claims", headers=auth_headers(customer))
    assert response.status_code == 409
    assert response.json()["code"] == "deal_not_live"


async def test_get_deal_snapshot(client, auth_headers, make_deal, make_customers, claim_many):
    deal = make_deal(target_claims=4)
    customer, = make_customers(1)
    claim_many(deal, [customer])

    anonymous = await client.get(f"/api/v1/deals/{deal.id}")
    assert anonymous.status_code == 200
    assert anonymous.json()["current_claims"] == 1
    assert anonymous.json()["progress_percent"] == 25
    assert anonymous.json()["my_claim"] is None

    mine = await client.get(f"/api/v1/deals/{deal.id}", headers=auth_headers(customer))
    assert mine.json()["my_claim"]["position"] == 1


async def test_unknown_deal(client):
    response = await client.get("/api/v1/deals/424242")
    assert response.status_code == 404
    assert response.json()["code"] == "deal_not_found"


async def test_cancel_and_analytics(client, auth_headers, owner, make_deal, make_customers, claim_many, whatsapp_send):
    deal = make_deal(target_claims=10, notified_customers_count=20)
    claim_many(deal, make_customers(3))

    response = await client.post(
        f"/api/v1/deals/{deal.id}/cancel", json={"reason": "Closed early"}, headers=auth_headers(owner)
    )
    assert response.status_code == 200
    assert response.json()["status"] == "cancelled"

    analytics = await client.get(f"/api/v1/deals/{deal.id}/analytics", headers=auth_headers(owner))
    assert analytics.status_code == 200
    assert analytics.json()["shortfall"] == 7
    assert analytics.json()["conversion_rate"] == 15.0


async def test_tasks_are_admin_only(client, auth_headers, owner, make_customers, monkeypatch):
    customer, = make_customers(1)
    monkeypatch.setattr(settings, "ADMIN_PHONE_NUMBERS_STR", owner.phone)

    forbidden = await client.get("/api/v1/tasks", headers=auth_headers(customer))
    assert forbidden.status_code == 403

    listed = await client.get("/api/v1/tasks", headers=auth_headers(owner))
    assert listed.status_code == 200
    assert {task["task_name"] for task in listed.json()} == {
        "expiry_sweep", "launch_scheduled_deals", "cleanup_old_notifications"
    }

    run = await client.post("/api/v1/tasks/run", json={"task_name": "cleanup_old_notifications"},
                            headers=auth_headers(owner))
    assert run.status_code == 202

    missing = await client.post("/api/v1/tasks/run", json={"task_name": "nope"}, headers=auth_headers(owner))
    assert missing.status_code == 404
