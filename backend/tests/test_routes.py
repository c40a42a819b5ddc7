"""HTTP tests for the customer, merchant and scheduler routes."""

from decimal import Decimal

import pytest
from httpx import ASGITransport, AsyncClient

from order_broadcast.app.config import get_settings
from order_broadcast.app.main import app
from order_broadcast.infra.clock import get_clock
from order_broadcast.infra.database import get_db
from order_broadcast.services.auth_service import create_access_token


def _auth(actor_id: str, role: str) -> dict:
    return {"Authorization": f"Bearer {create_access_token(actor_id, role)}"}


CUSTOMER = _auth("cust-1", "customer")
OTHER_CUSTOMER = _auth("cust-2", "customer")
ADMIN = _auth("ops-1", "admin")


def _merchant(merchant_id: str) -> dict:
    return _auth(merchant_id, "merchant")


QUOTE = {
    "items": [{"item_name": "Basmati rice", "quantity": "2", "unit_price": "4.50", "unit_type": "kg"}],
    "delivery_fee": "1.00",
    "estimated_preparation_minutes": 20,
}


@pytest.fixture
async def client(session_factory, clock):
    async def _get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_clock] = lambda: clock
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


async def _create(client, merchant_ids=("m-1", "m-2"), headers=CUSTOMER) -> dict:
    resp = await client.post(
        "/api/broadcasts",
        json={"merchant_ids": list(merchant_ids), "order": {"text": "2 kg rice, 1 dozen eggs"}},
        headers=headers,
    )
    assert resp.status_code == 201, resp.text
    return resp.json()


def _request_id(broadcast: dict, merchant_id: str) -> str:
    return next(r["id"] for r in broadcast["requests"] if r["merchant_id"] == merchant_id)


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_missing_token_is_401(client):
    resp = await client.get("/api/broadcasts")
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_merchant_cannot_create_broadcast(client):
    resp = await client.post(
        "/api/broadcasts",
        json={"merchant_ids": ["m-1"], "order": {"text": "milk"}},
        headers=_merchant("m-1"),
    )
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_other_customer_cannot_read_broadcast(client):
    broadcast = await _create(client)
    resp = await client.get(f"/api/broadcasts/{broadcast['id']}", headers=OTHER_CUSTOMER)
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_merchant_cannot_read_another_merchants_request(client):
    broadcast = await _create(client)
    resp = await client.get(
        f"/api/merchant/requests/{_request_id(broadcast, 'm-1')}", headers=_merchant("m-2")
    )
    assert resp.status_code == 403


# ---------------------------------------------------------------------------
# Customer flow
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_create_broadcast(client):
    broadcast = await _create(client, merchant_ids=["m-1", "m-2", "m-3"])

    assert broadcast["status"] == "active"
    assert [r["status"] for r in broadcast["requests"]] == ["pending"] * 3
    assert all(r["approvable"] is False for r in broadcast["requests"])

    count = await client.get("/api/broadcasts/active-count", headers=CUSTOMER)
    assert count.json() == {"count": 1}


@pytest.mark.asyncio
async def test_create_rejects_duplicate_merchants(client):
    resp = await client.post(
        "/api/broadcasts",
        json={"merchant_ids": ["m-1", "m-1"], "order": {"text": "milk"}},
        headers=CUSTOMER,
    )
    assert resp.status_code == 422
    assert resp.json()["detail"]["code"] == "precondition"


@pytest.mark.asyncio
async def test_full_quote_and_approval_flow(client, clock):
    broadcast = await _create(client)
    r1 = _request_id(broadcast, "m-1")

    inbox = await client.get("/api/merchant/requests?status=pending", headers=_merchant("m-1"))
    assert [r["id"] for r in inbox.json()] == [r1]
    assert inbox.json()[0]["allowed_actions"] == ["quote"]

    quoted = await client.post(f"/api/merchant/requests/{r1}/quote", json=QUOTE, headers=_merchant("m-1"))
    assert quoted.status_code == 200, quoted.text
    assert Decimal(quoted.json()["total"]) == Decimal("10.00")
    assert quoted.json()["line_items"][0]["unit_type"] == "kg"

    clock.advance(minutes=30)
    detail = (await client.get(f"/api/broadcasts/{broadcast['id']}", headers=CUSTOMER)).json()
    priced = detail["requests"][0]
    assert priced["id"] == r1
    assert priced["approvable"] is True
    assert priced["allowed_actions"] == ["approve", "reject"]
    assert priced["quote_expires_in_seconds"] == 90 * 60

    approved = await client.post(
        f"/api/broadcasts/{broadcast['id']}/requests/{r1}/approve", headers=CUSTOMER
    )
    assert approved.status_code == 200, approved.text
    body = approved.json()
    assert body["status"] == "completed"
    assert body["winning_request_id"] == r1
    assert {r["merchant_id"]: r["status"] for r in body["requests"]} == {
        "m-1": "customer_approved",
        "m-2": "cancelled",
    }

    timeline = await client.get(f"/api/broadcasts/{broadcast['id']}/timeline", headers=CUSTOMER)
    event_types = [e["event_type"] for e in timeline.json()]
    assert "broadcast_created" in event_types
    assert "broadcast_completed" in event_types


@pytest.mark.asyncio
async def test_second_approval_reports_already_resolved(client):
    broadcast = await _create(client)
    r1, r2 = _request_id(broadcast, "m-1"), _request_id(broadcast, "m-2")
    await client.post(f"/api/merchant/requests/{r1}/quote", json=QUOTE, headers=_merchant("m-1"))
    await client.post(f"/api/merchant/requests/{r2}/quote", json=QUOTE, headers=_merchant("m-2"))

    first = await client.post(f"/api/broadcasts/{broadcast['id']}/requests/{r1}/approve", headers=CUSTOMER)
    second = await client.post(f"/api/broadcasts/{broadcast['id']}/requests/{r2}/approve", headers=CUSTOMER)

    assert first.status_code == 200
    assert second.status_code == 409
    assert second.json()["detail"]["code"] == "already_resolved"


@pytest.mark.asyncio
async def test_stale_quote_is_409(client, clock):
    broadcast = await _create(client)
    r1 = _request_id(broadcast, "m-1")
    await client.post(
        f"/api/merchant/requests/{r1}/quote", json={**QUOTE, "validity_minutes": 10}, headers=_merchant("m-1")
    )
    clock.advance(minutes=11)

    resp = await client.post(f"/api/broadcasts/{broadcast['id']}/requests/{r1}/approve", headers=CUSTOMER)

    assert resp.status_code == 409
    assert resp.json()["detail"]["code"] == "stale_quote"


@pytest.mark.asyncio
async def test_reject_keeps_broadcast_open(client):
    broadcast = await _create(client)
    r1 = _request_id(broadcast, "m-1")
    await client.post(f"/api/merchant/requests/{r1}/quote", json=QUOTE, headers=_merchant("m-1"))

    resp = await client.post(
        f"/api/broadcasts/{broadcast['id']}/requests/{r1}/reject",
        json={"reason": "too expensive"},
        headers=CUSTOMER,
    )

    assert resp.status_code == 200
    assert resp.json()["status"] == "customer_rejected"
    detail = (await client.get(f"/api/broadcasts/{broadcast['id']}", headers=CUSTOMER)).json()
    assert detail["status"] == "active"


@pytest.mark.asyncio
async def test_quote_after_pricing_deadline_is_too_late(client, clock):
    broadcast = await _create(client)
    clock.advance(hours=25)

    resp = await client.post(
        f"/api/merchant/requests/{_request_id(broadcast, 'm-1')}/quote", json=QUOTE, headers=_merchant("m-1")
    )

    assert resp.status_code == 409
    assert resp.json()["detail"]["code"] == "too_late_to_quote"


@pytest.mark.asyncio
async def test_admin_can_cancel_any_broadcast(client):
    broadcast = await _create(client)

    resp = await client.post(
        f"/api/broadcasts/{broadcast['id']}/cancel", json={"reason": "fraud check"}, headers=ADMIN
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "cancelled"
    assert body["cancelled_by"] == "admin"
    assert {r["status"] for r in body["requests"]} == {"cancelled"}


@pytest.mark.asyncio
async def test_unknown_broadcast_is_404(client):
    resp = await client.get("/api/broadcasts/missing", headers=CUSTOMER)
    assert resp.status_code == 404
    assert resp.json()["detail"]["code"] == "not_found"


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_scheduler_tick_requires_token(client):
    resp = await client.post("/api/internal/scheduler/tick", headers={"X-Internal-Token": "wrong"})
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_scheduler_tick_expires_and_delivers(client, clock):
    broadcast = await _create(client, merchant_ids=["m-1"])
    r1 = _request_id(broadcast, "m-1")
    await client.post(f"/api/merchant/requests/{r1}/quote", json=QUOTE, headers=_merchant("m-1"))
    clock.advance(hours=49)

    resp = await client.post(
        "/api/internal/scheduler/tick",
        headers={"X-Internal-Token": get_settings().internal_token},
    )

    assert resp.status_code == 200
    results = resp.json()["results"]
    assert results["sweep"]["expired_broadcasts"] == 1
    # draft order, then its cancellation
    assert results["bridge"]["delivered"] == 2

    detail = (await client.get(f"/api/broadcasts/{broadcast['id']}", headers=CUSTOMER)).json()
    assert detail["status"] == "expired"


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/health")
    assert resp.json() == {"status": "ok", "service": "order-broadcast"}
