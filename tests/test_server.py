"""HTTP surface, end to end against the server's own SQLite database."""
import asyncio
import os

import orjson
import pytest
from fastapi.testclient import TestClient

from boxoffice import server
from boxoffice.infra.sql import make_async_engine, GatedAsyncSession
from boxoffice.model.catalog import TierSpec, create_event
from boxoffice.model.db import create_schema
from boxoffice.payments import sign, SIGNATURE_HEADER

ADMIN = {"authorization": "Bearer test-admin-token"}


def seed_tier(capacity: int = 5, max_per_order: int = 10):
    async def _seed():
        engine, SessionAsync, _, gated = make_async_engine(
            os.environ["DATABASE_URL"]
        )
        try:
            async with engine.begin() as conn:
                await create_schema(conn)
            async with SessionAsync() as session:
                _, tiers = await create_event(
                    GatedAsyncSession(session=session, gated=gated),
                    "Server Gig",
                    [TierSpec(name="GA", price=2500, capacity=capacity,
                              max_per_order=max_per_order)],
                )
        finally:
            await engine.dispose()
        return tiers[0]
    return asyncio.run(_seed())


@pytest.fixture(scope="module")
def client():
    with TestClient(server.app) as c:
        yield c


def buy(client, tier_id, quantity=1, **extra):
    body = {
        "tier_id": tier_id,
        "quantity": quantity,
        "buyer_name": "Grace Hopper",
        "buyer_email": "grace@example.com",
    }
    body.update(extra)
    return client.post("/api/orders", json=body)


def webhook(client, event, secret="test-webhook-secret"):
    body = orjson.dumps(event)
    return client.post(
        "/payments/webhook",
        content=body,
        headers={
            SIGNATURE_HEADER: sign(body, secret),
            "content-type": "application/json",
        },
    )


def paid_event(order_id, ref="evt_1"):
    return {"id": ref, "type": "payment.succeeded",
            "data": {"order_id": order_id}}


# ============================================================================
# purchase -> pay -> deliver -> check in
# ============================================================================


def test_full_ticket_lifecycle(client):
    tier = seed_tier()

    r = buy(client, tier.id, 2)
    assert r.status_code == 201
    created = r.json()
    order = created["order"]
    assert order["status"] == "pending"
    assert order["total_price"] == 5000
    assert len(created["credential"]) == 32

    r = webhook(client, paid_event(order["id"]))
    assert r.status_code == 200
    assert r.json()["processed"] is True
    assert r.json()["already_paid"] is False

    # provider redelivers
    r = webhook(client, paid_event(order["id"]))
    assert r.json()["already_paid"] is True

    assert client.get(f"/api/orders/{order['id']}").json()["status"] == "paid"

    # first confirmation delivered right away
    r = client.get(f"/api/admin/orders/{order['id']}/delivery", headers=ADMIN)
    assert r.status_code == 200
    assert r.json()["status"] == "sent"
    assert r.json()["credential_available"] is False

    r = client.post(f"/api/admin/orders/{order['id']}/resend", headers=ADMIN)
    assert r.status_code == 409
    assert r.json()["code"] == "CREDENTIAL_EXPIRED"

    r = client.post("/api/checkin", json={"credential": created["credential"],
                                          "checked_in_by": "door-1"})
    assert r.status_code == 200
    first_at = r.json()["checked_in_at"]

    r = client.post("/api/checkin",
                    json={"order_number": order["order_number"].lower()})
    assert r.status_code == 409
    assert r.json()["code"] == "ALREADY_CHECKED_IN"
    assert r.json()["checked_in_at"] == first_at

    r = client.get(f"/api/checkin/verify/{order['order_number']}")
    assert r.json()["checked_in"] is True

    summary = client.get(
        f"/api/admin/events/{order['event_id']}/summary", headers=ADMIN
    ).json()
    assert summary["checked_in"] == 1
    assert summary["orders"]["paid"]["tickets"] == 2


# ============================================================================
# purchase errors
# ============================================================================


def test_create_order_validation(client):
    tier = seed_tier(max_per_order=2)

    r = buy(client, tier.id, 0)
    assert r.status_code == 400
    assert r.json()["code"] == "INVALID_QUANTITY"

    assert buy(client, tier.id, 3).json()["code"] == "INVALID_QUANTITY"
    assert buy(client, tier.id, "lots").status_code == 400

    r = buy(client, tier.id, 1, buyer_email="nope")
    assert r.status_code == 400
    assert r.json()["code"] == "INVALID_BUYER_INFO"

    r = buy(client, "missing")
    assert r.status_code == 404
    assert r.json()["code"] == "TIER_NOT_FOUND"
    assert r.json()["success"] is False


def test_sold_out(client):
    tier = seed_tier(capacity=1)
    assert buy(client, tier.id).status_code == 201

    r = buy(client, tier.id)
    assert r.status_code == 409
    assert r.json()["code"] == "INSUFFICIENT_INVENTORY"
    assert r.json()["available"] == 0

    snap = client.get(f"/api/tiers/{tier.id}/availability").json()
    assert snap["sold"] == 1
    assert snap["sold_out"] is True
    assert snap["stale"] is False


def test_availability_unknown_tier(client):
    assert client.get("/api/tiers/missing/availability").status_code == 404


# ============================================================================
# webhook
# ============================================================================


def test_webhook_rejects_bad_signature(client):
    tier = seed_tier()
    order = buy(client, tier.id).json()["order"]
    r = webhook(client, paid_event(order["id"]), secret="wrong")
    assert r.status_code == 400
    assert client.get(f"/api/orders/{order['id']}").json()["status"] == \
        "pending"


def test_webhook_business_outcomes_are_acknowledged(client):
    r = webhook(client, paid_event("missing"))
    assert r.status_code == 200
    assert r.json()["processed"] is False
    assert r.json()["code"] == "ORDER_NOT_FOUND"

    tier = seed_tier()
    order = buy(client, tier.id).json()["order"]
    client.post(f"/api/admin/orders/{order['id']}/cancel", headers=ADMIN)
    r = webhook(client, paid_event(order["id"]))
    assert r.status_code == 200
    assert r.json()["processed"] is False
    assert r.json()["code"] == "ORDER_NOT_PENDING"


def test_webhook_by_order_number(client):
    tier = seed_tier()
    order = buy(client, tier.id).json()["order"]
    r = webhook(client, {"id": "evt_9", "type": "checkout.completed",
                         "data": {"order_number": order["order_number"]}})
    assert r.json()["processed"] is True
    got = client.get(f"/api/orders/{order['id']}").json()
    assert got["status"] == "paid"
    assert got["payment_reference"] == "evt_9"


def test_webhook_payment_failed_keeps_order_pending(client):
    tier = seed_tier()
    order = buy(client, tier.id).json()["order"]
    r = webhook(client, {"type": "payment.failed",
                         "data": {"order_id": order["id"]}})
    assert r.status_code == 200
    assert r.json()["processed"] is False
    assert client.get(f"/api/orders/{order['id']}").json()["status"] == \
        "pending"


# ============================================================================
# admin
# ============================================================================


def test_admin_requires_token(client):
    assert client.get("/api/admin/orders").status_code == 401
    r = client.get("/api/admin/orders",
                   headers={"authorization": "Bearer wrong"})
    assert r.status_code == 401


def test_admin_cancel_and_refund(client):
    tier = seed_tier(capacity=3)
    pending = buy(client, tier.id).json()["order"]
    paid = buy(client, tier.id).json()["order"]
    client.post(f"/api/admin/orders/{paid['id']}/confirm",
                json={"reference": "cash-42"}, headers=ADMIN)

    r = client.post(f"/api/admin/orders/{pending['id']}/refund",
                    headers=ADMIN)
    assert r.status_code == 409
    assert r.json()["code"] == "CANNOT_REFUND_NON_PAID"

    r = client.post(f"/api/admin/orders/{pending['id']}/cancel",
                    json={"reason": "no show"}, headers=ADMIN)
    assert r.json()["already_applied"] is False
    assert r.json()["order"]["status"] == "cancelled"
    r = client.post(f"/api/admin/orders/{pending['id']}/cancel",
                    headers=ADMIN)
    assert r.json()["already_applied"] is True

    r = client.post(f"/api/admin/orders/{paid['id']}/refund", headers=ADMIN)
    assert r.json()["order"]["status"] == "refunded"

    snap = client.get(f"/api/tiers/{tier.id}/availability").json()
    assert snap["sold"] == 0

    r = client.get("/api/admin/orders", params={"event_id": tier.event_id},
                   headers=ADMIN)
    statuses = sorted(o["status"] for o in r.json()["items"])
    assert statuses == ["cancelled", "refunded"]


def test_admin_unknown_order(client):
    r = client.post("/api/admin/orders/missing/confirm", headers=ADMIN)
    assert r.status_code == 404
    r = client.get("/api/admin/orders/missing/delivery", headers=ADMIN)
    assert r.status_code == 404
    assert r.json()["code"] == "EMAIL_NOT_QUEUED"
