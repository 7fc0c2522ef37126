"""
End-to-end flows through the HTTP surface: a paid order survives the sweep,
and an order walks the whole lifecycle with every step audited.
"""

import asyncio
from datetime import timedelta

from fastapi.testclient import TestClient

from _helper import T0, seed
from order_lifecycle.main import create_app
from order_lifecycle.models import AuditAction, OrderStatus
from order_lifecycle.order_state import replay_status


def _headers(actor_id: str, name: str, email: str, role: str) -> dict:
    return {"X-Actor-Id": actor_id, "X-Actor-Name": name, "X-Actor-Email": email, "X-Actor-Role": role}


FINANCE = _headers("11", "Fola Finance", "fola@fuel.example", "finance")
DEPOT = _headers("12", "Dayo Depot", "dayo@fuel.example", "depot")
SECURITY = _headers("13", "Sade Security", "sade@fuel.example", "security")


def test_paid_order_is_not_auto_canceled(services, store, clock):
    asyncio.run(seed(store, 1, created_at=T0))
    client = TestClient(create_app(services))

    clock.set(T0 + timedelta(hours=8))
    paid = client.post(
        "/webhooks/payments",
        json={"provider": "gateway", "transaction_id": "txn-8001", "order_id": 1, "status": "success"},
    )
    assert paid.json()["new_status"] == "paid"

    clock.set(T0 + timedelta(hours=12, minutes=5))
    sweep = client.post("/admin/sweep").json()
    assert sweep["canceled"] == []

    order = asyncio.run(store.get_order(1))
    assert order.status is OrderStatus.PAID
    timeline = client.get("/orders/1/timeline").json()
    assert timeline["count"] == 1
    assert timeline["results"][0]["action"] == "PAYMENT_WEBHOOK_CONFIRMED"


def test_unpaid_order_is_auto_canceled_and_stays_canceled(services, store, clock):
    asyncio.run(seed(store, 1, created_at=T0))
    client = TestClient(create_app(services))

    clock.set(T0 + timedelta(hours=12, minutes=5))
    assert client.post("/admin/sweep").json()["canceled"] == [1]

    late = client.post(
        "/webhooks/payments",
        json={"provider": "gateway", "transaction_id": "txn-late", "order_id": 1, "status": "success"},
    )
    assert late.status_code == 409
    assert late.json()["current_status"] == "canceled"

    events = client.get("/orders/1/timeline").json()["results"]
    assert [e["action"] for e in events] == ["AUTO_CANCELED"]
    assert events[0]["actor"] == {"kind": "system"}


def test_full_lifecycle(services, store, clock):
    asyncio.run(seed(store, 1, created_at=T0))
    client = TestClient(create_app(services))

    steps = [
        (timedelta(hours=1), "ORDER_UPDATED", FINANCE, {"changes": {"customer_name": "Acme Logistics"}}),
        (timedelta(hours=2), "PAYMENT_CONFIRMED", FINANCE, {"payment_ref": "BANK-991"}),
        (timedelta(hours=3), "ORDER_RELEASED", DEPOT, {"truck_number": "LSD-442"}),
        (timedelta(hours=4), "TRUCK_EXIT_RECORDED", SECURITY, {}),
    ]
    for offset, action, headers, metadata in steps:
        clock.set(T0 + offset)
        response = client.post("/orders/1/transitions", json={"action": action, "metadata": metadata}, headers=headers)
        assert response.status_code == 201, response.text

    order = asyncio.run(store.get_order(1))
    assert order.status is OrderStatus.RELEASED
    assert order.customer_name == "Acme Logistics"

    # late operator mistakes are rejected and leave no trace
    assert client.post("/orders/1/transitions", json={"action": "ORDER_CANCELED"}, headers=FINANCE).status_code == 409
    assert client.post("/orders/1/transitions", json={"action": "TRUCK_EXIT_RECORDED"}, headers=SECURITY).status_code == 409

    _, events = asyncio.run(store.list_events(1))
    assert [e.action for e in events] == [
        AuditAction.ORDER_UPDATED,
        AuditAction.PAYMENT_CONFIRMED,
        AuditAction.ORDER_RELEASED,
        AuditAction.TRUCK_EXIT_RECORDED,
    ]
    assert replay_status(events) is OrderStatus.RELEASED

    row = client.get("/audit/orders", params={"q": "acme"}).json()["results"][0]
    assert row["payment_user_email"] == "fola@fuel.example"
    assert row["release_user_name"] == "Dayo Depot"
    assert row["truck_exit_user_email"] == "sade@fuel.example"
    assert client.get("/audit/orders/summary").json() == {"total": 1, "payment": 1, "release": 1, "exit": 1}
