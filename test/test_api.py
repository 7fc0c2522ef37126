"""Tests for the FastAPI routes."""

import asyncio
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from redis.exceptions import ConnectionError as RedisConnectionError

from _helper import T0, seed
from order_lifecycle.errors import VersionConflict
from order_lifecycle.main import create_app
from order_lifecycle.services import LifecycleServices
from order_lifecycle.storage import MemoryStore

OPERATOR_HEADERS = {
    "X-Actor-Id": "7",
    "X-Actor-Name": "Ada Operator",
    "X-Actor-Email": "ada@fuel.example",
    "X-Actor-Role": "finance",
}


class _FakeWebhookCache:
    def __init__(self):
        self.keys: set[str] = set()

    async def seen(self, key: str) -> bool:
        return key in self.keys

    async def remember(self, key: str) -> None:
        self.keys.add(key)


class _DownWebhookCache:
    async def seen(self, key: str) -> bool:
        raise RedisConnectionError("connection refused")

    async def remember(self, key: str) -> None:
        raise RedisConnectionError("connection refused")


@pytest.fixture
def seeded(store):
    for oid in (1, 2, 3):
        asyncio.run(seed(store, oid, created_at=T0 + timedelta(hours=oid - 1)))
    return store


@pytest.fixture
def api_client(services, seeded):
    return TestClient(create_app(services))


def _webhook(order_id=1, transaction_id="tx-1", status="success"):
    return {
        "provider": "paystack",
        "transaction_id": transaction_id,
        "order_id": order_id,
        "status": status,
        "amount": "1250.00",
        "occurred_at": "2025-01-01T07:59:30Z",
    }


class TestHealth:
    def test_health(self, api_client):
        response = api_client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_metrics(self, api_client):
        api_client.post("/orders/1/transitions", json={"action": "PAYMENT_CONFIRMED"}, headers=OPERATOR_HEADERS)
        response = api_client.get("/metrics")
        assert response.status_code == 200
        assert "order_transitions_applied_total" in response.text


class TestRequestTransition:
    def test_applied(self, api_client):
        response = api_client.post(
            "/orders/1/transitions",
            json={"action": "PAYMENT_CONFIRMED", "metadata": {"payment_ref": "BANK-1"}},
            headers=OPERATOR_HEADERS,
        )
        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "applied"
        assert data["new_status"] == "paid"
        assert data["event_id"] is not None

    def test_retry_with_same_key_is_acknowledged(self, api_client):
        body = {"action": "PAYMENT_CONFIRMED", "idempotency_key": "manual:1"}
        first = api_client.post("/orders/1/transitions", json=body, headers=OPERATOR_HEADERS)
        second = api_client.post("/orders/1/transitions", json=body, headers=OPERATOR_HEADERS)
        assert first.status_code == 201
        assert second.status_code == 200
        assert second.json()["status"] == "already_processed"
        assert second.json()["event_id"] == first.json()["event_id"]

    def test_missing_actor(self, api_client):
        response = api_client.post("/orders/1/transitions", json={"action": "PAYMENT_CONFIRMED"})
        assert response.status_code == 401

    def test_illegal_is_conflict(self, api_client):
        api_client.post("/orders/1/transitions", json={"action": "ORDER_CANCELED"}, headers=OPERATOR_HEADERS)
        response = api_client.post("/orders/1/transitions", json={"action": "PAYMENT_CONFIRMED"}, headers=OPERATOR_HEADERS)
        assert response.status_code == 409
        data = response.json()
        assert data["error"] == "illegal_transition"
        assert data["current_status"] == "canceled"

    def test_unknown_order(self, api_client):
        response = api_client.post("/orders/99/transitions", json={"action": "PAYMENT_CONFIRMED"}, headers=OPERATOR_HEADERS)
        assert response.status_code == 404
        assert response.json()["error"] == "unknown_order"

    def test_unknown_action(self, api_client):
        response = api_client.post("/orders/1/transitions", json={"action": "REFUNDED"}, headers=OPERATOR_HEADERS)
        assert response.status_code == 422

    def test_gateway_confirmation_is_webhook_only(self, api_client, store):
        response = api_client.post(
            "/orders/1/transitions", json={"action": "PAYMENT_WEBHOOK_CONFIRMED"}, headers=OPERATOR_HEADERS
        )
        assert response.status_code == 422
        assert asyncio.run(store.get_order(1)).status.value == "pending"

    def test_busy_is_retryable(self, clock, test_settings):
        class _AlwaysConflicting(MemoryStore):
            async def commit_transition(self, order, expected_version, event):
                raise VersionConflict(order.id, expected_version)

        store = _AlwaysConflicting()
        asyncio.run(seed(store, 1))
        client = TestClient(create_app(LifecycleServices.create(store, clock=clock, settings=test_settings)))

        response = client.post("/orders/1/transitions", json={"action": "PAYMENT_CONFIRMED"}, headers=OPERATOR_HEADERS)

        assert response.status_code == 503
        assert response.headers["Retry-After"] == "1"
        assert response.json()["error"] == "busy"

    def test_timeline(self, api_client):
        for action in ("PAYMENT_CONFIRMED", "ORDER_RELEASED"):
            api_client.post("/orders/1/transitions", json={"action": action}, headers=OPERATOR_HEADERS)
        response = api_client.get("/orders/1/timeline")
        assert response.status_code == 200
        data = response.json()
        assert data["count"] == 2
        assert [e["action"] for e in data["results"]] == ["PAYMENT_CONFIRMED", "ORDER_RELEASED"]
        assert data["results"][0]["actor"]["email"] == "ada@fuel.example"

    def test_timeline_unknown_order(self, api_client):
        assert api_client.get("/orders/99/timeline").status_code == 404


class TestPaymentWebhook:
    def test_applied_then_redelivered(self, api_client, services, store):
        services.webhook_cache = _FakeWebhookCache()

        first = api_client.post("/webhooks/payments", json=_webhook())
        second = api_client.post("/webhooks/payments", json=_webhook())

        assert first.status_code == 200
        assert first.json()["status"] == "applied"
        assert first.json()["new_status"] == "paid"
        assert second.json()["status"] == "already_processed"
        assert services.webhook_cache.keys == {"paystack:tx-1"}
        _, events = asyncio.run(store.list_events(1))
        assert len(events) == 1
        assert events[0].metadata["transaction_id"] == "tx-1"
        assert events[0].metadata["gateway_occurred_at"].startswith("2025-01-01T07:59:30")
        assert events[0].actor.role == "payment_gateway"

    def test_redelivery_without_cache_is_still_idempotent(self, api_client, store):
        api_client.post("/webhooks/payments", json=_webhook())
        response = api_client.post("/webhooks/payments", json=_webhook())
        assert response.status_code == 200
        assert response.json()["status"] == "already_processed"
        _, events = asyncio.run(store.list_events(1))
        assert len(events) == 1

    def test_cache_outage_falls_back_to_the_store(self, api_client, services, store):
        services.webhook_cache = _DownWebhookCache()

        first = api_client.post("/webhooks/payments", json=_webhook())
        second = api_client.post("/webhooks/payments", json=_webhook())

        assert first.status_code == 200
        assert first.json()["status"] == "applied"
        assert second.status_code == 200
        assert second.json()["status"] == "already_processed"
        _, events = asyncio.run(store.list_events(1))
        assert len(events) == 1

    def test_failed_payment_is_ignored(self, api_client, store):
        response = api_client.post("/webhooks/payments", json=_webhook(status="failed"))
        assert response.status_code == 202
        assert response.json()["status"] == "ignored"
        assert asyncio.run(store.get_order(1)).status.value == "pending"

    def test_payment_for_canceled_order_conflicts(self, api_client):
        api_client.post("/orders/2/transitions", json={"action": "ORDER_CANCELED"}, headers=OPERATOR_HEADERS)
        response = api_client.post("/webhooks/payments", json=_webhook(order_id=2, transaction_id="tx-2"))
        assert response.status_code == 409


class TestAuditRoutes:
    def test_query_with_paging_links(self, api_client):
        response = api_client.get("/audit/orders", params={"page": 1, "page_size": 2})
        assert response.status_code == 200
        data = response.json()
        assert data["count"] == 3
        assert [r["id"] for r in data["results"]] == [3, 2]
        assert data["previous"] is None
        assert "page=2" in data["next"]

        last = api_client.get("/audit/orders", params={"page": 2, "page_size": 2}).json()
        assert [r["id"] for r in last["results"]] == [1]
        assert last["next"] is None
        assert "page=1" in last["previous"]

    def test_filters(self, api_client, clock):
        clock.set(T0 + timedelta(days=1, hours=3))
        api_client.post("/orders/2/transitions", json={"action": "PAYMENT_CONFIRMED"}, headers=OPERATOR_HEADERS)

        by_action = api_client.get("/audit/orders", params={"action": "PAYMENT_CONFIRMED"}).json()
        assert [r["id"] for r in by_action["results"]] == [2]
        assert by_action["results"][0]["payment_user_email"] == "ada@fuel.example"

        same_day = api_client.get("/audit/orders", params={"from": "2025-01-02", "to": "2025-01-02"}).json()
        assert same_day["count"] == 1
        day_before = api_client.get("/audit/orders", params={"from": "2025-01-01", "to": "2025-01-01"}).json()
        assert day_before["count"] == 0

        by_text = api_client.get("/audit/orders", params={"q": "ada@fuel"}).json()
        assert [r["id"] for r in by_text["results"]] == [2]

    def test_bad_action_filter(self, api_client):
        assert api_client.get("/audit/orders", params={"action": "NOPE"}).status_code == 422

    def test_summary_is_dataset_wide(self, api_client):
        for oid in (1, 2, 3):
            api_client.post(f"/orders/{oid}/transitions", json={"action": "PAYMENT_CONFIRMED"}, headers=OPERATOR_HEADERS)
        response = api_client.get("/audit/orders/summary")
        assert response.status_code == 200
        assert response.json() == {"total": 3, "payment": 3, "release": 0, "exit": 0}

    def test_order_events(self, api_client):
        api_client.post("/orders/1/transitions", json={"action": "PAYMENT_CONFIRMED"}, headers=OPERATOR_HEADERS)
        response = api_client.get("/audit/orders/1/events")
        assert response.status_code == 200
        data = response.json()
        assert data["count"] == 1
        assert data["page_size"] == 200
        assert data["results"][0]["action"] == "PAYMENT_CONFIRMED"
        assert api_client.get("/audit/orders/99/events").status_code == 404


class TestAdmin:
    def test_sweep_now(self, api_client, clock, store):
        clock.set(T0 + timedelta(hours=12, minutes=30))
        response = api_client.post("/admin/sweep")
        assert response.status_code == 200
        data = response.json()
        assert data["canceled"] == [1]
        assert data["candidates"] == 1
        assert asyncio.run(store.get_order(1)).status.value == "canceled"
