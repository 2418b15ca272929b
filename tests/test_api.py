"""Tests for the HTTP and WebSocket API."""

import asyncio
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from courier_dispatch.core.config import EnvironmentMode
from courier_dispatch.core.exceptions import StoreError
from courier_dispatch.main import (
    app,
    available_orders_socket,
    courier_orders_socket,
    settings,
    stream_view,
)
from courier_dispatch.services.claims import OrderClaimCoordinator, get_claim_coordinator
from courier_dispatch.services.live_views import OrderListView
from courier_dispatch.services.store import MemoryRecordStore


class BrokenStore(MemoryRecordStore):
    async def conditional_update(self, order_id, where, changes):
        raise StoreError("rejected by trigger")


@pytest.fixture
def audit_task():
    with patch.object(settings, "claim_audit_enabled", True), \
            patch("courier_dispatch.main.audit_claim_attempt") as task:
        yield task


def make_client(store: MemoryRecordStore) -> TestClient:
    coordinator = OrderClaimCoordinator(store, view_reconnect_delay=0.01)
    app.dependency_overrides[get_claim_coordinator] = lambda: coordinator
    return TestClient(app)


@pytest.fixture
def client(audit_task):
    with make_client(MemoryRecordStore()) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def seed(client: TestClient, **overrides) -> dict:
    response = client.post("/api/dev/orders", json={"order_number": "A-1", **overrides})
    assert response.status_code == 201
    return response.json()


class TestHealth:
    def test_root(self, client):
        assert client.get("/").json()["health"] == "/health"

    def test_health(self, client):
        data = client.get("/health").json()
        assert data["status"] == "operational"
        assert data["store"] == "memory: healthy"


class TestAccept:
    def test_first_courier_wins(self, client, audit_task):
        order = seed(client)

        won = client.post(f"/api/orders/{order['id']}/accept", json={"courier_id": "C1"})
        assert won.status_code == 200
        body = won.json()
        assert body["success"] is True
        assert body["message"] == "Order accepted successfully"
        assert body["order"]["delivery_person_id"] == "C1"
        assert body["order"]["status"] == "accepted"

        lost = client.post(f"/api/orders/{order['id']}/accept", json={"courier_id": "C2"})
        assert lost.status_code == 409
        assert lost.json()["code"] == "ORDER_NOT_AVAILABLE"

        assert audit_task.delay.call_count == 2
        payloads = [call.args[0] for call in audit_task.delay.call_args_list]
        assert [p["success"] for p in payloads] == [True, False]
        assert payloads[1]["code"] == "ORDER_NOT_AVAILABLE"
        assert payloads[0]["courier_id"] == "C1"

    def test_cancelled_order(self, client):
        order = seed(client, status="cancelled")
        response = client.post(f"/api/orders/{order['id']}/accept", json={"courier_id": "C1"})
        assert response.status_code == 409

    def test_blank_courier_rejected(self, client):
        order = seed(client)
        response = client.post(f"/api/orders/{order['id']}/accept", json={"courier_id": "  "})
        assert response.status_code == 422

    def test_audit_queue_failure_does_not_fail_claim(self, client, audit_task):
        audit_task.delay.side_effect = ConnectionError("broker down")
        order = seed(client)
        response = client.post(f"/api/orders/{order['id']}/accept", json={"courier_id": "C1"})
        assert response.status_code == 200

    def test_development_default_skips_audit(self, client, audit_task):
        with patch.object(settings, "claim_audit_enabled", None), \
                patch.object(settings, "env_mode", EnvironmentMode.DEVELOPMENT):
            order = seed(client)
            response = client.post(f"/api/orders/{order['id']}/accept", json={"courier_id": "C1"})
        assert response.status_code == 200
        audit_task.delay.assert_not_called()


class TestAvailability:
    def test_available(self, client):
        order = seed(client)
        data = client.get(f"/api/orders/{order['id']}/availability").json()
        assert data == {"order_id": order["id"], "available": True, "reason": None, "code": None}

    def test_not_found(self, client):
        data = client.get("/api/orders/O3/availability").json()
        assert data["available"] is False
        assert data["code"] == "ORDER_NOT_FOUND"


class TestTransitions:
    def test_pickup_deliver(self, client):
        order = seed(client)
        client.post(f"/api/orders/{order['id']}/accept", json={"courier_id": "C1"})

        wrong = client.post(f"/api/orders/{order['id']}/pickup", json={"courier_id": "C2"})
        assert wrong.status_code == 409
        assert wrong.json()["code"] == "NOT_ASSIGNED"

        picked = client.post(f"/api/orders/{order['id']}/pickup", json={"courier_id": "C1"})
        assert picked.json()["order"]["status"] == "picked_up"

        delivered = client.post(f"/api/orders/{order['id']}/deliver", json={"courier_id": "C1"})
        assert delivered.status_code == 200
        assert delivered.json()["order"]["status"] == "delivered"

    def test_release(self, client):
        order = seed(client)
        client.post(f"/api/orders/{order['id']}/accept", json={"courier_id": "C1"})

        released = client.post(f"/api/orders/{order['id']}/release", json={"courier_id": "C1"})
        assert released.status_code == 200
        assert [o["id"] for o in client.get("/api/orders/available").json()["orders"]] == [order["id"]]


class TestListings:
    def test_available_and_courier_orders(self, client):
        mine = seed(client, order_number="A-1")
        other = seed(client, order_number="A-2")
        seed(client, order_number="A-3", status="preparing")
        client.post(f"/api/orders/{mine['id']}/accept", json={"courier_id": "C1"})

        available = client.get("/api/orders/available").json()
        assert available["total"] == 1
        assert available["orders"][0]["id"] == other["id"]

        courier = client.get("/api/couriers/C1/orders").json()
        assert [o["id"] for o in courier["orders"]] == [mine["id"]]

        filtered = client.get("/api/couriers/C1/orders", params={"status": "delivered"}).json()
        assert filtered["total"] == 0


class TestStoreFailures:
    @pytest.fixture
    def offline_client(self, audit_task):
        with make_client(MemoryRecordStore(failure_rate=1.0)) as test_client:
            yield test_client
        app.dependency_overrides.clear()

    @pytest.fixture
    def broken_client(self, audit_task):
        with make_client(BrokenStore()) as test_client:
            yield test_client
        app.dependency_overrides.clear()

    def test_network_error_is_503(self, offline_client):
        response = offline_client.post("/api/orders/o1/accept", json={"courier_id": "C1"})
        assert response.status_code == 503
        assert response.json()["code"] == "NETWORK_ERROR"

    def test_listing_unavailable(self, offline_client):
        response = offline_client.get("/api/orders/available")
        assert response.status_code == 503
        assert response.json()["success"] is False

    def test_availability_check_failed(self, offline_client):
        data = offline_client.get("/api/orders/o1/availability").json()
        assert data["code"] == "CHECK_FAILED"

    def test_unknown_error_is_502(self, broken_client):
        response = broken_client.post("/api/orders/o1/accept", json={"courier_id": "C1"})
        assert response.status_code == 502
        assert response.json()["code"] == "UNKNOWN_ERROR"


class FakeWebSocket:
    """Records what the server sends; the test decides when the client leaves."""

    def __init__(self):
        self.sent: asyncio.Queue = asyncio.Queue()
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.accepted = False
        self.close_code = None

    async def accept(self):
        self.accepted = True

    async def send_json(self, data):
        await self.sent.put(data)

    async def receive(self):
        return await self.incoming.get()

    async def close(self, code=1000):
        self.close_code = code

    def disconnect(self):
        self.incoming.put_nowait({"type": "websocket.disconnect"})

    async def next_json(self, timeout: float = 1.0):
        return await asyncio.wait_for(self.sent.get(), timeout=timeout)


class TestLiveViews:
    @pytest.mark.asyncio
    async def test_available_orders_socket(self, coordinator, store, make_order):
        websocket = FakeWebSocket()
        session = asyncio.create_task(available_orders_socket(websocket, coordinator=coordinator))

        assert await websocket.next_json() == {"total": 0, "orders": []}
        assert websocket.accepted

        order = await make_order()
        data = await websocket.next_json()
        assert data["total"] == 1
        assert data["orders"][0]["id"] == order.id

        await coordinator.accept_order(order.id, "C1")
        assert (await websocket.next_json())["total"] == 0

        websocket.disconnect()
        await asyncio.wait_for(session, timeout=1)
        assert websocket.close_code is None
        assert store.feed.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_courier_orders_socket(self, coordinator, store, make_order):
        order = await make_order()
        websocket = FakeWebSocket()
        session = asyncio.create_task(
            courier_orders_socket(websocket, courier_id="C1", coordinator=coordinator)
        )

        assert (await websocket.next_json())["total"] == 0
        await coordinator.accept_order(order.id, "C1")
        data = await websocket.next_json()
        assert data["orders"][0]["delivery_person_id"] == "C1"

        websocket.disconnect()
        await asyncio.wait_for(session, timeout=1)
        assert store.feed.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_cancelled_session_releases_subscription(self, coordinator, store):
        websocket = FakeWebSocket()
        session = asyncio.create_task(available_orders_socket(websocket, coordinator=coordinator))
        await websocket.next_json()
        assert store.feed.subscriber_count == 1

        session.cancel()
        with pytest.raises(asyncio.CancelledError):
            await session
        assert store.feed.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_failed_view_closes_with_1011(self, coordinator, store, make_order):
        await make_order()
        view = OrderListView(store, coordinator.claimable_where, reconnect_delay=0.01, max_reconnects=0)
        websocket = FakeWebSocket()
        session = asyncio.create_task(stream_view(websocket, view))
        await websocket.next_json()

        await store.disconnect_subscribers()
        await asyncio.wait_for(session, timeout=1)
        assert websocket.close_code == 1011
        assert store.feed.subscriber_count == 0
