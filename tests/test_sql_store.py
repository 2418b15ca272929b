"""Tests for SqlRecordStore against a throwaway SQLite database."""

import asyncio
from datetime import timedelta

import pytest
import pytest_asyncio

from courier_dispatch.core.enums import ClaimErrorCode, OrderStatus
from courier_dispatch.core.exceptions import StoreConnectionError
from courier_dispatch.database import build_engine, build_session_maker, init_db
from courier_dispatch.models import utcnow
from courier_dispatch.services.claims import OrderClaimCoordinator
from courier_dispatch.services.store import (
    ChangeType,
    InMemoryChangeFeed,
    SqlRecordStore,
)

UNCLAIMED = {"delivery_person_id": None, "status": (OrderStatus.READY,)}


@pytest_asyncio.fixture
async def sql_store(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'dispatch.db'}")
    await init_db(engine)
    store = SqlRecordStore(build_session_maker(engine), InMemoryChangeFeed())
    yield store
    await store.close()
    await engine.dispose()


class TestSqlRecordStore:
    @pytest.mark.asyncio
    async def test_insert_and_get(self, sql_store):
        order = await sql_store.insert({"order_number": "A-1", "status": OrderStatus.READY})
        assert order.id
        assert order.status == OrderStatus.READY
        assert order.delivery_person_id is None
        assert order.version == 0

        fetched = await sql_store.get(order.id)
        assert fetched.order_number == "A-1"
        assert await sql_store.get("missing") is None

    @pytest.mark.asyncio
    async def test_insert_defaults_to_pending(self, sql_store):
        order = await sql_store.insert({})
        assert order.status == OrderStatus.PENDING

    @pytest.mark.asyncio
    async def test_conditional_update(self, sql_store):
        order = await sql_store.insert({"status": OrderStatus.READY})

        updated = await sql_store.conditional_update(
            order.id, UNCLAIMED, {"delivery_person_id": "C1", "status": OrderStatus.ACCEPTED}
        )
        assert updated.delivery_person_id == "C1"
        assert updated.status == OrderStatus.ACCEPTED
        assert updated.version == order.version + 1

        again = await sql_store.conditional_update(order.id, UNCLAIMED, {"delivery_person_id": "C2"})
        assert again is None
        assert (await sql_store.get(order.id)).delivery_person_id == "C1"

    @pytest.mark.asyncio
    async def test_evaluate(self, sql_store):
        order = await sql_store.insert({"status": OrderStatus.READY})
        cancelled = await sql_store.insert({"status": OrderStatus.CANCELLED})

        assert await sql_store.evaluate(order.id, UNCLAIMED) is True
        assert await sql_store.evaluate(cancelled.id, UNCLAIMED) is False
        assert await sql_store.evaluate("missing", UNCLAIMED) is None

    @pytest.mark.asyncio
    async def test_query_newest_first(self, sql_store):
        now = utcnow()
        old = await sql_store.insert({"status": OrderStatus.READY, "created_at": now - timedelta(minutes=1)})
        new = await sql_store.insert({"status": OrderStatus.READY, "created_at": now})
        await sql_store.insert({"status": OrderStatus.PREPARING, "created_at": now})

        assert [o.id for o in await sql_store.query(UNCLAIMED)] == [new.id, old.id]

    @pytest.mark.asyncio
    async def test_delete(self, sql_store):
        order = await sql_store.insert({"status": OrderStatus.READY})
        assert await sql_store.delete(order.id) is True
        assert await sql_store.delete(order.id) is False

    @pytest.mark.asyncio
    async def test_changes_reach_subscribers(self, sql_store):
        order = await sql_store.insert({"status": OrderStatus.READY})

        async with sql_store.subscribe(UNCLAIMED) as events:
            snapshot = await events.__anext__()
            assert [r.id for r in snapshot.records] == [order.id]

            await sql_store.conditional_update(order.id, UNCLAIMED, {"delivery_person_id": "C1"})
            event = await asyncio.wait_for(events.__anext__(), timeout=1)
            assert event.type == ChangeType.DELETE
            assert event.records[0].id == order.id

    @pytest.mark.asyncio
    async def test_health_check(self, sql_store):
        assert await sql_store.health_check() is True


class TestSqlClaims:
    @pytest.mark.asyncio
    async def test_concurrent_couriers_single_winner(self, sql_store):
        coordinator = OrderClaimCoordinator(sql_store)
        order = await sql_store.insert({"status": OrderStatus.READY})

        results = await asyncio.gather(*[
            coordinator.accept_order(order.id, f"courier-{i}") for i in range(8)
        ])

        winners = [r for r in results if r.success]
        assert len(winners) == 1
        assert all(
            r.code == ClaimErrorCode.ORDER_NOT_AVAILABLE for r in results if not r.success
        )
        stored = await sql_store.get(order.id)
        assert stored.delivery_person_id == winners[0].attempt.courier_id
        assert stored.status == OrderStatus.ACCEPTED

    @pytest.mark.asyncio
    async def test_lifecycle(self, sql_store):
        coordinator = OrderClaimCoordinator(sql_store)
        order = await sql_store.insert({"status": OrderStatus.READY})

        assert (await coordinator.accept_order(order.id, "C1")).success
        assert (await coordinator.mark_picked_up(order.id, "C2")).code == ClaimErrorCode.NOT_ASSIGNED
        assert (await coordinator.mark_picked_up(order.id, "C1")).success
        delivered = await coordinator.mark_delivered(order.id, "C1")
        assert delivered.order.status == OrderStatus.DELIVERED


class TestUnreachableDatabase:
    @pytest.mark.asyncio
    async def test_connection_failure_maps_to_network_error(self, tmp_path):
        engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'dispatch.db'}")
        store = SqlRecordStore(build_session_maker(engine), InMemoryChangeFeed())
        coordinator = OrderClaimCoordinator(store)
        try:
            with pytest.raises(StoreConnectionError):
                await store.get("o1")

            result = await coordinator.accept_order("o1", "C1")
            assert result.code == ClaimErrorCode.NETWORK_ERROR

            assert await store.health_check() is False
        finally:
            await engine.dispose()
