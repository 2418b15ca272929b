"""Shared fixtures: a zero-latency memory store and a coordinator over it."""

import pytest

from courier_dispatch.core.enums import OrderStatus
from courier_dispatch.services.claims import OrderClaimCoordinator
from courier_dispatch.services.store import MemoryRecordStore


@pytest.fixture
def store() -> MemoryRecordStore:
    """In-memory store with no simulated latency or failures."""
    return MemoryRecordStore()


@pytest.fixture
def coordinator(store: MemoryRecordStore) -> OrderClaimCoordinator:
    """Coordinator with the default ready -> accepted claim."""
    return OrderClaimCoordinator(store, view_reconnect_delay=0.01)


@pytest.fixture
def make_order(store: MemoryRecordStore):
    """Insert an order (ready and unassigned unless overridden)."""

    async def _make(**values):
        return await store.insert({"status": OrderStatus.READY, **values})

    return _make
