"""
In-Memory Record Store Implementation

Keeps orders in a dict inside the current process. Used in development mode
(ENV_MODE=development) and by the test suite to:
    - Exercise the full claim flow without PostgreSQL or Redis
    - Run contention simulations with many couriers
    - Inject transport failures and latency

Atomicity:
    The event loop only switches tasks at an await. conditional_update
    simulates latency *before* it looks at the row, then evaluates the
    predicate and writes without awaiting in between, so the check and the
    write are one indivisible step exactly like a single-row compare-and-swap.

Version: 1.0.0
"""

import asyncio
import random
import logging
import uuid
from typing import Any, Mapping, Optional

from courier_dispatch.core.enums import OrderStatus
from courier_dispatch.core.exceptions import StoreConnectionError
from courier_dispatch.models import utcnow
from courier_dispatch.schemas import OrderSnapshot
from courier_dispatch.services.store.base import (
    BaseRecordStore,
    BaseChangeFeed,
    ChangeEvent,
    ChangeType,
    Where,
    matches,
)
from courier_dispatch.services.store.feed import InMemoryChangeFeed

logger = logging.getLogger(__name__)


class MemoryRecordStore(BaseRecordStore):
    """
    In-process record store.

    Attributes:
        failure_rate: Probability of a simulated transport failure (0.0-1.0)
        min_latency: Minimum simulated round-trip in seconds
        max_latency: Maximum simulated round-trip in seconds

    Example:
        >>> store = MemoryRecordStore()
        >>> order = await store.insert({"status": "ready"})
        >>> await store.conditional_update(
        ...     order.id, {"delivery_person_id": None}, {"delivery_person_id": "c1"}
        ... )
    """

    def __init__(
        self,
        feed: Optional[BaseChangeFeed] = None,
        failure_rate: float = 0.0,
        min_latency: float = 0.0,
        max_latency: float = 0.0,
    ):
        super().__init__(feed or InMemoryChangeFeed())
        self.failure_rate = failure_rate
        self.min_latency = min_latency
        self.max_latency = max(min_latency, max_latency)
        self._rows: dict[str, OrderSnapshot] = {}

        logger.info(
            f"MemoryRecordStore initialized "
            f"(failure_rate={failure_rate:.0%}, "
            f"latency={self.min_latency}-{self.max_latency}s)"
        )

    @property
    def provider_name(self) -> str:
        return "memory"

    async def _simulate_latency(self) -> None:
        """Simulate the network round-trip; always yields to the event loop."""
        await asyncio.sleep(random.uniform(self.min_latency, self.max_latency))

    def _maybe_fail(self, action: str) -> None:
        if self.failure_rate and random.random() < self.failure_rate:
            logger.warning(f"Memory store: simulated transport failure during {action}")
            raise StoreConnectionError(f"Simulated transport failure during {action}")

    async def _round_trip(self, action: str) -> None:
        await self._simulate_latency()
        self._maybe_fail(action)

    async def get(self, order_id: str) -> Optional[OrderSnapshot]:
        await self._round_trip("get")
        return self._rows.get(order_id)

    async def evaluate(self, order_id: str, where: Where) -> Optional[bool]:
        await self._round_trip("evaluate")
        row = self._rows.get(order_id)
        if row is None:
            return None
        return matches(row, where)

    async def query(self, where: Where) -> list[OrderSnapshot]:
        await self._round_trip("query")
        rows = [row for row in self._rows.values() if matches(row, where)]
        return sorted(rows, key=lambda row: row.created_at, reverse=True)

    async def conditional_update(
        self,
        order_id: str,
        where: Where,
        changes: Mapping[str, Any],
    ) -> Optional[OrderSnapshot]:
        await self._round_trip("conditional_update")

        # No await between the check and the write.
        row = self._rows.get(order_id)
        if row is None or not matches(row, where):
            return None
        updated = row.model_copy(update={
            **changes,
            "version": row.version + 1,
            "updated_at": utcnow(),
        })
        self._rows[order_id] = updated

        await self._publish(ChangeEvent(type=ChangeType.UPDATE, records=[updated]))
        return updated

    async def insert(self, values: Mapping[str, Any]) -> OrderSnapshot:
        await self._round_trip("insert")
        now = utcnow()
        record = OrderSnapshot(**{
            "id": str(uuid.uuid4()),
            "status": OrderStatus.PENDING,
            "created_at": now,
            "updated_at": now,
            "version": 0,
            **values,
        })
        if record.id in self._rows:
            raise ValueError(f"Order {record.id} already exists")
        self._rows[record.id] = record

        await self._publish(ChangeEvent(type=ChangeType.INSERT, records=[record]))
        return record

    async def delete(self, order_id: str) -> bool:
        await self._round_trip("delete")
        record = self._rows.pop(order_id, None)
        if record is None:
            return False

        await self._publish(ChangeEvent(type=ChangeType.DELETE, records=[record]))
        return True

    async def health_check(self) -> bool:
        return await self.feed.health_check()

    async def disconnect_subscribers(self) -> None:
        """Drop all live subscriptions, as a network blip would."""
        if isinstance(self.feed, InMemoryChangeFeed):
            await self.feed.disconnect_all()
