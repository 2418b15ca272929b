"""
Record Store Abstract Base Class

Defines the contract the claim coordinator relies on. Both
MemoryRecordStore and SqlRecordStore implement it, so the coordinator
behaves identically whichever backend is active.

The contract has three parts:
    (a) conditional_update: atomically update a row only if a predicate over
        its current values holds, returning the updated row or None
    (b) point reads: get / evaluate / query
    (c) subscriptions: a SNAPSHOT event on (re)connect, then INSERT, UPDATE
        and DELETE events scoped to a filter

Filters ("where" mappings) use column -> expected value:
    None             column IS NULL
    tuple/list/set   column IN (...)
    anything else    column == value

Version: 1.0.0
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Mapping, Optional

from pydantic import BaseModel, Field

from courier_dispatch.core.exceptions import StoreConnectionError
from courier_dispatch.schemas import OrderSnapshot

logger = logging.getLogger(__name__)

Where = Mapping[str, Any]

_MULTI_VALUE = (list, tuple, set, frozenset)


def matches(record: OrderSnapshot, where: Where) -> bool:
    """Evaluate a filter against a record, with the store's NULL/IN rules."""
    for column, expected in where.items():
        value = getattr(record, column)
        if expected is None:
            if value is not None:
                return False
        elif isinstance(expected, _MULTI_VALUE):
            # Compare with == so str-enum members match their raw values
            if not any(value == option for option in expected):
                return False
        elif value != expected:
            return False
    return True


class ChangeType(str, Enum):
    """Kinds of change notification."""
    SNAPSHOT = "snapshot"
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class ChangeEvent(BaseModel):
    """
    A change notification for the orders table.

    SNAPSHOT carries every row matching the subscription filter; the other
    types carry the single affected row (after the change, or as it was
    before a delete).
    """
    type: ChangeType
    table: str = "orders"
    records: list[OrderSnapshot] = Field(default_factory=list)

    def scoped_to(self, where: Where) -> Optional["ChangeEvent"]:
        """
        Restate this event from the point of view of a filtered subscriber.

        An UPDATE whose row no longer matches becomes a DELETE, since the row
        left the subscriber's result set. INSERTs of non-matching rows are
        dropped (returns None).
        """
        if self.type in (ChangeType.SNAPSHOT, ChangeType.INSERT):
            kept = [r for r in self.records if matches(r, where)]
            if self.type == ChangeType.INSERT and not kept:
                return None
            return self.model_copy(update={"records": kept})

        if self.type == ChangeType.UPDATE:
            if all(matches(r, where) for r in self.records):
                return self
            return self.model_copy(update={"type": ChangeType.DELETE})

        return self


class BaseChangeFeed(ABC):
    """Fans change events out to subscriber queues."""

    @abstractmethod
    async def publish(self, event: ChangeEvent) -> None:
        """Deliver an event to every attached queue (possibly in other processes)."""
        pass

    @abstractmethod
    async def attach(self, queue: asyncio.Queue) -> None:
        """Start delivering events (and feed errors) into the queue."""
        pass

    @abstractmethod
    async def detach(self, queue: asyncio.Queue) -> None:
        """Stop delivering into the queue."""
        pass

    async def health_check(self) -> bool:
        return True

    async def close(self) -> None:
        pass


_CLOSED = object()


class Subscription:
    """
    Live change stream for one filter.

    Attaches to the store's change feed *before* reading the snapshot so no
    change committed in between is missed; the consumer may therefore see
    an event already reflected in the snapshot, which is harmless for
    id-keyed views.

    Example:
        >>> async with store.subscribe({"delivery_person_id": None}) as events:
        ...     async for event in events:
        ...         print(event.type, len(event.records))
    """

    def __init__(self, store: "BaseRecordStore", where: Where):
        self._store = store
        self._where = dict(where)
        self._queue: Optional[asyncio.Queue] = None
        self._snapshot: Optional[ChangeEvent] = None
        self._closed = False

    @property
    def where(self) -> dict[str, Any]:
        return dict(self._where)

    async def open(self) -> "Subscription":
        self._queue = asyncio.Queue()
        await self._store.feed.attach(self._queue)
        try:
            records = await self._store.query(self._where)
        except BaseException:
            await self._store.feed.detach(self._queue)
            raise
        self._snapshot = ChangeEvent(type=ChangeType.SNAPSHOT, records=records)
        return self

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._queue is not None:
            await self._store.feed.detach(self._queue)
            self._queue.put_nowait(_CLOSED)

    async def __aenter__(self) -> "Subscription":
        return await self.open()

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> ChangeEvent:
        if self._queue is None:
            raise RuntimeError("Subscription is not open")
        if self._closed:
            raise StopAsyncIteration
        if self._snapshot is not None:
            event, self._snapshot = self._snapshot, None
            return event

        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                raise StopAsyncIteration
            if isinstance(item, Exception):
                self._closed = True
                raise item
            event = item.scoped_to(self._where)
            if event is not None:
                return event


class BaseRecordStore(ABC):
    """
    Abstract base class for record stores.

    Implementations must make conditional_update atomic: no other write
    to the same row may land between evaluating `where` and applying
    `changes`. Everything else may be stale.
    """

    def __init__(self, feed: BaseChangeFeed):
        self.feed = feed

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the store name (e.g. "memory", "sql")."""
        pass

    @abstractmethod
    async def get(self, order_id: str) -> Optional[OrderSnapshot]:
        """Point-read an order by id; None if it does not exist."""
        pass

    @abstractmethod
    async def evaluate(self, order_id: str, where: Where) -> Optional[bool]:
        """
        Evaluate a filter against one row on the store side.

        Returns:
            None if the row does not exist, else whether it matches
        """
        pass

    @abstractmethod
    async def query(self, where: Where) -> list[OrderSnapshot]:
        """Rows matching the filter, newest first by created_at."""
        pass

    @abstractmethod
    async def conditional_update(
        self,
        order_id: str,
        where: Where,
        changes: Mapping[str, Any],
    ) -> Optional[OrderSnapshot]:
        """
        Atomically apply `changes` to the row if `where` holds.

        Returns:
            The updated row, or None if zero rows matched

        Raises:
            StoreConnectionError: transport failure, outcome unknown
            StoreResponseError: the store's reply could not be interpreted
            StoreError: any other store-reported failure
        """
        pass

    @abstractmethod
    async def insert(self, values: Mapping[str, Any]) -> OrderSnapshot:
        """Insert a new order row and return it."""
        pass

    @abstractmethod
    async def delete(self, order_id: str) -> bool:
        """Delete an order row; False if it did not exist."""
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """Verify the store (and its change feed) is reachable."""
        pass

    def subscribe(self, where: Where) -> Subscription:
        """Open a filtered change subscription (use with `async with`)."""
        return Subscription(self, where)

    async def close(self) -> None:
        await self.feed.close()

    async def _publish(self, event: ChangeEvent) -> None:
        """
        Notify subscribers of a committed change.

        A feed failure never turns a committed write into a failure: live
        views are advisory and resynchronise from a snapshot on reconnect.
        """
        try:
            await self.feed.publish(event)
        except StoreConnectionError as e:
            logger.warning(f"Change feed publish failed for {event.type.value} event: {e}")
