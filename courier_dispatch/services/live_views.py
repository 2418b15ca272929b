"""
Live Order Views

Continuously updated, id-keyed lists of orders built on record store
subscriptions. Views are display data only: a courier seeing an order in
the available view must still win accept_order.

Usage:
    view = coordinator.get_available_orders_view()
    async for orders in view:
        render(orders)  # newest first

Every new iteration, and every automatic reconnect after a change feed
failure, starts from a full snapshot rather than replaying missed deltas.

Version: 1.0.0
"""

import asyncio
import logging
from typing import AsyncIterator, Optional

from courier_dispatch.core.exceptions import StoreConnectionError
from courier_dispatch.schemas import OrderSnapshot
from courier_dispatch.services.store.base import (
    BaseRecordStore,
    ChangeEvent,
    ChangeType,
    Where,
)

logger = logging.getLogger(__name__)


def apply_event(
    rows: dict[str, OrderSnapshot],
    versions: dict[str, int],
    event: ChangeEvent,
) -> bool:
    """
    Fold one change event into an id-keyed row map.

    `versions` holds the last version seen per id, including ids that have
    since been deleted, so an event older than one already applied is
    dropped even when it arrives after the row left the view.

    Returns:
        True if the map changed
    """
    if event.type == ChangeType.SNAPSHOT:
        rows.clear()
        versions.clear()
        for record in event.records:
            rows[record.id] = record
            versions[record.id] = record.version
        return True

    changed = False
    for record in event.records:
        seen = versions.get(record.id)
        if event.type == ChangeType.DELETE:
            if seen is not None and record.version < seen:
                continue
            versions[record.id] = record.version
            if rows.pop(record.id, None) is not None:
                changed = True
        else:
            if seen is not None and record.version <= seen:
                continue
            versions[record.id] = record.version
            rows[record.id] = record
            changed = True
    return changed


class OrderListView:
    """
    Async-iterable live list of the orders matching a filter.

    Attributes:
        name: Label used in log lines
        reconnect_delay: Seconds to wait before resubscribing
        max_reconnects: Give up (re-raise) after this many consecutive
            failed reconnects; None retries forever
    """

    def __init__(
        self,
        store: BaseRecordStore,
        where: Where,
        name: str = "orders",
        reconnect_delay: float = 2.0,
        max_reconnects: Optional[int] = None,
    ):
        self._store = store
        self._where = dict(where)
        self.name = name
        self.reconnect_delay = reconnect_delay
        self.max_reconnects = max_reconnects

    @property
    def where(self) -> dict:
        return dict(self._where)

    def __aiter__(self) -> AsyncIterator[list[OrderSnapshot]]:
        return self._stream()

    @staticmethod
    def _ordered(rows: dict[str, OrderSnapshot]) -> list[OrderSnapshot]:
        return sorted(rows.values(), key=lambda row: row.created_at, reverse=True)

    async def _stream(self) -> AsyncIterator[list[OrderSnapshot]]:
        failures = 0
        while True:
            try:
                async with self._store.subscribe(self._where) as events:
                    rows: dict[str, OrderSnapshot] = {}
                    versions: dict[str, int] = {}
                    async for event in events:
                        failures = 0
                        if apply_event(rows, versions, event):
                            yield self._ordered(rows)
                return
            except StoreConnectionError as e:
                failures += 1
                if self.max_reconnects is not None and failures > self.max_reconnects:
                    logger.error(f"Live view '{self.name}' giving up after {failures - 1} reconnects: {e}")
                    raise
                logger.warning(
                    f"Live view '{self.name}' disconnected ({e}); "
                    f"resubscribing in {self.reconnect_delay}s"
                )
                await asyncio.sleep(self.reconnect_delay)
