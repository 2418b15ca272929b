"""
Change Feed Implementations

- InMemoryChangeFeed: fans events out to asyncio queues in this process.
  Used with MemoryRecordStore, and with SqlRecordStore in tests.
- RedisChangeFeed: publishes events on a Redis pub/sub channel so every
  API process sees every committed change, whichever process made it.

Version: 1.0.0
"""

import asyncio
import logging
from typing import Optional

import redis.asyncio as aioredis
from pydantic import ValidationError
from redis.exceptions import RedisError

from courier_dispatch.core.exceptions import StoreConnectionError
from courier_dispatch.services.store.base import BaseChangeFeed, ChangeEvent

logger = logging.getLogger(__name__)


class InMemoryChangeFeed(BaseChangeFeed):
    """Process-local fan-out."""

    def __init__(self):
        self._queues: set[asyncio.Queue] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._queues)

    async def publish(self, event: ChangeEvent) -> None:
        for queue in list(self._queues):
            queue.put_nowait(event)

    async def attach(self, queue: asyncio.Queue) -> None:
        self._queues.add(queue)

    async def detach(self, queue: asyncio.Queue) -> None:
        self._queues.discard(queue)

    async def disconnect_all(self, reason: str = "Change feed disconnected") -> None:
        """Drop every subscriber with a connection error (simulates a feed outage)."""
        queues, self._queues = self._queues, set()
        for queue in queues:
            queue.put_nowait(StoreConnectionError(reason))


class RedisChangeFeed(BaseChangeFeed):
    """
    Redis pub/sub change feed.

    One listener task per process reads the channel and dispatches to the
    local subscriber queues. If the connection drops, every subscriber
    receives a StoreConnectionError and is expected to resubscribe (which
    re-reads a full snapshot).
    """

    def __init__(
        self,
        redis_url: str,
        channel: str,
        client: Optional[aioredis.Redis] = None,
    ):
        self.channel = channel
        self._client = client or aioredis.from_url(redis_url)
        self._queues: set[asyncio.Queue] = set()
        self._pubsub = None
        self._listener: Optional[asyncio.Task] = None
        self._start_lock = asyncio.Lock()

        logger.info(f"RedisChangeFeed initialized (channel={channel})")

    async def publish(self, event: ChangeEvent) -> None:
        try:
            await self._client.publish(self.channel, event.model_dump_json())
        except (RedisError, OSError) as e:
            raise StoreConnectionError(f"Redis publish failed: {e}") from e

    async def attach(self, queue: asyncio.Queue) -> None:
        # Concurrent first attaches share one pubsub and one listener.
        async with self._start_lock:
            if self._listener is None or self._listener.done():
                try:
                    self._pubsub = self._client.pubsub()
                    await self._pubsub.subscribe(self.channel)
                except (RedisError, OSError) as e:
                    raise StoreConnectionError(f"Redis subscribe failed: {e}") from e
                self._listener = asyncio.create_task(self._listen(self._pubsub))
            self._queues.add(queue)

    async def detach(self, queue: asyncio.Queue) -> None:
        self._queues.discard(queue)

    def _dispatch(self, item) -> None:
        for queue in list(self._queues):
            queue.put_nowait(item)

    async def _listen(self, pubsub) -> None:
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    event = ChangeEvent.model_validate_json(message["data"])
                except ValidationError as e:
                    logger.warning(f"Discarding malformed change event: {e}")
                    continue
                self._dispatch(event)
            error = StoreConnectionError("Redis subscription ended")
        except (RedisError, OSError) as e:
            logger.error(f"Change feed listener lost connection: {e}")
            error = StoreConnectionError(f"Redis subscription lost: {e}")

        queues, self._queues = self._queues, set()
        for queue in queues:
            queue.put_nowait(error)
        await pubsub.aclose()

    async def health_check(self) -> bool:
        try:
            return bool(await self._client.ping())
        except (RedisError, OSError) as e:
            logger.error(f"Redis health check failed: {e}")
            return False

    async def close(self) -> None:
        if self._listener is not None and not self._listener.done():
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
        if self._pubsub is not None:
            await self._pubsub.aclose()
        await self._client.aclose()
