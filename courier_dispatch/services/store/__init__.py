"""
Record Store Factory

Provides a single entry point for obtaining the record store. The factory
keeps the claim coordinator agnostic about which backend is in use.

Usage:
    from courier_dispatch.services.store import get_record_store

    # Returns MemoryRecordStore or SqlRecordStore based on ENV_MODE
    store = get_record_store()

    order = await store.get(order_id)

Environment Switching:
    - ENV_MODE=development → MemoryRecordStore + InMemoryChangeFeed
    - ENV_MODE=staging     → SqlRecordStore + RedisChangeFeed
    - ENV_MODE=production  → SqlRecordStore + RedisChangeFeed

Version: 1.0.0
"""

import logging
from functools import lru_cache

from courier_dispatch.core.config import get_settings
from courier_dispatch.database import async_session_maker
from courier_dispatch.services.store.base import (
    BaseRecordStore,
    BaseChangeFeed,
    ChangeEvent,
    ChangeType,
    Subscription,
    Where,
    matches,
)
from courier_dispatch.services.store.feed import InMemoryChangeFeed, RedisChangeFeed
from courier_dispatch.services.store.memory import MemoryRecordStore
from courier_dispatch.services.store.sql import SqlRecordStore

logger = logging.getLogger(__name__)


@lru_cache()
def get_record_store() -> BaseRecordStore:
    """
    Get the configured record store instance.

    The instance is cached so every caller in the process shares one store
    (and, for the memory store, one set of rows).

    Returns:
        BaseRecordStore: Configured record store
    """
    settings = get_settings()

    if settings.is_development:
        logger.info("Record Store: Using MemoryRecordStore (development mode)")
        return MemoryRecordStore(
            failure_rate=settings.mock_failure_rate,
            min_latency=settings.mock_min_latency,
            max_latency=settings.mock_max_latency,
        )

    logger.info(
        f"Record Store: Using SqlRecordStore "
        f"({settings.env_mode.value} mode)"
    )
    return SqlRecordStore(
        session_maker=async_session_maker,
        feed=RedisChangeFeed(settings.redis_url, settings.change_channel),
    )


def reset_record_store() -> None:
    """
    Clear the cached record store instance.

    Useful for testing or when configuration changes at runtime.
    """
    get_record_store.cache_clear()
    logger.debug("Record store cache cleared")


__all__ = [
    "get_record_store",
    "reset_record_store",
    "BaseRecordStore",
    "BaseChangeFeed",
    "ChangeEvent",
    "ChangeType",
    "Subscription",
    "Where",
    "matches",
    "InMemoryChangeFeed",
    "RedisChangeFeed",
    "MemoryRecordStore",
    "SqlRecordStore",
]
