"""
SQL Record Store Implementation

Backs the record store with the `orders` table through the SQLAlchemy async
engine (PostgreSQL via psycopg in staging/production).

The claim primitive is one statement:

    UPDATE orders SET ... WHERE id = :id AND <predicate> RETURNING *

The database serialises concurrent updates of the same row and re-checks the
predicate against the committed row, so of N concurrent claims exactly one
sees its predicate hold; the others get zero rows back.

Error Handling:
    - OperationalError / InterfaceError / pool timeouts -> StoreConnectionError
    - invalidated connections -> StoreConnectionError
    - any other SQLAlchemyError -> StoreError
    - rows that fail schema validation -> StoreResponseError

Version: 1.0.0
"""

import logging
from contextlib import contextmanager
from typing import Any, Mapping, Optional

from pydantic import ValidationError
from sqlalchemy import and_, delete, insert, select, true, update
from sqlalchemy.exc import (
    DBAPIError,
    InterfaceError,
    OperationalError,
    SQLAlchemyError,
    TimeoutError as PoolTimeoutError,
)
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from courier_dispatch.core.exceptions import (
    StoreConnectionError,
    StoreError,
    StoreResponseError,
)
from courier_dispatch.models import orders_table, utcnow
from courier_dispatch.schemas import OrderSnapshot
from courier_dispatch.services.store.base import (
    BaseRecordStore,
    BaseChangeFeed,
    ChangeEvent,
    ChangeType,
    Where,
)

logger = logging.getLogger(__name__)

_MULTI_VALUE = (list, tuple, set, frozenset)


def where_clauses(where: Where) -> list:
    """Translate a store filter into SQLAlchemy criteria on the orders table."""
    clauses = []
    for column_name, expected in where.items():
        column = orders_table.c[column_name]
        if expected is None:
            clauses.append(column.is_(None))
        elif isinstance(expected, _MULTI_VALUE):
            clauses.append(column.in_(list(expected)))
        else:
            clauses.append(column == expected)
    return clauses


@contextmanager
def translate_errors(action: str):
    """Re-raise SQLAlchemy failures as store exceptions."""
    try:
        yield
    except (OperationalError, InterfaceError, PoolTimeoutError, OSError) as e:
        raise StoreConnectionError(f"Database unreachable during {action}: {e}") from e
    except DBAPIError as e:
        if e.connection_invalidated:
            raise StoreConnectionError(f"Connection lost during {action}: {e}") from e
        raise StoreError(f"Database error during {action}: {e}") from e
    except SQLAlchemyError as e:
        raise StoreError(f"Database error during {action}: {e}") from e


def _to_snapshot(row: Optional[Mapping[str, Any]]) -> Optional[OrderSnapshot]:
    if row is None:
        return None
    try:
        return OrderSnapshot.model_validate(dict(row))
    except ValidationError as e:
        raise StoreResponseError(f"Unreadable order row: {e}") from e


class SqlRecordStore(BaseRecordStore):
    """
    Record store over the `orders` table.

    Every method runs in its own short transaction; nothing is held open
    between calls.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        feed: BaseChangeFeed,
    ):
        super().__init__(feed)
        self._session_maker = session_maker
        logger.info("SqlRecordStore initialized")

    @property
    def provider_name(self) -> str:
        return "sql"

    async def get(self, order_id: str) -> Optional[OrderSnapshot]:
        stmt = select(orders_table).where(orders_table.c.id == order_id)
        with translate_errors("get"):
            async with self._session_maker() as session:
                result = await session.execute(stmt)
                row = result.mappings().first()
        return _to_snapshot(row)

    async def evaluate(self, order_id: str, where: Where) -> Optional[bool]:
        clauses = where_clauses(where)
        predicate = and_(*clauses) if clauses else true()
        stmt = select(predicate.label("matches")).where(orders_table.c.id == order_id)
        with translate_errors("evaluate"):
            async with self._session_maker() as session:
                result = await session.execute(stmt)
                row = result.first()
        if row is None:
            return None
        return bool(row[0])

    async def query(self, where: Where) -> list[OrderSnapshot]:
        stmt = (
            select(orders_table)
            .where(*where_clauses(where))
            .order_by(orders_table.c.created_at.desc())
        )
        with translate_errors("query"):
            async with self._session_maker() as session:
                result = await session.execute(stmt)
                rows = result.mappings().all()
        return [_to_snapshot(row) for row in rows]

    async def conditional_update(
        self,
        order_id: str,
        where: Where,
        changes: Mapping[str, Any],
    ) -> Optional[OrderSnapshot]:
        stmt = (
            update(orders_table)
            .where(orders_table.c.id == order_id, *where_clauses(where))
            .values(**changes, version=orders_table.c.version + 1, updated_at=utcnow())
            .returning(*orders_table.c)
        )
        with translate_errors("conditional_update"):
            async with self._session_maker() as session:
                async with session.begin():
                    result = await session.execute(stmt)
                    row = result.mappings().first()

        updated = _to_snapshot(row)
        if updated is not None:
            await self._publish(ChangeEvent(type=ChangeType.UPDATE, records=[updated]))
        return updated

    async def insert(self, values: Mapping[str, Any]) -> OrderSnapshot:
        stmt = insert(orders_table).values(**values).returning(*orders_table.c)
        with translate_errors("insert"):
            async with self._session_maker() as session:
                async with session.begin():
                    result = await session.execute(stmt)
                    row = result.mappings().first()

        record = _to_snapshot(row)
        if record is None:
            raise StoreResponseError("Insert returned no row")
        await self._publish(ChangeEvent(type=ChangeType.INSERT, records=[record]))
        return record

    async def delete(self, order_id: str) -> bool:
        stmt = (
            delete(orders_table)
            .where(orders_table.c.id == order_id)
            .returning(*orders_table.c)
        )
        with translate_errors("delete"):
            async with self._session_maker() as session:
                async with session.begin():
                    result = await session.execute(stmt)
                    row = result.mappings().first()

        record = _to_snapshot(row)
        if record is None:
            return False
        await self._publish(ChangeEvent(type=ChangeType.DELETE, records=[record]))
        return True

    async def health_check(self) -> bool:
        try:
            with translate_errors("health_check"):
                async with self._session_maker() as session:
                    await session.execute(select(1))
        except StoreError as e:
            logger.error(f"Database health check failed: {e}")
            return False
        return await self.feed.health_check()
