"""
Storage collaborator: executes built statements and entity writes.

Rows crossing this interface are keyed by database column name. The pool is
created and closed by the caller; ``AsyncpgStorage`` only borrows connections.
"""
import time
from collections import OrderedDict
from typing import Any, Dict, List, Optional, Protocol, Tuple

from asyncpg import Pool
from sqlalchemy import func, null

from crudhatch.logging_config import get_logger
from crudhatch.service.metadata import EntityMetadata
from crudhatch.sql.builder import DeleteQuery, InsertQuery, UpdateQuery
from crudhatch.sql.dialects import Dialect, PostgresDialect

logger = get_logger(__name__)

Row = Dict[str, Any]

BULK_CHUNK_SIZE = 50

DEFAULT_CACHE_SIZE = 1024


class Storage(Protocol):
    dialect: Dialect

    async def fetch(self, sql: str, args: List[Any], cache_ms: Optional[int] = None) -> List[Row]:
        ...

    async def fetch_value(self, sql: str, args: List[Any], cache_ms: Optional[int] = None) -> Any:
        ...

    async def insert(self, entity: EntityMetadata, values: Row) -> Row:
        ...

    async def insert_many(self, entity: EntityMetadata, rows: List[Row], chunk_size: int = BULK_CHUNK_SIZE) -> List[Row]:
        ...

    async def update(self, entity: EntityMetadata, key: Row, values: Row) -> Optional[Row]:
        ...

    async def delete(self, entity: EntityMetadata, key: Row) -> Optional[Row]:
        ...

    async def soft_delete(self, entity: EntityMetadata, key: Row) -> Optional[Row]:
        ...

    async def recover(self, entity: EntityMetadata, key: Row) -> Optional[Row]:
        ...


class ResultCache:
    """
    Query results keyed by SQL text and arguments, each kept for its own TTL.

    Expired entries are dropped whenever a result is stored; beyond
    ``max_entries`` the least recently stored entries go first.
    """

    def __init__(self, max_entries: int = DEFAULT_CACHE_SIZE):
        if max_entries < 1:
            raise ValueError("max_entries must be positive")
        self.max_entries = max_entries
        self._entries: "OrderedDict[Tuple[str, str], Tuple[float, Any]]" = OrderedDict()

    @staticmethod
    def key(sql: str, args: List[Any]) -> Tuple[str, str]:
        return sql, repr(args)

    def get(self, key: Tuple[str, str]) -> Tuple[bool, Any]:
        entry = self._entries.get(key)
        if entry is None:
            return False, None
        expires_at, value = entry
        if expires_at < time.monotonic():
            self._entries.pop(key, None)
            return False, None
        return True, value

    def set(self, key: Tuple[str, str], value: Any, ttl_ms: int) -> None:
        self.purge()
        self._entries[key] = (time.monotonic() + ttl_ms / 1000, value)
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def purge(self) -> int:
        """Drop expired entries; returns how many were dropped."""
        now = time.monotonic()
        expired = [key for key, (expires_at, _) in self._entries.items() if expires_at < now]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class AsyncpgStorage:
    """
    PostgreSQL storage on an asyncpg pool.

    Args:
        pool: asyncpg pool owned by the caller
        cache: Result cache for queries carrying a cache directive
    """

    def __init__(self, pool: Pool, cache: Optional[ResultCache] = None):
        self._pool = pool
        self.dialect = PostgresDialect()
        self.cache = cache if cache is not None else ResultCache()

    async def fetch(self, sql: str, args: List[Any], cache_ms: Optional[int] = None) -> List[Row]:
        return await self._cached(sql, args, cache_ms, self._fetch)

    async def fetch_value(self, sql: str, args: List[Any], cache_ms: Optional[int] = None) -> Any:
        return await self._cached(sql, args, cache_ms, self._fetch_value)

    async def insert(self, entity: EntityMetadata, values: Row) -> Row:
        query = InsertQuery(entity.sql_table(), self.dialect).values(values).returning()
        rows = await self._execute(query)
        return rows[0]

    async def insert_many(
        self, entity: EntityMetadata, rows: List[Row], chunk_size: int = BULK_CHUNK_SIZE
    ) -> List[Row]:
        saved: List[Row] = []
        target = entity.sql_table()
        for start in range(0, len(rows), chunk_size):
            chunk = rows[start:start + chunk_size]
            query = InsertQuery(target, self.dialect).values(*chunk).returning()
            saved.extend(await self._execute(query))
        return saved

    async def update(self, entity: EntityMetadata, key: Row, values: Row) -> Optional[Row]:
        query = (
            UpdateQuery(entity.sql_table(), self.dialect)
            .set_dict(values)
            .where_equals(key)
            .returning()
        )
        return self._first(await self._execute(query))

    async def delete(self, entity: EntityMetadata, key: Row) -> Optional[Row]:
        query = DeleteQuery(entity.sql_table(), self.dialect).where_equals(key).returning()
        return self._first(await self._execute(query))

    async def soft_delete(self, entity: EntityMetadata, key: Row) -> Optional[Row]:
        return await self._set_delete_date(entity, key, func.current_timestamp())

    async def recover(self, entity: EntityMetadata, key: Row) -> Optional[Row]:
        return await self._set_delete_date(entity, key, null())

    async def _set_delete_date(self, entity: EntityMetadata, key: Row, expression) -> Optional[Row]:
        column = entity.delete_date_column
        if column is None:
            raise ValueError(f"Entity '{entity.name}' has no delete date column")
        query = (
            UpdateQuery(entity.sql_table(), self.dialect)
            .set(column.database_name, expression)
            .where_equals(key)
            .returning()
        )
        return self._first(await self._execute(query))

    async def _cached(self, sql: str, args: List[Any], cache_ms: Optional[int], loader):
        if not cache_ms:
            return await loader(sql, args)

        key = self.cache.key(sql, args)
        hit, value = self.cache.get(key)
        if hit:
            logger.debug("Cache hit for query: %s", sql)
            return value

        value = await loader(sql, args)
        self.cache.set(key, value, cache_ms)
        return value

    async def _fetch(self, sql: str, args: List[Any]) -> List[Row]:
        logger.debug("Executing query: %s", sql)
        async with self._pool.acquire() as conn:
            records = await conn.fetch(sql, *args)
        return [dict(record) for record in records]

    async def _fetch_value(self, sql: str, args: List[Any]) -> Any:
        logger.debug("Executing query: %s", sql)
        async with self._pool.acquire() as conn:
            return await conn.fetchval(sql, *args)

    async def _execute(self, query) -> List[Row]:
        sql, args = query.build()
        rows = await self._fetch(sql, args)
        # writes invalidate cached reads
        self.cache.clear()
        return rows

    @staticmethod
    def _first(rows: List[Row]) -> Optional[Row]:
        return rows[0] if rows else None
