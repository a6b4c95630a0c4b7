import asyncio
from contextlib import asynccontextmanager
from typing import Dict, Iterable, Optional

import asyncpg
from fastapi import APIRouter, FastAPI

from crudhatch.config import CrudConfig
from crudhatch.logging_config import get_logger
from crudhatch.options import CrudOptions
from crudhatch.router.router import CrudRouter
from crudhatch.service.crud_service import CrudService
from crudhatch.service.metadata import MetadataRegistry
from crudhatch.service.storage import AsyncpgStorage, ResultCache

logger = get_logger(__name__)


class SchemaRouter(APIRouter):
    """
    Introspects ``tables`` on startup and mounts a ``CrudRouter`` under
    ``/<table>`` for each of them.

    Args:
        connection_str: asyncpg DSN
        tables: Tables to expose
        schema: Schema holding the tables
        config: Process-wide configuration
        options: Per-table route options
        delete_date_column: Soft-delete column name looked up during introspection
    """

    def __init__(
        self,
        connection_str: Optional[str] = None,
        tables: Iterable[str] = (),
        schema: str = "public",
        config: Optional[CrudConfig] = None,
        options: Optional[Dict[str, CrudOptions]] = None,
        delete_date_column: Optional[str] = "deleted_at",
        **kwargs,
    ):
        super().__init__(**kwargs, lifespan=self.lifespan)

        logger.info("Initializing SchemaRouter for schema: %s", schema)
        self.connection_str = connection_str
        self.tables = list(tables)
        self.schema = schema
        self.config = config or CrudConfig()
        if self.config.dialect != "postgres":
            raise ValueError(f"SchemaRouter serves PostgreSQL through asyncpg, got dialect '{self.config.dialect}'")
        self.table_options = options or {}
        self.delete_date_column = delete_date_column

        self.initialized = False
        self.metadata = MetadataRegistry()
        self._pool = None
        self._app: Optional[FastAPI] = None

    @asynccontextmanager
    async def lifespan(self, app: FastAPI):
        self._app = app
        self._pool = await asyncpg.create_pool(dsn=self.connection_str)

        logger.info("Starting SchemaRouter for schema: %s", self.schema)
        await self.start()

        self.initialized = True
        yield
        await asyncio.wait_for(self._pool.close(), timeout=10)

    async def start(self) -> None:
        async with self._pool.acquire() as conn:
            await self.metadata.introspect(
                conn, self.tables, schema=self.schema, delete_date_column=self.delete_date_column
            )

        storage = AsyncpgStorage(self._pool, ResultCache(self.config.cache_size))
        for table in self.tables:
            service = CrudService(self.metadata.get(table), storage, self.metadata)
            self.include_router(
                CrudRouter(service, self.config, self.table_options.get(table), prefix=f"/{table}", tags=[table])
            )

        self._app.include_router(self)
        self._app.openapi_schema = None
