"""
Entity metadata: columns, primary keys, soft-delete column and relations.

Metadata is either declared by hand::

    users = EntityMetadata(
        name="user",
        table="users",
        columns=[
            ColumnMetadata(property_path="id", database_name="id", type="int4", is_primary=True),
            ColumnMetadata(property_path="profile.bio", database_name="profile_bio"),
            ColumnMetadata(property_path="deleted_at", database_name="deleted_at",
                           type="timestamptz", is_delete_date=True),
        ],
        relations=[RelationMetadata(property_name="company", target="company",
                                    source_column="company_id", target_column="id")],
    )

or introspected from PostgreSQL ``information_schema`` through asyncpg.
"""
from typing import Dict, Iterable, List, Optional

from asyncpg import Connection
from pydantic import BaseModel, Field

from crudhatch.logging_config import get_logger
from crudhatch.service.pgtypes import get_sql_type
from crudhatch.sql.builder import table_clause

logger = get_logger(__name__)


class ColumnMetadata(BaseModel):
    property_path: str = Field(..., description="Name used by clients; dotted for embedded properties")
    database_name: str = Field(..., description="Column name in the table")
    type: str = Field("text", description="Storage type; element type for array columns")
    is_primary: bool = False
    is_delete_date: bool = False
    is_array: bool = False
    nullable: bool = True


class RelationMetadata(BaseModel):
    """
    A relation from the owning entity to ``target``.

    ``source_column`` lives on the owning table and ``target_column`` on the
    target table; ``many`` marks one-to-many relations.
    """

    property_name: str
    target: str
    source_column: str
    target_column: str
    many: bool = False
    nullable: bool = True


class EntityMetadata(BaseModel):
    name: str = Field(..., description="Entity name, also used as the main query alias")
    table: str
    table_schema: Optional[str] = None
    columns: List[ColumnMetadata]
    relations: List[RelationMetadata] = []

    @property
    def entity_columns(self) -> List[str]:
        return [column.property_path for column in self.columns]

    @property
    def entity_columns_hash(self) -> Dict[str, str]:
        return {column.property_path: column.database_name for column in self.columns}

    @property
    def entity_primary_columns(self) -> List[str]:
        return [column.property_path for column in self.columns if column.is_primary]

    @property
    def delete_date_column(self) -> Optional[ColumnMetadata]:
        return next((column for column in self.columns if column.is_delete_date), None)

    @property
    def entity_has_delete_column(self) -> bool:
        return self.delete_date_column is not None

    def sql_table(self):
        """SQLAlchemy table of this entity with every column typed."""
        return table_clause(
            self.table,
            {column.database_name: get_sql_type(column.type, column.is_array) for column in self.columns},
            self.table_schema,
        )

    def get_column(self, property_path: str) -> Optional[ColumnMetadata]:
        return next((column for column in self.columns if column.property_path == property_path), None)

    def get_relation(self, property_name: str) -> Optional[RelationMetadata]:
        return next(
            (relation for relation in self.relations if relation.property_name == property_name),
            None,
        )


class MetadataRegistry:
    """Entity metadata by entity name, used to walk relation paths."""

    def __init__(self, entities: Optional[Iterable[EntityMetadata]] = None):
        self._entities: Dict[str, EntityMetadata] = {}
        for entity in entities or []:
            self.register(entity)

    def register(self, entity: EntityMetadata) -> EntityMetadata:
        self._entities[entity.name] = entity
        return entity

    def get(self, name: str) -> EntityMetadata:
        try:
            return self._entities[name]
        except KeyError:
            raise ValueError(f"Entity '{name}' is not registered")

    def find(self, name: str) -> Optional[EntityMetadata]:
        return self._entities.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._entities

    def __iter__(self):
        return iter(self._entities.values())

    async def introspect(
        self,
        conn: Connection,
        tables: Iterable[str],
        schema: str = "public",
        delete_date_column: Optional[str] = "deleted_at",
    ) -> "MetadataRegistry":
        """
        Load metadata for ``tables`` from ``information_schema``.

        Foreign keys become many-to-one relations named after the key column
        without its ``_id`` suffix; when the referenced table is introspected
        too it gets the inverse one-to-many relation named after this table.

        Args:
            conn: asyncpg connection
            tables: Table names; each entity is named after its table
            schema: Schema holding the tables
            delete_date_column: Column marking soft-deleted rows, if present

        Returns:
            MetadataRegistry: Self for method chaining
        """
        tables = list(tables)
        foreign_keys: Dict[str, List[dict]] = {}

        for table in tables:
            column_rows = await conn.fetch(COLUMNS_QUERY, schema, table)
            if not column_rows:
                raise ValueError(f"Table {schema}.{table} not found")

            primary_keys = {row["column_name"] for row in await conn.fetch(PRIMARY_KEYS_QUERY, schema, table)}
            columns = [
                _column_from_row(row, primary_keys, delete_date_column) for row in column_rows
            ]
            self.register(EntityMetadata(name=table, table=table, table_schema=schema, columns=columns))
            foreign_keys[table] = [dict(row) for row in await conn.fetch(FOREIGN_KEYS_QUERY, schema, table)]

        for table, keys in foreign_keys.items():
            entity = self.get(table)
            for key in keys:
                target = key["foreign_table"]
                if target not in self:
                    logger.debug("Skipping relation %s.%s -> %s: target not introspected",
                                 table, key["column_name"], target)
                    continue

                source_column = entity.get_column(key["column_name"])
                entity.relations.append(
                    RelationMetadata(
                        property_name=_relation_name(key["column_name"]),
                        target=target,
                        source_column=key["column_name"],
                        target_column=key["foreign_column"],
                        nullable=source_column.nullable if source_column else True,
                    )
                )
                inverse = self.get(target)
                if inverse.get_relation(table) is None:
                    inverse.relations.append(
                        RelationMetadata(
                            property_name=table,
                            target=table,
                            source_column=key["foreign_column"],
                            target_column=key["column_name"],
                            many=True,
                        )
                    )

        logger.info("Introspected %d table(s) in schema %s", len(tables), schema)
        return self


def _relation_name(column_name: str) -> str:
    if column_name.endswith("_id") and len(column_name) > 3:
        return column_name[:-3]
    return column_name


def _column_from_row(row, primary_keys, delete_date_column: Optional[str]) -> ColumnMetadata:
    name = row["column_name"]
    is_array = row["data_type"] == "ARRAY"
    udt_name = row["udt_name"]
    return ColumnMetadata(
        property_path=name,
        database_name=name,
        type=udt_name[1:] if is_array and udt_name.startswith("_") else udt_name,
        is_primary=name in primary_keys,
        is_delete_date=delete_date_column is not None and name == delete_date_column,
        is_array=is_array,
        nullable=row["is_nullable"] == "YES",
    )


COLUMNS_QUERY = """
SELECT column_name, data_type, udt_name, is_nullable
FROM information_schema.columns
WHERE table_schema = $1 AND table_name = $2
ORDER BY ordinal_position
"""

PRIMARY_KEYS_QUERY = """
SELECT kcu.column_name
FROM information_schema.table_constraints tc
JOIN information_schema.key_column_usage kcu
  ON tc.constraint_name = kcu.constraint_name AND tc.table_schema = kcu.table_schema
WHERE tc.constraint_type = 'PRIMARY KEY' AND tc.table_schema = $1 AND tc.table_name = $2
ORDER BY kcu.ordinal_position
"""

FOREIGN_KEYS_QUERY = """
SELECT kcu.column_name,
       ccu.table_name AS foreign_table,
       ccu.column_name AS foreign_column
FROM information_schema.table_constraints tc
JOIN information_schema.key_column_usage kcu
  ON tc.constraint_name = kcu.constraint_name AND tc.table_schema = kcu.table_schema
JOIN information_schema.constraint_column_usage ccu
  ON ccu.constraint_name = tc.constraint_name AND ccu.table_schema = tc.table_schema
WHERE tc.constraint_type = 'FOREIGN KEY' AND tc.table_schema = $1 AND tc.table_name = $2
"""
