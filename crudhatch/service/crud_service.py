"""
CRUD service for one entity.

Builds ``SelectQuery`` objects from an assembled ``CrudRequest`` (select list,
soft-delete filter, joins, search, sort, paging, cache), runs them through a
``Storage`` and hydrates the flat rows into nested dictionaries.
"""
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict
from sqlalchemy.sql.expression import ColumnElement

from crudhatch.exceptions import EmptyPayloadError, NotFoundError
from crudhatch.logging_config import get_logger, log_performance
from crudhatch.options import CrudOptions, QueryOptions
from crudhatch.request.conditions import LeafCondition
from crudhatch.request.models import ParsedRequest, QueryJoin
from crudhatch.service.compiler import ConditionCompiler
from crudhatch.service.metadata import EntityMetadata, MetadataRegistry
from crudhatch.service.operators import OperatorRegistry
from crudhatch.service.pagination import (
    GetManyResponse,
    create_page_info,
    decide_pagination,
    get_skip,
    get_take,
)
from crudhatch.service.pgtypes import coerce_value
from crudhatch.service.relations import AllowedRelation, RelationRegistry, get_allowed_columns
from crudhatch.service.storage import Row, Storage
from crudhatch.sql.builder import SelectQuery, group

logger = get_logger(__name__)

ALIAS_SEPARATOR = "__"


class CrudRequest(BaseModel):
    """What the service consumes: the parsed request and the merged route options."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    parsed: ParsedRequest
    options: CrudOptions
    auth: Any = None


def _set_path(target: Dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    for part in parts[:-1]:
        node = target.get(part)
        if not isinstance(node, dict):
            node = target[part] = {}
        target = node
    target[parts[-1]] = value


def _get_path(source: Dict[str, Any], path: str) -> Any:
    """Value at a property path; ``KeyError`` when absent."""
    if path in source:
        return source[path]
    node: Any = source
    for part in path.split("."):
        if not isinstance(node, dict) or part not in node:
            raise KeyError(path)
        node = node[part]
    return node


def _unique(values: List[str]) -> List[str]:
    return list(dict.fromkeys(values))


class CrudService:
    """
    CRUD operations for ``entity``.

    Args:
        entity: Metadata of the served entity
        storage: Storage collaborator executing statements
        metadata: Registry holding related entities for joins
    """

    def __init__(
        self,
        entity: EntityMetadata,
        storage: Storage,
        metadata: Optional[MetadataRegistry] = None,
    ):
        self.entity = entity
        self.storage = storage
        self.dialect = storage.dialect
        self.metadata = metadata if metadata is not None else MetadataRegistry()
        if entity.name not in self.metadata:
            self.metadata.register(entity)

        self.alias = entity.name
        self.logger = get_logger(f"{__name__}.{entity.name}", context={"entity": entity.name})
        self.entity_columns = entity.entity_columns
        self.entity_columns_hash = entity.entity_columns_hash
        self.entity_primary_columns = entity.entity_primary_columns
        self.entity_has_delete_column = entity.entity_has_delete_column
        self.relations = RelationRegistry(entity, self.metadata)

    @log_performance(logger, "get_many")
    async def get_many(self, req: CrudRequest) -> Union[GetManyResponse, List[Row]]:
        query = self.create_builder(req.parsed, req.options)
        return await self.do_get_many(query, req.parsed, req.options)

    @log_performance(logger, "get_one")
    async def get_one(self, req: CrudRequest) -> Row:
        return await self.get_one_or_fail(req)

    @log_performance(logger, "create_one")
    async def create_one(self, req: CrudRequest, dto: Dict[str, Any]) -> Row:
        """
        Insert one entity. Path parameters and auth-persisted values override
        the payload. Unless the route returns shallow, the saved row is
        re-read with the full select and joins.
        """
        entity = self.prepare_entity_before_save(dto, req.parsed)
        if entity is None:
            raise EmptyPayloadError("Empty data. Nothing to save.")

        saved = self.to_entity(await self.storage.insert(self.entity, self.to_row(entity)))

        if req.options.routes.create_one_base.return_shallow:
            return saved
        return await self._refetch(req, saved)

    @log_performance(logger, "create_many")
    async def create_many(self, req: CrudRequest, dto: Dict[str, Any]) -> List[Row]:
        if not isinstance(dto, dict) or not isinstance(dto.get("bulk"), list) or not dto["bulk"]:
            raise EmptyPayloadError("Empty data. Nothing to save.")

        bulk = [self.prepare_entity_before_save(one, req.parsed) for one in dto["bulk"]]
        bulk = [one for one in bulk if one is not None]
        if not bulk:
            raise EmptyPayloadError("Empty data. Nothing to save.")

        saved = await self.storage.insert_many(self.entity, [self.to_row(one) for one in bulk])
        return [self.to_entity(row) for row in saved]

    @log_performance(logger, "update_one")
    async def update_one(self, req: CrudRequest, dto: Dict[str, Any]) -> Row:
        route = req.options.routes.update_one_base
        req = self._without_cache(req)
        found = await self.get_one_or_fail(req, shallow=route.return_shallow)

        to_save = {**found, **(dto or {})}
        if not route.allow_params_override:
            to_save.update(self.get_param_filters(req.parsed))
        to_save.update(req.parsed.auth_persist)

        updated = await self.storage.update(self.entity, self.primary_key(found), self.to_row(to_save))
        if updated is None:
            raise NotFoundError(f"{self.alias} not found")
        updated = self.to_entity(updated)

        if route.return_shallow:
            return updated
        return await self._refetch(req, updated)

    @log_performance(logger, "replace_one")
    async def replace_one(self, req: CrudRequest, dto: Dict[str, Any]) -> Row:
        route = req.options.routes.replace_one_base
        req = self._without_cache(req)
        try:
            found: Optional[Row] = await self.get_one_or_fail(req, shallow=route.return_shallow)
        except NotFoundError:
            found = None

        params = self.get_param_filters(req.parsed)
        if route.allow_params_override:
            to_save = {**(found or {}), **params, **(dto or {}), **req.parsed.auth_persist}
        else:
            to_save = {**(found or {}), **(dto or {}), **params, **req.parsed.auth_persist}

        if found is not None:
            replaced = await self.storage.update(self.entity, self.primary_key(found), self.to_row(to_save))
        else:
            replaced = await self.storage.insert(self.entity, self.to_row(to_save))
        if replaced is None:
            raise NotFoundError(f"{self.alias} not found")
        replaced = self.to_entity(replaced)

        if route.return_shallow:
            return replaced
        return await self._refetch(req, replaced)

    @log_performance(logger, "delete_one")
    async def delete_one(self, req: CrudRequest) -> Optional[Row]:
        """Delete (or soft delete) one entity; returns it when the route asks for it."""
        return_deleted = req.options.routes.delete_one_base.return_deleted
        req = self._without_cache(req)
        found = await self.get_one_or_fail(req, shallow=not return_deleted)

        if req.options.query.soft_delete and self.entity_has_delete_column:
            await self.storage.soft_delete(self.entity, self.primary_key(found))
        else:
            await self.storage.delete(self.entity, self.primary_key(found))

        return found if return_deleted else None

    @log_performance(logger, "recover_one")
    async def recover_one(self, req: CrudRequest) -> Optional[Row]:
        req = self._without_cache(req)
        found = await self.get_one_or_fail(req, with_deleted=True)
        recovered = await self.storage.recover(self.entity, self.primary_key(found))
        if not req.options.routes.recover_one_base.return_recovered:
            return None
        return self.to_entity(recovered) if recovered is not None else found

    def get_param_filters(self, parsed: ParsedRequest) -> Dict[str, Any]:
        return {f.field: f.value for f in parsed.param_filter}

    def prepare_entity_before_save(self, dto: Any, parsed: ParsedRequest) -> Optional[Dict[str, Any]]:
        if not isinstance(dto, dict):
            return None
        entity = {**dto, **self.get_param_filters(parsed)}
        if not entity:
            return None
        return {**entity, **parsed.auth_persist}

    def create_builder(
        self,
        parsed: ParsedRequest,
        options: CrudOptions,
        many: bool = True,
        with_deleted: bool = False,
    ) -> SelectQuery:
        """
        Build the SELECT for a request.

        Args:
            parsed: Assembled request
            options: Merged route options
            many: Apply sort and paging
            with_deleted: Include soft-deleted rows

        Returns:
            SelectQuery: Query ready to build
        """
        query_options = options.query
        query = SelectQuery(self.entity.sql_table(), self.alias, self.dialect)
        compiler = self.create_compiler(options)

        for column in self.get_select(parsed, query_options):
            query.add_select(
                query.column(self.alias, self.entity_columns_hash[column]),
                f"{self.alias}{ALIAS_SEPARATOR}{column}",
            )

        include_deleted = with_deleted or (query_options.soft_delete and parsed.include_deleted == 1)
        self.set_soft_delete_filter(query, include_deleted)

        join_options = query_options.join or {}
        if join_options:
            eager = set()
            for field, option in join_options.items():
                if option.eager:
                    cond = next((j for j in parsed.join if j.field == field), QueryJoin(field=field))
                    self.set_join(cond, query_options, query, compiler)
                    eager.add(field)
            for cond in parsed.join:
                if cond.field not in eager:
                    self.set_join(cond, query_options, query, compiler)
        elif parsed.join:
            for cond in parsed.join:
                self.set_join(cond, query_options, query, compiler)

        compiler.compile(parsed.search, query)

        if many:
            for sort in parsed.sort or query_options.sort:
                column, _ = compiler.resolve_field(sort.field, query)
                query.order_by(column, sort.order)

            take = get_take(parsed, query_options)
            query.limit(take)
            query.offset(get_skip(parsed, take))

        if query_options.cache and parsed.cache != 0:
            query.cache(int(query_options.cache))

        return query

    def create_compiler(self, options: CrudOptions) -> ConditionCompiler:
        return ConditionCompiler(
            self.entity,
            self.relations,
            options.query.join,
            OperatorRegistry(options.operators.custom),
        )

    def set_soft_delete_filter(self, query: SelectQuery, include_deleted: bool) -> None:
        column = self.entity.delete_date_column
        if column is not None and not include_deleted:
            query.and_where(query.column(self.alias, column.database_name).is_(None))

    def get_select(self, parsed: ParsedRequest, options: QueryOptions) -> List[str]:
        """Requested fields within the allow-list, plus persisted and primary columns."""
        allowed = get_allowed_columns(self.entity_columns, options.allow, options.exclude)
        columns = [field for field in parsed.fields if field in allowed] if parsed.fields else allowed
        persist = [column for column in (options.persist or []) if column in self.entity_columns_hash]
        return _unique(persist + columns + self.entity_primary_columns)

    def set_join(
        self,
        cond: QueryJoin,
        options: QueryOptions,
        query: SelectQuery,
        compiler: Optional[ConditionCompiler] = None,
    ) -> Optional[AllowedRelation]:
        """
        Join an allow-listed relation; anything else is skipped with a warning.

        Returns:
            Optional[AllowedRelation]: The joined relation, or ``None`` if skipped
        """
        join_options = options.join or {}
        option = join_options.get(cond.field)
        if option is None:
            self.logger.warning(
                'relation "%s" not found in allowed relations. Did you mean to use one of these? [%s]',
                cond.field,
                ", ".join(join_options),
            )
            return None

        relation = self.relations.get_relation_metadata(cond.field, option)
        if relation is None:
            self.logger.warning('relation "%s" is not defined on entity %s', cond.field, self.alias)
            return None

        alias = relation.join_alias
        if query.has_join(alias):
            return relation
        if relation.parent_alias != self.alias and not query.has_join(relation.parent_alias):
            self.logger.warning('relation "%s" skipped: parent relation is not joined', cond.field)
            return None

        compiler = compiler or ConditionCompiler(self.entity, self.relations, join_options)
        target = relation.entity
        query.add_source(target.sql_table(), alias)
        conditions = [
            query.column(relation.parent_alias, relation.relation.source_column)
            == query.column(alias, relation.relation.target_column)
        ]
        for condition in cond.on or []:
            conditions.append(compiler.map_condition(query, condition, pending_alias=alias))
        query.join(alias, group(conditions), outer=not option.required)

        if option.select:
            requested = [c for c in cond.select if c in relation.allowed_columns] if cond.select else relation.allowed_columns
            columns = _unique(relation.primary_columns + (option.persist or []) + requested)
            hash_ = target.entity_columns_hash
            for column in columns:
                if column in hash_:
                    query.add_select(query.column(alias, hash_[column]), f"{alias}{ALIAS_SEPARATOR}{column}")

        return relation

    async def do_get_many(
        self, query: SelectQuery, parsed: ParsedRequest, options: CrudOptions
    ) -> Union[GetManyResponse, List[Row]]:
        rows = self.hydrate(await self._fetch(query), query)

        if decide_pagination(parsed, options.query):
            count_sql, count_args = query.build_count(self._count_columns(query))
            total = await self.storage.fetch_value(count_sql, count_args, query.cache_ms) or 0
            limit = query.limit_count or total
            return create_page_info(rows, total, limit, query.offset_count or 0)

        return rows

    async def get_one_or_fail(
        self, req: CrudRequest, shallow: bool = False, with_deleted: bool = False
    ) -> Row:
        parsed, options = req.parsed, req.options
        if shallow:
            query = SelectQuery(self.entity.sql_table(), self.alias, self.dialect)
            for column in self.entity_columns:
                query.add_select(
                    query.column(self.alias, self.entity_columns_hash[column]),
                    f"{self.alias}{ALIAS_SEPARATOR}{column}",
                )
            self.set_soft_delete_filter(query, with_deleted)
            self.create_compiler(options).compile(parsed.search, query)
        else:
            query = self.create_builder(parsed, options, many=False, with_deleted=with_deleted)

        rows = self.hydrate(await self._fetch(query), query)
        if not rows:
            raise NotFoundError(f"{self.alias} not found")
        return rows[0]

    def hydrate(self, rows: List[Row], query: SelectQuery) -> List[Row]:
        """
        Fold flat ``alias__column`` rows into nested entities.

        To-one relations become nested dicts (``None`` when nothing matched),
        to-many relations lists de-duplicated by primary key.
        """
        joined = [
            relation
            for relation in (self.relations.get(join.alias) for join in query.joins)
            if relation is not None
        ]

        entities: Dict[Any, Row] = {}
        for row in rows:
            main = self._extract(row, self.alias)
            key = self._identity(main, self.entity_primary_columns) or id(row)
            entity = entities.setdefault(key, main)
            nodes: Dict[str, Optional[Row]] = {self.alias: entity}

            for relation in joined:
                parent = nodes.get(relation.parent_alias)
                alias = relation.join_alias
                if parent is None:
                    nodes[alias] = None
                    continue

                value = self._extract(row, alias)
                many = relation.relation.many
                identity = self._identity(value, relation.primary_columns)
                if many:
                    items = parent.setdefault(relation.name, [])
                    if identity is None:
                        nodes[alias] = None
                        continue
                    existing = next(
                        (item for item in items if self._identity(item, relation.primary_columns) == identity),
                        None,
                    )
                    if existing is None:
                        items.append(value)
                        existing = value
                    nodes[alias] = existing
                else:
                    if identity is None:
                        parent.setdefault(relation.name, None)
                        nodes[alias] = None
                        continue
                    if parent.get(relation.name) is None:
                        parent[relation.name] = value
                    nodes[alias] = parent[relation.name]

        return list(entities.values())

    def to_row(self, entity: Dict[str, Any]) -> Row:
        """Entity dict (property paths, possibly nested) to database columns."""
        row: Row = {}
        for column in self.entity.columns:
            try:
                value = _get_path(entity, column.property_path)
            except KeyError:
                continue
            row[column.database_name] = coerce_value(column.property_path, column.type, value, column.is_array)
        if not row:
            raise EmptyPayloadError("Empty data. Nothing to save.")
        return row

    def to_entity(self, row: Row) -> Row:
        """Database row to an entity dict keyed by (nested) property paths."""
        entity: Row = {}
        for column in self.entity.columns:
            if column.database_name in row:
                _set_path(entity, column.property_path, row[column.database_name])
        return entity

    def primary_key(self, entity: Row) -> Row:
        return {
            self.entity_columns_hash[column]: _get_path(entity, column)
            for column in self.entity_primary_columns
        }

    async def _fetch(self, query: SelectQuery) -> List[Row]:
        sql, args = query.build()
        self.logger.debug("Compiled query: %s", sql)
        return await self.storage.fetch(sql, args, query.cache_ms)

    async def _refetch(self, req: CrudRequest, saved: Row) -> Row:
        primary = req.options.primary_params() or self.entity_primary_columns
        try:
            search = {field: _get_path(saved, field) for field in primary}
        except KeyError:
            return saved
        if not search or any(value is None for value in search.values()):
            return saved

        parsed = req.parsed.model_copy(update={"search": LeafCondition(fields=search)})
        return await self.get_one_or_fail(req.model_copy(update={"parsed": parsed}))

    def _without_cache(self, req: CrudRequest) -> CrudRequest:
        options = req.options.model_copy(
            update={"query": req.options.query.model_copy(update={"cache": False})}
        )
        return req.model_copy(update={"options": options})

    def _count_columns(self, query: SelectQuery) -> List[ColumnElement]:
        return [query.column(self.alias, self.entity_columns_hash[c]) for c in self.entity_primary_columns]

    @staticmethod
    def _extract(row: Row, alias: str) -> Row:
        prefix = f"{alias}{ALIAS_SEPARATOR}"
        value: Row = {}
        for key, item in row.items():
            if key.startswith(prefix):
                _set_path(value, key[len(prefix):], item)
        return value

    @staticmethod
    def _identity(value: Row, primary_columns: List[str]):
        if not primary_columns:
            return None
        try:
            identity = tuple(_get_path(value, column) for column in primary_columns)
        except KeyError:
            return None
        if all(part is None for part in identity):
            return None
        return identity

