"""
SQL statements on SQLAlchemy Core.

``SelectQuery`` collects the pieces of a read (select list, joins, WHERE
conditions, order, paging and a cache directive) the way a query builder does
and lowers them to a Core ``select()``; ``InsertQuery``, ``UpdateQuery`` and
``DeleteQuery`` do the same for writes. Every statement compiles through a
``Dialect`` into SQL text plus positional arguments:

    users = table_clause("users", {"id": Integer(), "age": Integer()})
    query = SelectQuery(users, "user")
    query.and_where(query.column("user", "age") > query.bind("age", 30))
    sql, args = query.build()   # ... WHERE "user"."age" > $1::INTEGER, [30]

Identifiers are always quoted so the emitted SQL does not depend on
reserved-word lists.
"""
import re
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from sqlalchemy import (
    and_,
    bindparam,
    column,
    delete,
    func,
    insert,
    literal_column,
    not_,
    or_,
    select,
    table,
    text,
    update,
)
from sqlalchemy.sql import quoted_name
from sqlalchemy.sql.elements import Grouping
from sqlalchemy.sql.expression import ColumnElement, FromClause, TableClause
from sqlalchemy.types import TypeEngine

from .dialects import Dialect, get_dialect

UNSAFE_PARAMETER_CHARS = re.compile(r"[^A-Za-z0-9_]")
SPREAD_PARAMETER = re.compile(r"(?<![:\w]):\.\.\.(\w+)")

DEFAULT = literal_column("DEFAULT")


def identifier(name: str) -> quoted_name:
    return quoted_name(name, True)


def table_clause(name: str, columns: Dict[str, TypeEngine], schema: Optional[str] = None) -> TableClause:
    """
    Lightweight table with typed columns.

    Args:
        name: Table name
        columns: Column types by column name, in table order
        schema: Schema holding the table

    Returns:
        TableClause: Table usable in any statement of this module
    """
    return table(
        identifier(name),
        *[column(identifier(key), type_) for key, type_ in columns.items()],
        schema=identifier(schema) if schema else None,
    )


def group(
    conditions: Iterable[Optional[ColumnElement]], conjunction: str = "AND", negate: bool = False
) -> Optional[ColumnElement]:
    """
    Bracket ``conditions`` with ``conjunction``; ``None`` items are skipped.

    A single condition is returned as is, no conditions give ``None``.
    """
    items = [condition for condition in conditions if condition is not None]
    if not items:
        return None
    clause = items[0] if len(items) == 1 else (or_ if conjunction == "OR" else and_)(*items)
    return not_(clause) if negate else clause


class QueryParameters:
    """Bound parameter names of one statement."""

    def __init__(self):
        self.names: Set[str] = set()
        self._counter = 0

    def unique_name(self, field: str) -> str:
        """
        Parameter name for ``field``: ``p_`` and the field with anything but
        ASCII letters, digits and ``_`` replaced by ``_``, followed by a
        high-resolution timestamp. Unique within this statement.
        """
        base = f"p_{UNSAFE_PARAMETER_CHARS.sub('_', field)}_{time.perf_counter_ns()}"
        name = base
        while name in self.names:
            self._counter += 1
            name = f"{base}_{self._counter}"
        self.names.add(name)
        return name

    def __contains__(self, name: str) -> bool:
        return name in self.names

    def __len__(self) -> int:
        return len(self.names)


@dataclass
class JoinClause:
    alias: str
    target: FromClause
    on: ColumnElement
    outer: bool = False

    @property
    def kind(self) -> str:
        return "LEFT" if self.outer else "INNER"


class SelectQuery:
    """
    SELECT statement builder.

    Args:
        source: Main table
        alias: Alias of the main table; prefix of its columns in conditions
        dialect: Dialect name or instance
    """

    def __init__(self, source: TableClause, alias: str, dialect="postgres"):
        self.dialect: Dialect = get_dialect(dialect)
        self.alias = alias
        self.main = source.alias(identifier(alias))
        self.parameters = QueryParameters()
        self.cache_ms: Optional[int] = None
        self.limit_count: Optional[int] = None
        self.offset_count: Optional[int] = None
        self._sources: Dict[str, FromClause] = {alias: self.main}
        self._selected: List[Tuple[ColumnElement, str]] = []
        self._joins: List[JoinClause] = []
        self._where: List[ColumnElement] = []
        self._order: List[ColumnElement] = []

    def source(self, alias: str) -> FromClause:
        try:
            return self._sources[alias]
        except KeyError:
            raise ValueError(f"Unknown alias '{alias}'")

    def add_source(self, source: TableClause, alias: str) -> FromClause:
        """Register ``source`` under ``alias`` so its columns resolve before it is joined."""
        if alias not in self._sources:
            self._sources[alias] = source.alias(identifier(alias))
        return self._sources[alias]

    def column(self, alias: str, name: str) -> ColumnElement:
        """Column ``name`` of the table aliased ``alias``."""
        try:
            return self.source(alias).c[name]
        except KeyError:
            raise ValueError(f"Unknown column '{alias}.{name}'")

    def bind(self, field: str, value: Any, **kwargs) -> ColumnElement:
        """Bound parameter named after ``field``; ``kwargs`` go to ``bindparam``."""
        return bindparam(self.parameter_name(field), value, **kwargs)

    def add_select(self, expression: ColumnElement, alias: str) -> "SelectQuery":
        self._selected.append((expression, alias))
        return self

    @property
    def selected(self) -> List[str]:
        return [alias for _, alias in self._selected]

    def join(self, alias: str, on: ColumnElement, outer: bool = False) -> "SelectQuery":
        """
        Join the source registered as ``alias``.

        Args:
            alias: Alias given to ``add_source``
            on: Join condition
            outer: LEFT join instead of INNER

        Returns:
            SelectQuery: Self for method chaining
        """
        if self.has_join(alias):
            raise ValueError(f"Alias '{alias}' is already joined")
        self._joins.append(JoinClause(alias, self.source(alias), on, outer))
        return self

    def has_join(self, alias: str) -> bool:
        return any(join.alias == alias for join in self._joins)

    @property
    def joins(self) -> List[JoinClause]:
        return list(self._joins)

    def and_where(self, condition: Optional[ColumnElement]) -> "SelectQuery":
        if condition is not None:
            self._where.append(condition)
        return self

    @property
    def where_clause(self) -> Optional[ColumnElement]:
        return group(self._where)

    def parameter_name(self, field: str) -> str:
        return self.parameters.unique_name(field)

    def order_by(self, expression: ColumnElement, direction: str = "ASC") -> "SelectQuery":
        direction = direction.upper()
        if direction not in ("ASC", "DESC"):
            raise ValueError(f"Invalid sort order '{direction}'")
        self._order.append(expression.desc() if direction == "DESC" else expression.asc())
        return self

    def limit(self, count: Optional[int]) -> "SelectQuery":
        self.limit_count = int(count) if count is not None else None
        return self

    def offset(self, count: Optional[int]) -> "SelectQuery":
        self.offset_count = int(count) if count else None
        return self

    def cache(self, milliseconds: Optional[int]) -> "SelectQuery":
        self.cache_ms = milliseconds or None
        return self

    def from_clause(self) -> FromClause:
        from_ = self.main
        for join in self._joins:
            from_ = from_.join(join.target, join.on, isouter=join.outer)
        return from_

    def statement(self):
        columns = [expression.label(alias) for expression, alias in self._selected] or [self.main]
        stmt = select(*columns).select_from(self.from_clause())
        where = self.where_clause
        if where is not None:
            stmt = stmt.where(where)
        if self._order:
            stmt = stmt.order_by(*self._order)
        if self.limit_count is not None:
            stmt = stmt.limit(literal_column(str(self.limit_count)))
        if self.offset_count is not None:
            stmt = stmt.offset(literal_column(str(self.offset_count)))
        return stmt

    def count_statement(self, distinct_on: Sequence[ColumnElement] = ()):
        """
        COUNT of the rows matched by the joins and conditions, ignoring order
        and paging. With ``distinct_on`` the distinct combinations of those
        columns are counted, so to-many joins do not inflate the total.
        """
        where = self.where_clause
        if not distinct_on:
            stmt = select(func.count().label("count")).select_from(self.from_clause())
            return stmt.where(where) if where is not None else stmt

        inner = select(*distinct_on).distinct().select_from(self.from_clause())
        if where is not None:
            inner = inner.where(where)
        return select(func.count().label("count")).select_from(inner.subquery("counted"))

    def build(self) -> Tuple[str, List[Any]]:
        return self.dialect.compile(self.statement())

    def build_count(self, distinct_on: Sequence[ColumnElement] = ()) -> Tuple[str, List[Any]]:
        return self.dialect.compile(self.count_statement(distinct_on))


class _WriteQuery:
    def __init__(self, target: TableClause, dialect="postgres"):
        self.dialect: Dialect = get_dialect(dialect)
        self.table = target
        self._returning = False
        self._where: List[ColumnElement] = []

    def returning(self) -> "_WriteQuery":
        """Return every column of the written rows where the dialect supports it."""
        self._returning = self.dialect.supports_returning
        return self

    def where_equals(self, values: Dict[str, Any]) -> "_WriteQuery":
        for name, value in values.items():
            target = self.table.c[name]
            self._where.append(target.is_(None) if value is None else target == value)
        return self

    def _finish(self, stmt):
        where = group(self._where)
        if where is not None:
            stmt = stmt.where(where)
        if self._returning:
            stmt = stmt.returning(*self.table.c)
        return stmt

    def build(self) -> Tuple[str, List[Any]]:
        return self.dialect.compile(self.statement())

    def statement(self):
        raise NotImplementedError


class InsertQuery(_WriteQuery):
    """INSERT of one or more rows; columns missing from a row get DEFAULT."""

    def __init__(self, target: TableClause, dialect="postgres"):
        super().__init__(target, dialect)
        self._rows: List[Dict[str, Any]] = []

    def values(self, *rows: Dict[str, Any]) -> "InsertQuery":
        self._rows.extend(rows)
        return self

    def statement(self):
        if not self._rows:
            raise ValueError("Nothing to insert")
        names = list(dict.fromkeys(name for row in self._rows for name in row))
        if len(self._rows) == 1:
            stmt = insert(self.table).values(self._rows[0])
        else:
            stmt = insert(self.table).values(
                [{name: row.get(name, DEFAULT) for name in names} for row in self._rows]
            )
        if self._returning:
            stmt = stmt.returning(*self.table.c)
        return stmt


class UpdateQuery(_WriteQuery):
    """UPDATE of the rows matching ``where_equals``."""

    def __init__(self, target: TableClause, dialect="postgres"):
        super().__init__(target, dialect)
        self._values: Dict[str, Any] = {}

    def set(self, name: str, value: Any) -> "UpdateQuery":
        """Set ``name`` to a value or a SQL expression such as ``func.current_timestamp()``."""
        self._values[name] = value
        return self

    def set_dict(self, values: Dict[str, Any]) -> "UpdateQuery":
        for name, value in values.items():
            self.set(name, value)
        return self

    def statement(self):
        if not self._values:
            raise ValueError("Nothing to update")
        if not self._where:
            raise ValueError("UPDATE without a condition")
        return self._finish(update(self.table).values(self._values))


class DeleteQuery(_WriteQuery):
    """DELETE of the rows matching ``where_equals``."""

    def statement(self):
        if not self._where:
            raise ValueError("DELETE without a condition")
        return self._finish(delete(self.table))


def text_condition(sql: str, params: Dict[str, Any]) -> ColumnElement:
    """
    Boolean condition from SQL text with ``:name`` parameters; ``:...name``
    spreads a list parameter into ``a, b, c``.
    """
    spread = set(SPREAD_PARAMETER.findall(sql))
    clause = text(SPREAD_PARAMETER.sub(r":\1", sql)).bindparams(
        *[bindparam(name, value, expanding=name in spread) for name, value in params.items()]
    )
    return Grouping(clause)
