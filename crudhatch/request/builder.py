"""
Client-side builder for the query-string request language.

    >>> (RequestQueryBuilder()
    ...     .select(["name", "email"])
    ...     .set_filter(("age", "$gt", 30))
    ...     .sort_by(("id", "DESC"))
    ...     .set_limit(10)
    ...     .query(encode=False))
    'fields=name,email&filter=age||$gt||30&sort=id,DESC&limit=10'
"""
import json
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union
from urllib.parse import urlencode

from crudhatch.config import QueryParserOptions
from crudhatch.exceptions import QueryParseError
from crudhatch.request.conditions import parse_search_condition
from crudhatch.request.models import (
    ARRAY_OPERATORS,
    QueryFilter,
    QueryJoin,
    QuerySort,
    normalize_operator,
)
from crudhatch.request.validator import validate_condition, validate_join, validate_numeric, validate_sort

FilterLike = Union[QueryFilter, Dict[str, Any], Sequence[Any]]
JoinLike = Union[QueryJoin, Dict[str, Any], Sequence[Any], str]
SortLike = Union[QuerySort, Dict[str, Any], Sequence[Any]]


def _format_value(value: Any) -> str:
    if isinstance(value, bool) or value is None:
        return json.dumps(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return str(value)


class RequestQueryBuilder:
    """Fluent builder producing query strings the request parser understands."""

    def __init__(self, options: Optional[QueryParserOptions] = None):
        self.options = options or QueryParserOptions()
        self._params: List[Tuple[str, str]] = []

    def _name(self, logical: str) -> str:
        names = self.options.names(logical)
        if not names:
            raise ValueError(f"No parameter name configured for '{logical}'")
        return names[0]

    def _add(self, logical: str, value: str) -> "RequestQueryBuilder":
        self._params.append((self._name(logical), value))
        return self

    def _filters(self, value: Union[FilterLike, List[FilterLike]]) -> List[QueryFilter]:
        if isinstance(value, (QueryFilter, dict)) or (
            isinstance(value, (list, tuple)) and value and isinstance(value[0], str)
        ):
            value = [value]
        filters = []
        for item in value:
            if isinstance(item, QueryFilter):
                filters.append(item)
            elif isinstance(item, dict):
                filters.append(QueryFilter(**item))
            else:
                field, operator, *rest = item
                filters.append(QueryFilter(field=field, operator=operator, value=rest[0] if rest else None))
        return filters

    def _condition(self, query_filter: QueryFilter, cond: str) -> str:
        operator = normalize_operator(query_filter.operator)
        validate_condition(query_filter.model_copy(update={"operator": operator}), cond)
        value = query_filter.value
        if operator in ARRAY_OPERATORS and isinstance(value, (list, tuple)):
            value = self.options.delim_str.join(_format_value(item) for item in value)
        elif value is None:
            return self.options.delim.join([query_filter.field, operator])
        else:
            value = _format_value(value)
        return self.options.delim.join([query_filter.field, operator, value])

    def select(self, fields: Sequence[str]) -> "RequestQueryBuilder":
        if fields:
            self._add("fields", self.options.delim_str.join(fields))
        return self

    def search(self, condition: Any) -> "RequestQueryBuilder":
        """Set the JSON ``search`` condition (raw object or condition tree)."""
        tree = parse_search_condition(condition)
        return self._add("search", json.dumps(tree.to_raw(), default=_format_value))

    def set_filter(self, filters: Union[FilterLike, List[FilterLike]]) -> "RequestQueryBuilder":
        for query_filter in self._filters(filters):
            self._add("filter", self._condition(query_filter, "filter"))
        return self

    def set_or(self, filters: Union[FilterLike, List[FilterLike]]) -> "RequestQueryBuilder":
        for query_filter in self._filters(filters):
            self._add("or", self._condition(query_filter, "or"))
        return self

    def set_join(self, joins: Union[JoinLike, List[JoinLike]]) -> "RequestQueryBuilder":
        """
        Add joins given as ``QueryJoin``, dicts, ``(field, select)`` tuples or
        plain relation names.
        """
        if isinstance(joins, (QueryJoin, dict, str)) or (
            isinstance(joins, tuple) and joins and isinstance(joins[0], str)
        ):
            joins = [joins]

        for item in joins:
            if isinstance(item, str):
                join = QueryJoin(field=item)
            elif isinstance(item, dict):
                join = QueryJoin(**item)
            elif isinstance(item, QueryJoin):
                join = item
            else:
                join = QueryJoin(field=item[0], select=list(item[1]) if len(item) > 1 and item[1] else None)
            validate_join(join)

            parts = [join.field]
            if join.select or join.on:
                parts.append(self.options.delim_str.join(join.select or []))
            if join.on:
                parts.append(
                    self.options.delim_str.join(
                        f"on[{index}]={self._condition(cond, 'filter')}" for index, cond in enumerate(join.on)
                    )
                )
            self._add("join", self.options.delim.join(parts))
        return self

    def sort_by(self, sorts: Union[SortLike, List[SortLike]]) -> "RequestQueryBuilder":
        if isinstance(sorts, (QuerySort, dict)) or (
            isinstance(sorts, (list, tuple)) and sorts and isinstance(sorts[0], str)
        ):
            sorts = [sorts]
        for item in sorts:
            if isinstance(item, QuerySort):
                sort = item
            elif isinstance(item, dict):
                sort = validate_sort(item.get("field"), item.get("order"))
            else:
                sort = validate_sort(item[0], item[1] if len(item) > 1 else "ASC")
            self._add("sort", self.options.delim_str.join([sort.field, sort.order]))
        return self

    def set_limit(self, limit: int) -> "RequestQueryBuilder":
        return self._add("limit", str(validate_numeric(limit, "limit")))

    def set_offset(self, offset: int) -> "RequestQueryBuilder":
        return self._add("offset", str(validate_numeric(offset, "offset")))

    def set_page(self, page: int) -> "RequestQueryBuilder":
        return self._add("page", str(validate_numeric(page, "page")))

    def reset_cache(self) -> "RequestQueryBuilder":
        return self._add("cache", "0")

    def set_include_deleted(self, include_deleted: int) -> "RequestQueryBuilder":
        return self._add("include_deleted", str(validate_numeric(include_deleted, "includeDeleted")))

    def set_extra(self, extra: Dict[str, Any]) -> "RequestQueryBuilder":
        """Add nested ``extra`` values as ``extra.a.b=value`` parameters."""
        if not isinstance(extra, dict):
            raise QueryParseError("Invalid extra. Object expected")

        def flatten(prefix: str, value: Any) -> None:
            if isinstance(value, dict):
                for key, item in value.items():
                    flatten(f"{prefix}.{key}", item)
            else:
                self._params.append((prefix, _format_value(value)))

        flatten(self._name("extra"), extra)
        return self

    def query(self, encode: bool = True) -> str:
        if encode:
            return urlencode(self._params, safe="$,[]")
        return "&".join(f"{key}={value}" for key, value in self._params)
