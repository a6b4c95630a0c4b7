"""
Parser for the query-string request language.

Turns the flat, already URL-decoded query parameters of a request into a
``ParsedRequest``::

    ?filter=age||$gt||30&or=name||$starts||Jo&sort=id,DESC&limit=10&page=2
    ?s={"$or":[{"age":{"$gt":30}},{"name":{"$starts":"Jo"}}]}
    ?join=company||name,domain||on[0]=company.deleted||$eq||false
    ?extra.audit.reason=import
"""
import json
import math
import re
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Mapping, Optional

from crudhatch.config import QueryParserOptions
from crudhatch.exceptions import QueryParseError
from crudhatch.logging_config import get_logger
from crudhatch.request.conditions import SearchCondition, parse_search_condition
from crudhatch.request.models import (
    ARRAY_OPERATORS,
    EMPTY_VALUE_OPERATORS,
    CustomOperators,
    ParsedRequest,
    QueryFilter,
    QueryJoin,
    QuerySort,
    normalize_operator,
)
from crudhatch.request.query_string import normalize_indexed_params, parse_query_string
from crudhatch.request.validator import (
    has_value,
    validate_condition,
    validate_join,
    validate_numeric,
    validate_param_option,
    validate_sort,
    validate_uuid,
)

logger = get_logger(__name__)

ISO_DATE = re.compile(r"^\d{4}-[01]\d-[0-3]\d$")
ISO_DATETIME = re.compile(
    r"^\d{4}-[01]\d-[0-3]\d[T ][0-2]\d:[0-5]\d(:[0-5]\d(\.\d+)?)?(Z|[+-][0-2]\d(:?[0-5]\d)?)?$"
)


def _full_precision(number: float) -> str:
    """Render a number the way an IEEE double holds it, without exponent."""
    if math.isinf(number) or math.isnan(number):
        return repr(number)
    if number.is_integer():
        return str(int(number))
    return repr(number)


def parse_date(value: str) -> Any:
    """ISO-8601 date -> ``date``, ISO date-time -> ``datetime``, else the input."""
    try:
        if ISO_DATE.match(value):
            return date.fromisoformat(value)
        if ISO_DATETIME.match(value):
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        pass
    return value


def parse_value(value: Any) -> Any:
    """
    Coerce a raw string operand.

    JSON scalars decode (``"30"`` -> ``30``, ``"true"`` -> ``True``); JSON
    objects and arrays are kept as the raw string; numbers that an IEEE double
    cannot hold exactly are kept as the raw string; ISO dates become
    ``date``/``datetime``; anything else stays a string.
    """
    if not isinstance(value, str):
        return value

    try:
        parsed = json.loads(value)
    except ValueError:
        return parse_date(value)

    if isinstance(parsed, (dict, list)):
        return value
    if isinstance(parsed, bool) or parsed is None:
        return parsed
    if isinstance(parsed, (int, float)):
        if _full_precision(float(parsed)) != value:
            return value
        return parsed
    return parsed


def parse_values(values: Any) -> Any:
    if isinstance(values, list):
        return [parse_value(value) for value in values]
    return parse_value(values)


class RequestQueryParser:
    """Converts query-string and path parameters into a ``ParsedRequest``."""

    def __init__(self, options: Optional[QueryParserOptions] = None):
        self.options = options or QueryParserOptions()

        self.fields: List[str] = []
        self.param_filter: List[QueryFilter] = []
        self.auth_persist: Dict[str, Any] = {}
        self.transform_options: Dict[str, Any] = {}
        self.search: Optional[SearchCondition] = None
        self.filter: List[QueryFilter] = []
        self.or_: List[QueryFilter] = []
        self.join: List[QueryJoin] = []
        self.sort: List[QuerySort] = []
        self.limit: Optional[int] = None
        self.offset: Optional[int] = None
        self.page: Optional[int] = None
        self.cache: Optional[int] = None
        self.include_deleted: Optional[int] = None
        self.extra: Optional[Dict[str, Any]] = None

        self._query: Dict[str, Any] = {}
        self._param_names: List[str] = []

    def get_parsed(self) -> ParsedRequest:
        return ParsedRequest(
            fields=self.fields,
            param_filter=self.param_filter,
            auth_persist=self.auth_persist,
            transform_options=self.transform_options,
            search=self.search,
            filter=self.filter,
            or_=self.or_,
            join=self.join,
            sort=self.sort,
            limit=self.limit,
            offset=self.offset,
            page=self.page,
            cache=self.cache,
            include_deleted=self.include_deleted,
            extra=self.extra,
        )

    def parse_query(
        self,
        query: Mapping[str, Any],
        custom_operators: Optional[CustomOperators] = None,
    ) -> "RequestQueryParser":
        """
        Parse the query-string parameters of one request.

        Args:
            query: Decoded query parameters; values are strings or lists of strings
            custom_operators: Custom operators allowed in ``filter``/``or``

        Returns:
            RequestQueryParser: Self for method chaining
        """
        if not isinstance(query, Mapping) or not query:
            return self

        custom_operators = custom_operators or {}
        self._query = normalize_indexed_params(query)
        self._param_names = list(self._query)

        search_names = self._get_param_names("search")
        if search_names:
            self.search = self._parse_search(self._query[search_names[0]])

        if self.search is None:
            self.filter = self._parse_query_param(
                "filter", lambda data: self._condition_parser("filter", custom_operators, data)
            )
            self.or_ = self._parse_query_param(
                "or", lambda data: self._condition_parser("or", custom_operators, data)
            )

        fields = self._parse_query_param("fields", self._fields_parser)
        self.fields = fields[0] if fields else []
        self.join = self._parse_query_param("join", self._join_parser)
        self.sort = self._parse_query_param("sort", self._sort_parser)
        self.limit = self._first(self._parse_query_param("limit", self._numeric_parser("limit")))
        self.offset = self._first(self._parse_query_param("offset", self._numeric_parser("offset")))
        self.page = self._first(self._parse_query_param("page", self._numeric_parser("page")))
        self.cache = self._first(self._parse_query_param("cache", self._numeric_parser("cache")))
        self.include_deleted = self._first(
            self._parse_query_param("include_deleted", self._numeric_parser("includeDeleted"))
        )
        self.extra = self._parse_extra()

        logger.debug(
            "Parsed query: %d filter(s), %d or, %d join(s), search=%s",
            len(self.filter),
            len(self.or_),
            len(self.join),
            self.search is not None,
        )
        return self

    def parse_params(self, params: Mapping[str, Any], options: Mapping[str, Any]) -> "RequestQueryParser":
        """
        Turn route (path) parameters into ``$eq`` filters.

        Args:
            params: Path parameter values by name
            options: ``ParamOption`` descriptors by parameter name

        Returns:
            RequestQueryParser: Self for method chaining
        """
        if isinstance(params, Mapping) and params:
            filters = [self._param_parser(name, params[name], options) for name in params]
            self.param_filter = [f for f in filters if f is not None]
        return self

    def set_auth_persist(self, persist: Optional[Dict[str, Any]] = None) -> None:
        self.auth_persist = persist or {}

    def set_transform_options(self, options: Optional[Dict[str, Any]] = None) -> None:
        self.transform_options = options or {}

    @staticmethod
    def convert_filter_to_search(query_filter: Optional[QueryFilter]) -> Dict[str, Any]:
        """``age||$gt||30`` -> ``{"age": {"$gt": 30}}``."""
        if query_filter is None:
            return {}
        value = True if query_filter.operator in EMPTY_VALUE_OPERATORS else query_filter.value
        return {query_filter.field: {query_filter.operator: value}}

    def _get_param_names(self, logical: str) -> List[str]:
        names = self.options.names(logical)
        return [name for name in self._param_names if name in names]

    def _parse_query_param(self, logical: str, parser: Callable[[str], Any]) -> List[Any]:
        parsed = []
        for name in self._get_param_names(logical):
            value = self._query[name]
            if isinstance(value, str) and value:
                parsed.append(parser(value))
            elif isinstance(value, list):
                parsed.extend(parser(item) for item in value if isinstance(item, str) and item)
        return parsed

    @staticmethod
    def _first(values: List[Any]) -> Any:
        return values[0] if values else None

    def _parse_search(self, data: Any) -> Optional[SearchCondition]:
        if data is None:
            return None
        if isinstance(data, list):
            data = data[0] if data else None
        try:
            raw = json.loads(data)
        except (TypeError, ValueError):
            raise QueryParseError("Invalid search param. JSON expected")
        if not isinstance(raw, dict):
            raise QueryParseError("Invalid search param. JSON expected")
        return parse_search_condition(raw)

    def _condition_parser(self, cond: str, custom_operators: CustomOperators, data: str) -> QueryFilter:
        array_operators = ARRAY_OPERATORS | {
            normalize_operator(name) for name, op in custom_operators.items() if op.is_array
        }
        custom = {normalize_operator(name): op for name, op in custom_operators.items()}

        param = data.split(self.options.delim)
        field = param[0]
        operator = normalize_operator(param[1]) if len(param) > 1 else ""
        value: Any = param[2] if len(param) > 2 else ""

        if operator in array_operators:
            value = value.split(self.options.delim_str)

        value = parse_values(value)

        if operator not in EMPTY_VALUE_OPERATORS and not has_value(value):
            raise QueryParseError(f"Invalid {cond} value")

        condition = QueryFilter(field=field, operator=operator, value=value)
        validate_condition(condition, cond, custom)

        return condition

    def _fields_parser(self, data: str) -> List[str]:
        return [field for field in data.split(self.options.delim_str) if field]

    def _parse_join_conditions(self, conditions: str) -> List[QueryFilter]:
        parsed = parse_query_string(conditions, delimiter=self.options.delim_str)
        on = parsed.get("on", [])
        if isinstance(on, str):
            on = [on]
        return [self._condition_parser("filter", {}, cond) for cond in on]

    def _join_parser(self, data: str) -> QueryJoin:
        param = data.split(self.options.delim)
        field = param[0]
        select = param[1] if len(param) > 1 else ""
        conditions = self.options.delim.join(param[2:])

        join = QueryJoin(
            field=field,
            select=select.split(self.options.delim_str) if select else None,
            on=self._parse_join_conditions(conditions) if conditions else None,
        )
        validate_join(join)

        return join

    def _sort_parser(self, data: str) -> QuerySort:
        param = data.split(self.options.delim_str)
        return validate_sort(param[0], param[1] if len(param) > 1 else None)

    def _numeric_parser(self, name: str) -> Callable[[str], int]:
        def parser(data: str) -> int:
            return validate_numeric(parse_value(data), name)

        return parser

    def _parse_extra(self) -> Optional[Dict[str, Any]]:
        prefixes = [f"{name}." for name in self.options.names("extra")]
        extra: Dict[str, Any] = {}

        for key, value in self._query.items():
            prefix = next((p for p in prefixes if key.startswith(p)), None)
            if prefix is None:
                continue
            path = key[len(prefix):].split(".")
            target = extra
            for part in path[:-1]:
                node = target.get(part)
                if not isinstance(node, dict):
                    node = target[part] = {}
                target = node
            target[path[-1]] = parse_values(value)

        return extra or None

    def _param_parser(self, name: str, value: Any, options: Mapping[str, Any]) -> Optional[QueryFilter]:
        validate_param_option(options, name)
        option = options[name]

        if option.disabled:
            return None

        if option.type == "number":
            value = validate_numeric(parse_value(value), f"param {name}")
        elif option.type == "uuid":
            validate_uuid(value, name)

        return QueryFilter(field=option.field, operator="$eq", value=value)
