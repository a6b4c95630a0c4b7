"""
Validation helpers shared by the request parser and the request query builder.
"""
import uuid
from typing import Any, Mapping, Optional

from crudhatch.exceptions import QueryParseError
from crudhatch.request.models import (
    COMPARISON_OPERATORS,
    CustomOperators,
    QueryFilter,
    QueryJoin,
    QuerySort,
)

SORT_ORDERS = ("ASC", "DESC")


def validate_condition(
    condition: QueryFilter, cond: str, custom_operators: Optional[CustomOperators] = None
) -> None:
    if not isinstance(condition.field, str) or not condition.field:
        raise QueryParseError(f"Invalid field type in {cond} condition. String expected")

    custom_operators = custom_operators or {}
    if condition.operator not in COMPARISON_OPERATORS and condition.operator not in custom_operators:
        expected = ",".join(sorted(COMPARISON_OPERATORS | set(custom_operators)))
        raise QueryParseError(f"Invalid comparison operator. {expected} expected")


def validate_join(join: QueryJoin) -> None:
    if not join.field:
        raise QueryParseError("Invalid join field. String expected")
    if join.select is not None and not all(isinstance(col, str) and col for col in join.select):
        raise QueryParseError("Invalid join select. Array of strings expected")


def validate_sort(field: str, order: Any) -> QuerySort:
    if not field:
        raise QueryParseError("Invalid sort field. String expected")
    normalized = order.upper() if isinstance(order, str) else order
    if normalized not in SORT_ORDERS:
        raise QueryParseError(f"Invalid sort order. {','.join(SORT_ORDERS)} expected")
    return QuerySort(field=field, order=normalized)


def validate_numeric(value: Any, name: str) -> int:
    """Accept non-negative integers only (booleans are not numbers here)."""
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise QueryParseError(f"Invalid {name}. Number expected")
    return value


def validate_param_option(options: Optional[Mapping[str, Any]], name: str) -> None:
    if not isinstance(options, Mapping):
        raise QueryParseError("Invalid param option in Crud")
    option = options.get(name)
    if option is None or not getattr(option, "field", None):
        raise QueryParseError(f"Invalid param {name}. Invalid crud options")


def validate_uuid(value: Any, name: str) -> str:
    try:
        uuid.UUID(str(value))
    except ValueError:
        raise QueryParseError(f"Invalid param {name}. UUID string expected")
    return value


def has_value(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return value != ""
    if isinstance(value, list):
        return any(has_value(item) for item in value)
    return True
