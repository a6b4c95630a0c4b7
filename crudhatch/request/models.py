"""
Models for the query-string request language.
"""
from enum import Enum
from typing import Any, Callable, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from crudhatch.request.conditions import SearchCondition


class ComparisonOperator(str, Enum):
    """Supported comparison operators for filters and search conditions."""

    EQ = "$eq"
    NE = "$ne"
    GT = "$gt"
    LT = "$lt"
    GTE = "$gte"
    LTE = "$lte"
    STARTS = "$starts"
    ENDS = "$ends"
    CONT = "$cont"
    EXCL = "$excl"
    IN = "$in"
    NOT_IN = "$notin"
    IS_NULL = "$isnull"
    NOT_NULL = "$notnull"
    BETWEEN = "$between"
    EQ_LOWER = "$eqL"
    NE_LOWER = "$neL"
    STARTS_LOWER = "$startsL"
    ENDS_LOWER = "$endsL"
    CONT_LOWER = "$contL"
    EXCL_LOWER = "$exclL"
    IN_LOWER = "$inL"
    NOT_IN_LOWER = "$notinL"
    CONT_ARR = "$contArr"
    INTERSECTS_ARR = "$intersectsArr"


COMPARISON_OPERATORS = frozenset(op.value for op in ComparisonOperator)

# Operators whose value is a list of operands.
ARRAY_OPERATORS = frozenset(
    {
        ComparisonOperator.IN.value,
        ComparisonOperator.NOT_IN.value,
        ComparisonOperator.BETWEEN.value,
        ComparisonOperator.IN_LOWER.value,
        ComparisonOperator.NOT_IN_LOWER.value,
        ComparisonOperator.CONT_ARR.value,
        ComparisonOperator.INTERSECTS_ARR.value,
    }
)

# Operators that take no operand.
EMPTY_VALUE_OPERATORS = frozenset(
    {ComparisonOperator.IS_NULL.value, ComparisonOperator.NOT_NULL.value}
)


def normalize_operator(operator: str) -> str:
    """Give an operator its ``$`` prefix (``eq`` -> ``$eq``)."""
    if operator and not operator.startswith("$"):
        return f"${operator}"
    return operator


class CustomOperator:
    """
    A pluggable comparison operator.

    ``query`` receives the quoted column expression and the bound parameter name
    and returns the SQL fragment, e.g. ``lambda field, param: f"{field} ~ :{param}"``.
    ``params`` is either a static mapping of parameters, a callable
    ``(value, param) -> dict`` or ``None`` to bind the filter value under ``param``.
    Write ``:...param`` to spread a list parameter, e.g. ``f"{field} IN (:...{param})"``.
    """

    def __init__(
        self,
        query: Callable[[str, str], str],
        params: Optional[Any] = None,
        is_array: bool = False,
    ):
        self.query = query
        self.params = params
        self.is_array = is_array

    def compile(self, field: str, param: str, value: Any) -> tuple[str, Dict[str, Any]]:
        sql = self.query(field, param)
        if callable(self.params):
            params = self.params(value, param)
        elif self.params is not None:
            params = dict(self.params)
        else:
            params = {param: value}
        return sql, params

    def __repr__(self):
        return f"CustomOperator(is_array={self.is_array})"


CustomOperators = Dict[str, CustomOperator]


class QueryFilter(BaseModel):
    """A single ``field operator value`` condition."""

    model_config = ConfigDict(frozen=True)

    field: str = Field(..., description="Field name, dotted for joined relations")
    operator: str = Field(..., description="Comparison operator, `$` prefixed")
    value: Any = Field(None, description="Operand")


class QueryJoin(BaseModel):
    """A relation to join, with optional projection and join-time conditions."""

    field: str
    select: Optional[List[str]] = None
    on: Optional[List[QueryFilter]] = None


class QuerySort(BaseModel):
    field: str
    order: Literal["ASC", "DESC"] = "ASC"


class ParsedRequest(BaseModel):
    """Everything the parser extracted from one inbound request."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    fields: List[str] = []
    param_filter: List[QueryFilter] = []
    auth_persist: Dict[str, Any] = {}
    transform_options: Dict[str, Any] = {}
    search: Optional[SearchCondition] = None
    filter: List[QueryFilter] = []
    or_: List[QueryFilter] = []
    join: List[QueryJoin] = []
    sort: List[QuerySort] = []
    limit: Optional[int] = None
    offset: Optional[int] = None
    page: Optional[int] = None
    cache: Optional[int] = None
    include_deleted: Optional[int] = None
    extra: Optional[Dict[str, Any]] = None
