"""
Operator-to-SQL table.

Each operator turns a column of the query, a bound parameter named after the
client field and an operand into a boolean SQLAlchemy expression, e.g.
``$cont`` on ``"user"."name"`` gives ``"user"."name" LIKE :p_name_...`` bound
to ``%jo%``. Operands are coerced to the column type first.
"""
from typing import Any, Dict, Optional

from sqlalchemy import Text, cast, func, type_coerce
from sqlalchemy.dialects.postgresql import ARRAY
from sqlalchemy.sql import operators as sql_operators
from sqlalchemy.sql.expression import ColumnElement

from crudhatch.exceptions import InvalidConditionError
from crudhatch.request.models import ComparisonOperator, CustomOperator, CustomOperators, normalize_operator
from crudhatch.service.metadata import ColumnMetadata
from crudhatch.service.pgtypes import coerce_text, coerce_value, get_element_type, is_text_type
from crudhatch.sql.builder import SelectQuery, text_condition

op = ComparisonOperator

COMPARISONS = {
    op.EQ.value: sql_operators.eq,
    op.NE.value: sql_operators.ne,
    op.GT.value: sql_operators.gt,
    op.LT.value: sql_operators.lt,
    op.GTE.value: sql_operators.ge,
    op.LTE.value: sql_operators.le,
}

# operator -> (negated, LIKE pattern)
LIKE_PATTERNS = {
    op.STARTS.value: (False, "{}%"),
    op.ENDS.value: (False, "%{}"),
    op.CONT.value: (False, "%{}%"),
    op.EXCL.value: (True, "%{}%"),
}

LOWER_LIKE_PATTERNS = {
    op.STARTS_LOWER.value: (False, "{}%"),
    op.ENDS_LOWER.value: (False, "%{}"),
    op.CONT_LOWER.value: (False, "%{}%"),
    op.EXCL_LOWER.value: (True, "%{}%"),
}


class OperatorRegistry:
    """Custom operators by ``$``-prefixed name."""

    def __init__(self, custom: Optional[CustomOperators] = None):
        self._operators: Dict[str, CustomOperator] = {}
        for name, operator in (custom or {}).items():
            self.register(name, operator)

    def register(self, name: str, operator: CustomOperator) -> None:
        self._operators[normalize_operator(name)] = operator

    def get(self, name: str) -> Optional[CustomOperator]:
        return self._operators.get(normalize_operator(name))

    def matches(self, name: str) -> bool:
        return normalize_operator(name) in self._operators

    def as_dict(self) -> CustomOperators:
        return dict(self._operators)

    def __len__(self) -> int:
        return len(self._operators)


def check_array(field: str, value: Any, length: Optional[int] = None) -> None:
    """Array operands must be non-empty lists (of exactly ``length`` items if given)."""
    if not isinstance(value, (list, tuple)) or not value or (length is not None and len(value) != length):
        raise InvalidConditionError(f"Invalid column '{field}' value")


def _coerce(field: str, column: Optional[ColumnMetadata], value: Any) -> Any:
    if column is None:
        return value
    return coerce_value(field, column.type, value)


def _text_value(field: str, value: Any) -> str:
    if isinstance(value, (dict, list, tuple)):
        raise InvalidConditionError(f"Invalid column '{field}' value")
    return coerce_text(value)


def _as_text(expression: ColumnElement, column: Optional[ColumnMetadata]) -> ColumnElement:
    if column is None or (is_text_type(column.type) and not column.is_array):
        return expression
    return cast(expression, Text)


def map_operator(
    query: SelectQuery,
    field: str,
    expression: ColumnElement,
    operator: str,
    value: Any,
    column: Optional[ColumnMetadata] = None,
    custom_operators: Optional[OperatorRegistry] = None,
) -> ColumnElement:
    """
    Compile one ``column operator value`` condition.

    Args:
        query: Query the condition is for; names its parameters
        field: Field as the client wrote it, for error messages and parameter names
        expression: Resolved column of ``query``
        operator: ``$``-prefixed operator
        value: Operand
        column: Column metadata; its type drives operand coercion and array casts
        custom_operators: Registered custom operators

    Returns:
        ColumnElement: Boolean SQL expression with bound parameters
    """
    operator = normalize_operator(operator)

    def bind(operand: Any, **kwargs) -> ColumnElement:
        return query.bind(field, operand, **kwargs)

    if operator in COMPARISONS:
        operand = bind(_coerce(field, column, value), type_=expression.type)
        return expression.operate(COMPARISONS[operator], operand)

    if operator in LIKE_PATTERNS:
        negated, pattern = LIKE_PATTERNS[operator]
        target = _as_text(expression, column)
        operand = bind(pattern.format(_text_value(field, value)), type_=Text())
        return target.not_like(operand) if negated else target.like(operand)

    if operator in (op.IN.value, op.NOT_IN.value):
        check_array(field, value)
        operand = bind([_coerce(field, column, item) for item in value], type_=expression.type, expanding=True)
        return expression.not_in(operand) if operator == op.NOT_IN.value else expression.in_(operand)

    if operator == op.IS_NULL.value:
        return expression.is_(None)

    if operator == op.NOT_NULL.value:
        return expression.is_not(None)

    if operator == op.BETWEEN.value:
        check_array(field, value, length=2)
        low, high = (bind(_coerce(field, column, item), type_=expression.type) for item in value)
        return expression.between(low, high)

    lowered = func.lower(_as_text(expression, column), type_=Text())

    if operator in (op.EQ_LOWER.value, op.NE_LOWER.value):
        operand = bind(_text_value(field, value).lower(), type_=Text())
        return lowered != operand if operator == op.NE_LOWER.value else lowered == operand

    if operator in LOWER_LIKE_PATTERNS:
        negated, pattern = LOWER_LIKE_PATTERNS[operator]
        operand = bind(pattern.format(_text_value(field, value).lower()), type_=Text())
        return lowered.not_ilike(operand) if negated else lowered.ilike(operand)

    if operator in (op.IN_LOWER.value, op.NOT_IN_LOWER.value):
        check_array(field, value)
        operand = bind([_text_value(field, item).lower() for item in value], type_=Text(), expanding=True)
        return lowered.not_in(operand) if operator == op.NOT_IN_LOWER.value else lowered.in_(operand)

    if operator in (op.CONT_ARR.value, op.INTERSECTS_ARR.value):
        if not query.dialect.supports_arrays:
            raise InvalidConditionError(f"Operator '{operator}' is not supported by {query.dialect.name}")
        check_array(field, value)
        element_type = column.type if column is not None else "text"
        array_type = ARRAY(get_element_type(element_type))
        operand = bind([coerce_value(field, element_type, item) for item in value], type_=array_type)
        target = expression if isinstance(expression.type, ARRAY) else type_coerce(expression, array_type)
        return target.contains(operand) if operator == op.CONT_ARR.value else target.overlap(operand)

    custom = custom_operators.get(operator) if custom_operators is not None else None
    if custom is None:
        raise InvalidConditionError(f"Invalid comparison operator '{operator}'")

    if custom.is_array:
        check_array(field, value)
    try:
        sql, params = custom.compile(query.dialect.render(expression), query.parameter_name(field), value)
        return text_condition(sql, params)
    except Exception as error:
        raise InvalidConditionError(f"Invalid custom operator '{field}' query") from error
