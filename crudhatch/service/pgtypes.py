"""
PostgreSQL column types: SQLAlchemy types for statements and coercion of
client operands to the Python type the driver binds for a column.

Operands arrive as JSON-decoded query-string values, so ``123`` for a text
column or ``"2020-01-01"`` (already a ``date``) for a timestamp column must be
converted before they reach the driver.
"""
import datetime
import uuid
from decimal import Decimal
from typing import Any, Callable, Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    Date,
    DateTime,
    Float,
    Integer,
    Numeric,
    SmallInteger,
    String,
    Text,
    Time,
    Uuid,
)
from sqlalchemy.dialects.postgresql import ARRAY
from sqlalchemy.types import NullType, TypeEngine

from crudhatch.exceptions import InvalidConditionError

__all__ = (
    "get_sql_type",
    "get_element_type",
    "is_text_type",
    "coerce_value",
    "coerce_text",
)

TEXT_TYPES = {"text", "varchar", "bpchar", "char", "name", "citext"}


def is_text_type(typ: str) -> bool:
    return typ in TEXT_TYPES


def get_element_type(typ: str) -> TypeEngine:
    """SQLAlchemy type for a PostgreSQL type name (``udt_name`` without the array prefix)."""
    match typ:
        case "varchar":
            # element type of array operands must match the column
            return String()
        case "text" | "bpchar" | "char" | "name" | "citext":
            return Text()
        case "int2" | "smallint":
            return SmallInteger()
        case "int4" | "int" | "integer" | "serial":
            return Integer()
        case "int8" | "bigint" | "bigserial":
            return BigInteger()
        case "float4" | "float8" | "real" | "double precision":
            return Float()
        case "numeric" | "decimal":
            return Numeric()
        case "bool" | "boolean":
            return Boolean()
        case "date":
            return Date()
        case "timestamp":
            return DateTime()
        case "timestamptz":
            return DateTime(timezone=True)
        case "time" | "timetz":
            return Time()
        case "uuid":
            return Uuid()
        case _:
            # bound untyped, the server infers it
            return NullType()


def get_sql_type(typ: str, is_array: bool = False) -> TypeEngine:
    element = get_element_type(typ)
    if is_array:
        return ARRAY(element)
    return element


# --- Coercion ---


def coerce_text(value: Any) -> str:
    """Text form of an operand, as the client most likely wrote it."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (datetime.date, datetime.time)):
        return value.isoformat()
    return str(value)


def _to_int(value: Any) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, float):
        if not value.is_integer():
            raise ValueError(value)
        return int(value)
    if isinstance(value, (int, str, Decimal)):
        return int(value)
    raise TypeError(value)


def _to_float(value: Any) -> float:
    if isinstance(value, (int, float, str, Decimal)) and not isinstance(value, bool):
        return float(value)
    raise TypeError(value)


def _to_decimal(value: Any) -> Decimal:
    if isinstance(value, bool):
        raise TypeError(value)
    if isinstance(value, float):
        return Decimal(repr(value))
    if isinstance(value, (int, str, Decimal)):
        return Decimal(value)
    raise TypeError(value)


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str) and value.lower() in ("true", "false", "1", "0"):
        return value.lower() in ("true", "1")
    raise ValueError(value)


def _parse_datetime(value: str) -> datetime.datetime:
    return datetime.datetime.fromisoformat(value.replace("Z", "+00:00"))


def _to_date(value: Any) -> datetime.date:
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    if isinstance(value, str):
        return _parse_datetime(value).date() if "T" in value else datetime.date.fromisoformat(value)
    raise TypeError(value)


def _to_datetime(value: Any) -> datetime.datetime:
    if isinstance(value, datetime.datetime):
        return value
    if isinstance(value, datetime.date):
        return datetime.datetime.combine(value, datetime.time())
    if isinstance(value, str):
        return _parse_datetime(value)
    raise TypeError(value)


def _to_timestamp(value: Any) -> datetime.datetime:
    result = _to_datetime(value)
    if result.tzinfo is not None:
        result = result.astimezone(datetime.timezone.utc).replace(tzinfo=None)
    return result


def _to_timestamptz(value: Any) -> datetime.datetime:
    result = _to_datetime(value)
    if result.tzinfo is None:
        result = result.replace(tzinfo=datetime.timezone.utc)
    return result


def _to_time(value: Any) -> datetime.time:
    if isinstance(value, datetime.time):
        return value
    if isinstance(value, str):
        return datetime.time.fromisoformat(value)
    raise TypeError(value)


def _to_uuid(value: Any) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    if isinstance(value, str):
        return uuid.UUID(value)
    raise TypeError(value)


def get_coercer(typ: str) -> Optional[Callable[[Any], Any]]:
    """Converter for operands of a PostgreSQL type, ``None`` to bind as-is."""
    match typ:
        case "text" | "varchar" | "bpchar" | "char" | "name" | "citext":
            return coerce_text
        case "int2" | "smallint" | "int4" | "int" | "integer" | "serial" | "int8" | "bigint" | "bigserial":
            return _to_int
        case "float4" | "float8" | "real" | "double precision":
            return _to_float
        case "numeric" | "decimal":
            return _to_decimal
        case "bool" | "boolean":
            return _to_bool
        case "date":
            return _to_date
        case "timestamp":
            return _to_timestamp
        case "timestamptz":
            return _to_timestamptz
        case "time" | "timetz":
            return _to_time
        case "uuid":
            return _to_uuid
        case _:
            return None


def coerce_value(field: str, typ: str, value: Any, is_array: bool = False) -> Any:
    """
    Convert an operand to the Python type bound for a column.

    Args:
        field: Field as the client wrote it, for error messages
        typ: Storage type; element type for array columns
        value: Operand; ``None`` passes through
        is_array: Column is an array; ``value`` must then be a list

    Returns:
        Any: The converted operand

    Raises:
        InvalidConditionError: The operand cannot represent a value of the column
    """
    if value is None:
        return None

    coercer = get_coercer(typ)
    if is_array:
        if not isinstance(value, (list, tuple)):
            raise InvalidConditionError(f"Invalid column '{field}' value")
        return [coerce_value(field, typ, item) for item in value]
    if coercer is None:
        return value
    if isinstance(value, (dict, list, tuple)):
        raise InvalidConditionError(f"Invalid column '{field}' value")

    try:
        return coercer(value)
    except (TypeError, ValueError, ArithmeticError) as error:
        raise InvalidConditionError(f"Invalid column '{field}' value") from error
