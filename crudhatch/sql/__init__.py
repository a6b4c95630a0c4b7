"""
Parameterized SQL statements for PostgreSQL and MySQL on SQLAlchemy Core.
"""

from .builder import (
    DeleteQuery,
    InsertQuery,
    JoinClause,
    QueryParameters,
    SelectQuery,
    UpdateQuery,
    group,
    table_clause,
    text_condition,
)
from .dialects import Dialect, MySQLDialect, PostgresDialect, get_dialect

__all__ = [
    "DeleteQuery",
    "Dialect",
    "InsertQuery",
    "JoinClause",
    "MySQLDialect",
    "PostgresDialect",
    "QueryParameters",
    "SelectQuery",
    "UpdateQuery",
    "get_dialect",
    "group",
    "table_clause",
    "text_condition",
]
