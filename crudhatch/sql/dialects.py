"""
SQL dialects statements are compiled for.

Each ``Dialect`` wraps a SQLAlchemy dialect and turns a Core statement into
SQL text plus positional arguments in the order of its placeholders.
"""
from typing import Any, Dict, List, Tuple, Type

from sqlalchemy.dialects import mysql
from sqlalchemy.dialects.postgresql import asyncpg
from sqlalchemy.engine.interfaces import Dialect as SQLAlchemyDialect
from sqlalchemy.sql import ClauseElement


class Dialect:
    """Base dialect; subclasses provide the SQLAlchemy dialect."""

    name: str = ""
    supports_arrays: bool = False

    def __init__(self):
        self.sa_dialect = self.create_sa_dialect()

    def create_sa_dialect(self) -> SQLAlchemyDialect:
        raise NotImplementedError

    @property
    def supports_returning(self) -> bool:
        return bool(self.sa_dialect.insert_returning)

    def quote(self, identifier: str) -> str:
        """Quote a single identifier, doubling any embedded quote character."""
        return self.sa_dialect.identifier_preparer.quote_identifier(identifier)

    def column(self, alias: str, name: str) -> str:
        return f"{self.quote(alias)}.{self.quote(name)}"

    def render(self, expression: ClauseElement) -> str:
        """SQL text of a column expression, e.g. ``"user"."name"``."""
        return str(expression.compile(dialect=self.sa_dialect))

    def compile(self, statement: ClauseElement) -> Tuple[str, List[Any]]:
        """
        Compile ``statement`` with list parameters expanded in place.

        Args:
            statement: SQLAlchemy Core statement

        Returns:
            Tuple[str, List[Any]]: SQL text and its positional arguments
        """
        compiled = statement.compile(
            dialect=self.sa_dialect,
            compile_kwargs={"render_postcompile": True},
        )
        params = compiled.params
        return compiled.string, [params[name] for name in compiled.positiontup or []]

    def __repr__(self):
        return f"{type(self).__name__}()"


class PostgresDialect(Dialect):
    """PostgreSQL as spoken by asyncpg: ``$1`` placeholders with type casts, ILIKE and arrays."""

    name = "postgres"
    supports_arrays = True

    def create_sa_dialect(self) -> SQLAlchemyDialect:
        return asyncpg.dialect()


class MySQLDialect(Dialect):
    """MySQL: backtick quoting, ``%s`` placeholders, no ILIKE, no array types."""

    name = "mysql"

    def create_sa_dialect(self) -> SQLAlchemyDialect:
        return mysql.dialect()


DIALECTS: Dict[str, Type[Dialect]] = {
    "postgres": PostgresDialect,
    "postgresql": PostgresDialect,
    "mysql": MySQLDialect,
    "mariadb": MySQLDialect,
}


def get_dialect(name) -> Dialect:
    """Return a dialect instance for ``name`` (a dialect instance passes through)."""
    if isinstance(name, Dialect):
        return name
    try:
        return DIALECTS[str(name).lower()]()
    except KeyError:
        raise ValueError(f"Unsupported dialect '{name}'. Expected one of: postgres, mysql")
