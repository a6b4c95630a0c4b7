"""
Condition compiler.

Lowers a ``SearchCondition`` tree into one bracketed, parameterized
SQLAlchemy boolean expression ANDed into the WHERE clause of a
``SelectQuery``, resolving every field reference against the entity columns
and the joined, allow-listed relations.
"""
import re
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.sql.expression import ColumnElement

from crudhatch.exceptions import ColumnAuthorizationError, InvalidConditionError
from crudhatch.options import JoinOption
from crudhatch.request.conditions import (
    OR,
    AndCondition,
    LeafCondition,
    NotCondition,
    OrCondition,
    SearchCondition,
)
from crudhatch.request.models import QueryFilter, normalize_operator
from crudhatch.service.metadata import ColumnMetadata, EntityMetadata
from crudhatch.service.operators import OperatorRegistry, map_operator
from crudhatch.service.relations import AllowedRelation, RelationRegistry
from crudhatch.sql.builder import SelectQuery, group

SQL_INJECTION_PATTERNS = [
    re.compile(r"(%27)|(')|(--)|(%23)|(#)", re.IGNORECASE),
    re.compile(r"((%3D)|(=))[^\n]*((%27)|(')|(--)|(%3B)|(;))", re.IGNORECASE),
    re.compile(r"w*((%27)|('))((%6F)|o|(%4F))((%72)|r|(%52))", re.IGNORECASE),
    re.compile(r"((%27)|('))union", re.IGNORECASE),
]

# null operands turn these into the matching null test
NULL_OPERATORS = {"$ne": "$notnull", "$neL": "$notnull", "$notnull": "$notnull"}


def check_sql_injection(field: str) -> str:
    for pattern in SQL_INJECTION_PATTERNS:
        if pattern.search(field):
            raise ColumnAuthorizationError(f'SQL injection detected: "{field}"')
    return field


class ConditionCompiler:
    """
    Compiles conditions for one entity.

    Args:
        entity: Metadata of the main entity; its name is the main query alias
        relations: Allow-listed relations resolved so far
        join_options: The route's join allow-list
        custom_operators: Custom operators available to this route
    """

    def __init__(
        self,
        entity: EntityMetadata,
        relations: RelationRegistry,
        join_options: Optional[Dict[str, JoinOption]] = None,
        custom_operators: Optional[OperatorRegistry] = None,
    ):
        self.entity = entity
        self.alias = entity.name
        self.relations = relations
        self.join_options = join_options or {}
        self.custom_operators = custom_operators or OperatorRegistry()
        self._columns_hash = entity.entity_columns_hash

    def compile(self, condition: Optional[SearchCondition], query: SelectQuery) -> SelectQuery:
        """AND ``condition`` into the WHERE clause of ``query``."""
        if condition is not None:
            query.and_where(self.search_condition(query, condition))
        return query

    def search_condition(self, query: SelectQuery, condition: SearchCondition) -> Optional[ColumnElement]:
        """
        Lower one node of the condition tree.

        ``$not`` children are ANDed inside a negated bracket, ``$and``/``$or``
        with a single child collapse to that child and a leaf with several
        fields brackets them with AND. ``None`` means the node is empty.
        """
        match condition:
            case NotCondition(items=items):
                return group((self.search_condition(query, item) for item in items), negate=True)
            case AndCondition(items=items):
                return group(self.search_condition(query, item) for item in items)
            case OrCondition(items=items):
                return group((self.search_condition(query, item) for item in items), "OR")
            case LeafCondition():
                return self._leaf_condition(query, condition)
        raise TypeError(f"Unsupported condition {type(condition).__name__}")

    def _leaf_condition(self, query: SelectQuery, leaf: LeafCondition) -> Optional[ColumnElement]:
        conditions = [self.field_condition(query, field, value) for field, value in leaf.fields.items()]
        if leaf.alternatives is not None:
            conditions.append(
                group((self.search_condition(query, item) for item in leaf.alternatives), "OR")
            )
        return group(conditions)

    def field_condition(self, query: SelectQuery, field: str, value: Any) -> Optional[ColumnElement]:
        """
        Condition for one field: a scalar (``$eq``, or ``$in`` for a list) or an
        operator map such as ``{"$gte": 18, "$or": {...}}``.
        """
        if isinstance(value, dict):
            return self._operator_map(query, field, value)
        if isinstance(value, list):
            return self.where(query, field, "$in", value)
        return self.where(query, field, "$eq", value)

    def _operator_map(
        self, query: SelectQuery, field: str, operators: Dict[str, Any], conjunction: str = "AND"
    ) -> Optional[ColumnElement]:
        conditions = []
        for operator, operand in operators.items():
            if operator == OR:
                if not isinstance(operand, dict):
                    raise InvalidConditionError(f"Invalid column '{field}' value")
                conditions.append(self._operator_map(query, field, operand, "OR"))
            else:
                conditions.append(self.where(query, field, operator, operand))
        return group(conditions, conjunction)

    def where(self, query: SelectQuery, field: str, operator: str, value: Any) -> ColumnElement:
        return self.map_condition(query, QueryFilter(field=field, operator=operator, value=value))

    def map_condition(
        self, query: SelectQuery, condition: QueryFilter, pending_alias: Optional[str] = None
    ) -> ColumnElement:
        """
        Compile one filter into a boolean expression with uniquely named parameters.

        Args:
            query: Query the condition is for; provides joins and parameter names
            condition: Field, operator and operand
            pending_alias: Alias of a join being added, treated as joined

        Returns:
            ColumnElement: The condition
        """
        operator = normalize_operator(condition.operator)
        if condition.value is None:
            operator = NULL_OPERATORS.get(operator, "$isnull")

        expression, column = self.resolve_field(condition.field, query, pending_alias)

        return map_operator(
            query,
            condition.field,
            expression,
            operator,
            condition.value,
            column=column,
            custom_operators=self.custom_operators,
        )

    def resolve_field(
        self, field: str, query: SelectQuery, pending_alias: Optional[str] = None
    ) -> Tuple[ColumnElement, Optional[ColumnMetadata]]:
        """
        Resolve a client field into an ``alias.column`` expression of ``query``.

        Main-entity properties, including embedded dotted paths, map through the
        entity columns hash. Other dotted paths must address a column of an
        allow-listed relation already joined on ``query``.

        Raises:
            ColumnAuthorizationError: Injection signature, unknown column or
                relation not allowed/joined
        """
        check_sql_injection(field)

        if field in self._columns_hash:
            return query.column(self.alias, self._columns_hash[field]), self.entity.get_column(field)

        parts = field.split(".")
        if len(parts) < 2:
            raise ColumnAuthorizationError(f"Invalid column '{field}'")

        relation_path, name = ".".join(parts[:-1]), parts[-1]
        relation = self.find_relation(relation_path)
        if relation is None:
            raise ColumnAuthorizationError(f"Invalid column '{field}'. Relation '{relation_path}' is not allowed")

        alias = relation.join_alias
        if not query.has_join(alias) and alias != pending_alias:
            raise ColumnAuthorizationError(f"Invalid column '{field}'. Relation '{relation_path}' is not joined")

        column = relation.entity.get_column(name)
        if column is None:
            raise ColumnAuthorizationError(f"Invalid column '{field}'")

        return query.column(alias, column.database_name), column

    def find_relation(self, path: str) -> Optional[AllowedRelation]:
        """Allow-listed relation by field path or join alias."""
        allowed = path in self.join_options or any(
            option.alias == path for option in self.join_options.values()
        )
        if not allowed:
            return None
        return self.relations.get(path)
