"""
The ``search`` condition language as a closed tagged union.

Raw conditions are the JSON objects clients send in ``?s=``::

    {"name": "John"}                              leaf, implicit $eq
    {"age": {"$gt": 18, "$lt": 65}}               leaf with an operator map
    {"$and": [{...}, {...}]}                      conjunction
    {"$or": [{...}, {...}]}                       disjunction
    {"$not": [{...}]}                             negated conjunction
    {"status": "active", "$or": [{...}, {...}]}   leaf with alternatives

``parse_search_condition`` turns a raw object into the tree below and
``to_raw`` turns a tree back into its raw object. Parsing keeps the structure
as written; collapsing single-element groups is left to the compiler.
"""
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from crudhatch.exceptions import QueryParseError

AND = "$and"
OR = "$or"
NOT = "$not"
COMBINATORS = (AND, OR, NOT)


class LeafCondition(BaseModel):
    """Field conditions ANDed together, optionally with a sibling ``$or``."""

    type: Literal["leaf"] = "leaf"
    fields: Dict[str, Any] = Field(..., description="field -> scalar or operator map")
    alternatives: Optional[List["SearchCondition"]] = None

    def to_raw(self) -> Dict[str, Any]:
        raw = dict(self.fields)
        if self.alternatives is not None:
            raw[OR] = [item.to_raw() for item in self.alternatives]
        return raw


class AndCondition(BaseModel):
    type: Literal["and"] = "and"
    items: List["SearchCondition"] = []

    def to_raw(self) -> Dict[str, Any]:
        if not self.items:
            return {}
        return {AND: [item.to_raw() for item in self.items]}


class OrCondition(BaseModel):
    type: Literal["or"] = "or"
    items: List["SearchCondition"]

    def to_raw(self) -> Dict[str, Any]:
        return {OR: [item.to_raw() for item in self.items]}


class NotCondition(BaseModel):
    """Negation of the conjunction of ``items``."""

    type: Literal["not"] = "not"
    items: List["SearchCondition"]

    def to_raw(self) -> Dict[str, Any]:
        return {NOT: [item.to_raw() for item in self.items]}


SearchCondition = Annotated[
    Union[LeafCondition, AndCondition, OrCondition, NotCondition],
    Field(discriminator="type"),
]

LeafCondition.model_rebuild()
AndCondition.model_rebuild()
OrCondition.model_rebuild()
NotCondition.model_rebuild()


def is_empty(condition: Optional[SearchCondition]) -> bool:
    return condition is None or (isinstance(condition, AndCondition) and not condition.items)


def _parse_items(key: str, value: Any) -> List[SearchCondition]:
    if not isinstance(value, list) or not value:
        raise QueryParseError(f"Invalid search condition. Non-empty array expected for '{key}'")
    return [parse_search_condition(item) for item in value]


def _check_field(field: str, value: Any) -> None:
    if not field:
        raise QueryParseError("Invalid search condition. Field name expected")
    if isinstance(value, dict):
        for operator, operand in value.items():
            if not operator.startswith("$"):
                raise QueryParseError(
                    f"Invalid search condition for field '{field}'. Operator expected, got '{operator}'"
                )
            if operator == OR and not isinstance(operand, dict):
                raise QueryParseError(
                    f"Invalid search condition for field '{field}'. Object expected for '$or'"
                )


def parse_search_condition(raw: Any) -> SearchCondition:
    """Build a condition tree from the raw JSON object language."""
    if isinstance(raw, BaseModel):
        return raw
    if not isinstance(raw, dict):
        raise QueryParseError("Invalid search param. JSON expected")

    fields = {key: value for key, value in raw.items() if key not in COMBINATORS}
    for field, value in fields.items():
        _check_field(field, value)

    if NOT in raw:
        parts: List[SearchCondition] = [NotCondition(items=_parse_items(NOT, raw[NOT]))]
        rest = {key: value for key, value in raw.items() if key != NOT}
        if rest:
            parts.append(parse_search_condition(rest))
        return parts[0] if len(parts) == 1 else AndCondition(items=parts)

    if AND in raw:
        items = _parse_items(AND, raw[AND])
        rest = {key: value for key, value in raw.items() if key != AND}
        if rest:
            items.append(parse_search_condition(rest))
        return AndCondition(items=items)

    if OR in raw:
        alternatives = _parse_items(OR, raw[OR])
        if not fields:
            return OrCondition(items=alternatives)
        return LeafCondition(fields=fields, alternatives=alternatives)

    if not fields:
        return AndCondition(items=[])
    return LeafCondition(fields=fields)
