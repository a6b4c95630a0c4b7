"""
Allow-listed relations of one entity, memoized per field path and alias.
"""
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict

from crudhatch.options import JoinOption
from crudhatch.service.metadata import EntityMetadata, MetadataRegistry, RelationMetadata


def get_allowed_columns(
    columns: List[str], allow: Optional[List[str]] = None, exclude: Optional[List[str]] = None
) -> List[str]:
    """Columns filtered by an allow-list and an exclude-list (empty lists mean no filter)."""
    return [
        column
        for column in columns
        if (not exclude or column not in exclude) and (not allow or column in allow)
    ]


class AllowedRelation(BaseModel):
    """Derived join data for one allow-listed relation path."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    alias: Optional[str] = None
    name: str
    path: str
    parent_alias: str
    columns: List[str]
    primary_columns: List[str]
    allowed_columns: List[str] = []
    nested: bool = False
    relation: RelationMetadata
    entity: EntityMetadata

    @property
    def join_alias(self) -> str:
        return self.alias or self.name


class RelationRegistry:
    """
    Cache of ``AllowedRelation`` entries keyed by field path and, when the join
    is aliased, by alias too. Entries are derived from metadata and may be
    recomputed at any time.
    """

    def __init__(self, entity: EntityMetadata, metadata: MetadataRegistry):
        self.entity = entity
        self.metadata = metadata
        self._entries: Dict[str, AllowedRelation] = {}

    def get(self, key: str) -> Optional[AllowedRelation]:
        return self._entries.get(key)

    def get_relation_metadata(self, field: str, options: JoinOption) -> Optional[AllowedRelation]:
        """
        Resolve ``field`` (``company`` or ``company.owner``) against the relation
        graph and store the result with the allow-listed columns of ``options``.

        Returns:
            Optional[AllowedRelation]: ``None`` when the path names no relation
        """
        entry = self._entries.get(field)
        if entry is None:
            entry = self._resolve(field, options)
            if entry is None:
                return None

        allowed = get_allowed_columns(entry.columns, options.allow, options.exclude)
        entry = entry.model_copy(update={"allowed_columns": allowed, "alias": options.alias})

        self._entries[field] = entry
        self._entries.setdefault(entry.join_alias, entry)
        if options.alias:
            self._entries[options.alias] = entry

        return entry

    def _resolve(self, field: str, options: JoinOption) -> Optional[AllowedRelation]:
        parts = field.split(".")
        owner = self.entity
        parent_alias = self.entity.name
        relation = None

        for index, part in enumerate(parts):
            relation = owner.get_relation(part)
            if relation is None:
                return None
            target = self.metadata.find(relation.target)
            if target is None:
                return None

            if index < len(parts) - 1:
                parent = self._entries.get(".".join(parts[: index + 1]))
                parent_alias = parent.join_alias if parent is not None else part
            owner = target

        return AllowedRelation(
            alias=options.alias,
            name=parts[-1],
            path=field,
            parent_alias=parent_alias,
            columns=owner.entity_columns,
            primary_columns=owner.entity_primary_columns,
            nested=len(parts) > 1,
            relation=relation,
            entity=owner,
        )
