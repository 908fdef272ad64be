"""
Entity metadata.

Entities are SQLModel table classes; their primary key, scalar fields and
relations are read from the SQLAlchemy mapper once per class and cached.
"""

import copy
from enum import Enum
from functools import lru_cache
from typing import Any, Dict, Iterator, Optional, Tuple
from pydantic import BaseModel, ConfigDict
from sqlalchemy import inspect
from sqlalchemy.exc import NoInspectionAvailable
from sqlalchemy.orm import configure_mappers
from datacore.exceptions import InvalidStateError, UnmappedEntityError


class CascadePolicy(str, Enum):
    """What deleting a parent does to its tracked dependents."""
    CASCADE = "cascade"
    RESTRICT = "restrict"


class RelationKind(str, Enum):
    ONE_TO_MANY = "one_to_many"
    MANY_TO_ONE = "many_to_one"


class RelationInfo(BaseModel):
    """One navigable relation; local/remote fields are the paired join columns."""
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str
    kind: RelationKind
    target: Any
    local_fields: Tuple[str, ...]
    remote_fields: Tuple[str, ...]
    uselist: bool
    cascade: Optional[CascadePolicy] = None

    @property
    def owns_dependents(self) -> bool:
        return self.kind == RelationKind.ONE_TO_MANY


class EntityInfo(BaseModel):
    """Key, fields and relations of one entity type."""
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    entity_type: Any
    key_fields: Tuple[str, ...]
    scalar_fields: Tuple[str, ...]
    relations: Dict[str, RelationInfo]

    @property
    def name(self) -> str:
        return self.entity_type.__name__

    @property
    def value_fields(self) -> Tuple[str, ...]:
        """Scalar fields that are not part of the primary key."""
        return tuple(f for f in self.scalar_fields if f not in self.key_fields)

    def normalize_key(self, key: Any) -> Any:
        """Scalar key for single-column keys, tuple for composite keys."""
        if len(self.key_fields) == 1:
            if isinstance(key, tuple) and len(key) == 1:
                return key[0]
            return key
        key = tuple(key)
        if len(key) != len(self.key_fields):
            raise ValueError(
                f"{self.name} key needs {len(self.key_fields)} values {self.key_fields}, got {key!r}"
            )
        return key

    def key_from_values(self, values: Dict[str, Any]) -> Any:
        return self.normalize_key(tuple(values.get(f) for f in self.key_fields))

    def key_of(self, entity: Any) -> Any:
        """Primary key of entity; fails when any key field is unset."""
        values = tuple(getattr(entity, f, None) for f in self.key_fields)
        if any(v is None for v in values):
            raise InvalidStateError(
                f"{self.name} instance has no primary key value for {self.key_fields}"
            )
        return self.normalize_key(values)

    def key_values(self, key: Any) -> Dict[str, Any]:
        key = self.normalize_key(key)
        parts = key if len(self.key_fields) > 1 else (key,)
        return dict(zip(self.key_fields, parts))

    def snapshot(self, entity: Any) -> Dict[str, Any]:
        """Deep copy of the scalar field values, so in-place mutation still diffs."""
        return {f: copy.deepcopy(getattr(entity, f, None)) for f in self.scalar_fields}

    def values(self, entity: Any, fields=None) -> Dict[str, Any]:
        return {f: getattr(entity, f, None) for f in (fields or self.scalar_fields)}

    def parent_keys(self, entity: Any) -> Iterator[Tuple[RelationInfo, Any]]:
        """(relation, parent key) for every many-to-one relation with a foreign key set."""
        for relation in self.relations.values():
            if relation.kind != RelationKind.MANY_TO_ONE:
                continue
            fk = tuple(getattr(entity, f, None) for f in relation.local_fields)
            if any(v is None for v in fk):
                continue
            yield relation, entity_info(relation.target).normalize_key(fk)

    def build(self, record: Dict[str, Any]) -> Any:
        """Untracked instance from a store record, nested relation records included."""
        entity = self.entity_type(**{f: record[f] for f in self.scalar_fields if f in record})
        for name, relation in self.relations.items():
            if name not in record:
                continue
            target = entity_info(relation.target)
            related = record[name]
            if relation.uselist:
                setattr(entity, name, [target.build(r) for r in related or []])
            else:
                setattr(entity, name, target.build(related) if related is not None else None)
        return entity


def _column_key(mapper, column) -> str:
    return mapper.get_property_by_column(column).key


@lru_cache(maxsize=None)
def entity_info(entity_type) -> EntityInfo:
    """Metadata for a mapped entity class."""
    if not isinstance(entity_type, type):
        raise UnmappedEntityError(f"{entity_type!r} is not an entity type")
    try:
        mapper = inspect(entity_type)
    except NoInspectionAvailable:
        raise UnmappedEntityError(
            f"{entity_type.__name__} is not mapped; declare it with SQLModel(table=True)"
        ) from None

    configure_mappers()

    relations = {}
    for rel in mapper.relationships:
        if rel.secondary is not None:
            continue
        if rel.direction.name == "ONETOMANY":
            kind = RelationKind.ONE_TO_MANY
        elif rel.direction.name == "MANYTOONE":
            kind = RelationKind.MANY_TO_ONE
        else:
            continue

        cascade = None
        if kind == RelationKind.ONE_TO_MANY:
            declared = rel.info.get("cascade_policy")
            if declared:
                cascade = CascadePolicy(declared)
            elif rel.cascade.delete:
                cascade = CascadePolicy.CASCADE

        relations[rel.key] = RelationInfo(
            name=rel.key,
            kind=kind,
            target=rel.mapper.class_,
            local_fields=tuple(_column_key(mapper, local) for local, _ in rel.local_remote_pairs),
            remote_fields=tuple(_column_key(rel.mapper, remote) for _, remote in rel.local_remote_pairs),
            uselist=bool(rel.uselist),
            cascade=cascade,
        )

    return EntityInfo(
        entity_type=entity_type,
        key_fields=tuple(_column_key(mapper, column) for column in mapper.primary_key),
        scalar_fields=tuple(prop.key for prop in mapper.column_attrs),
        relations=relations,
    )
