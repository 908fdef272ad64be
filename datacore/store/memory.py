"""
In-memory store.

InMemoryDatabase keeps one table per entity type (primary key -> row dict)
and enforces primary key uniqueness and foreign keys between mapped
relations. InMemoryStore is one session over a database; a batch is applied
to a staged copy of the tables and swapped in without suspending, so a batch
is either fully visible or not at all.
"""

import asyncio
import copy
from collections import Counter
from typing import Any, Dict, List, Optional, Sequence, Tuple
from datacore.logging.logger import get_logger
from datacore.specification.base import Query
from datacore.tracking.metadata import EntityInfo, RelationKind, entity_info
from .base import Store, Write, WriteKind

Tables = Dict[type, Dict[Any, Dict[str, Any]]]


class ConstraintViolation(Exception):
    """A write broke a primary key or foreign key constraint."""
    pass


class StoreClosedError(Exception):
    """Store session used after close()."""
    pass


def _sort_key(value):
    # NULLs sort first ascending, last descending
    return (value is not None, value)


class InMemoryDatabase:
    """Tables shared by every InMemoryStore session opened on it."""

    def __init__(self):
        self._tables: Tables = {}
        self.logger = get_logger("memory_store")

    # --- Reads ---

    def rows(self, entity_type: type) -> List[Dict[str, Any]]:
        return [copy.deepcopy(row) for row in self._tables.get(entity_type, {}).values()]

    def fetch(self, entity_type: type, key: Any) -> Optional[Dict[str, Any]]:
        info = entity_info(entity_type)
        row = self._tables.get(entity_type, {}).get(info.normalize_key(key))
        return copy.deepcopy(row) if row is not None else None

    def select(self, entity_type: type, query: Query) -> List[Dict[str, Any]]:
        info = entity_info(entity_type)
        records = self.rows(entity_type)

        for path in query.include_paths:
            self._attach(records, info, path)

        if query.criteria:
            records = [r for r in records if query.matches(info.build(r))]

        # Stable sorts, least significant key first
        for key in reversed(query.ordering):
            records.sort(key=lambda r, field=key.field: _sort_key(r.get(field)), reverse=key.descending)

        if query.paging is not None:
            start = query.paging.skip
            records = records[start:start + query.paging.take]
        return records

    def _attach(self, records: List[Dict[str, Any]], info: EntityInfo, path: Tuple[str, ...]) -> None:
        parents, current = records, info
        for name in path[:-1]:
            relation = current.relations[name]
            next_level = []
            for record in parents:
                value = record.get(name)
                if value is not None:
                    next_level.extend(value if relation.uselist else [value])
            parents, current = next_level, entity_info(relation.target)

        name = path[-1]
        relation = current.relations[name]
        candidates = list(self._tables.get(relation.target, {}).values())
        for record in parents:
            if name in record:
                continue
            local = tuple(record.get(f) for f in relation.local_fields)
            if any(v is None for v in local):
                record[name] = [] if relation.uselist else None
                continue
            matches = [
                copy.deepcopy(row)
                for row in candidates
                if tuple(row.get(f) for f in relation.remote_fields) == local
            ]
            record[name] = matches if relation.uselist else (matches[0] if matches else None)

    # --- Writes ---

    def seed(self, *entities: Any) -> None:
        """Insert entities directly, bypassing any session."""
        writes = []
        for entity in entities:
            info = entity_info(type(entity))
            writes.append(Write(
                kind=WriteKind.INSERT,
                entity_type=info.entity_type,
                key=info.key_values(info.key_of(entity)),
                values=info.values(entity, info.value_fields),
            ))
        self.apply(writes)

    def apply(self, writes: Sequence[Write]) -> int:
        """Apply every write to a staged copy, then swap it in; any violation leaves the tables untouched."""
        staged: Tables = {entity_type: dict(rows) for entity_type, rows in self._tables.items()}
        for write in writes:
            self._apply_write(staged, write)
        self._tables = staged
        self.logger.debug(f"Applied batch of {len(writes)} writes")
        return len(writes)

    def _apply_write(self, staged: Tables, write: Write) -> None:
        info = entity_info(write.entity_type)
        key = info.key_from_values(write.key)
        table = staged.setdefault(info.entity_type, {})

        if write.kind == WriteKind.INSERT:
            if key in table:
                raise ConstraintViolation(f"Duplicate primary key {info.name}({key!r})")
            row = {f: copy.deepcopy(write.values.get(f)) for f in info.scalar_fields}
            row.update(write.key)
            self._check_parents(staged, info, row)
            table[key] = row
        elif write.kind == WriteKind.UPDATE:
            if key not in table:
                raise ConstraintViolation(f"Update of {info.name}({key!r}) affected no rows")
            row = {**table[key], **copy.deepcopy(write.values)}
            self._check_parents(staged, info, row)
            table[key] = row
        else:
            if key not in table:
                raise ConstraintViolation(f"Delete of {info.name}({key!r}) affected no rows")
            self._check_children(staged, info, table[key])
            del table[key]

    def _check_parents(self, staged: Tables, info: EntityInfo, row: Dict[str, Any]) -> None:
        for relation in info.relations.values():
            if relation.kind != RelationKind.MANY_TO_ONE:
                continue
            fk = tuple(row.get(f) for f in relation.local_fields)
            if any(v is None for v in fk):
                continue
            parents = staged.get(relation.target, {}).values()
            if not any(tuple(p.get(f) for f in relation.remote_fields) == fk for p in parents):
                raise ConstraintViolation(
                    f"{info.name}.{relation.name} references missing {relation.target.__name__}{fk!r}"
                )

    def _check_children(self, staged: Tables, info: EntityInfo, row: Dict[str, Any]) -> None:
        references = []
        for relation in info.relations.values():
            if relation.kind == RelationKind.ONE_TO_MANY:
                references.append((relation.target, relation.remote_fields, relation.local_fields))
        for entity_type in staged:
            for relation in entity_info(entity_type).relations.values():
                if relation.kind == RelationKind.MANY_TO_ONE and relation.target is info.entity_type:
                    references.append((entity_type, relation.local_fields, relation.remote_fields))

        for child_type, child_fields, parent_fields in references:
            parent_values = tuple(row.get(f) for f in parent_fields)
            for child in staged.get(child_type, {}).values():
                if tuple(child.get(f) for f in child_fields) == parent_values:
                    raise ConstraintViolation(
                        f"{info.name}{parent_values!r} is still referenced by {child_type.__name__}"
                    )


class InMemoryStore(Store):
    """One session over an InMemoryDatabase; counts round trips per operation."""

    def __init__(self, database: Optional[InMemoryDatabase] = None, latency: float = 0.0):
        self.database = database if database is not None else InMemoryDatabase()
        self.latency = latency
        self.round_trips: Counter = Counter()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def _round_trip(self, operation: str) -> None:
        if self._closed:
            raise StoreClosedError(f"Cannot {operation}: store session is closed")
        self.round_trips[operation] += 1
        if self.latency:
            await asyncio.sleep(self.latency)

    async def get(self, entity_type: type, key: Any) -> Optional[Dict[str, Any]]:
        await self._round_trip("get")
        return self.database.fetch(entity_type, key)

    async def query(self, entity_type: type, query: Query) -> List[Dict[str, Any]]:
        await self._round_trip("query")
        return self.database.select(entity_type, query)

    async def execute_batch(self, writes: Sequence[Write]) -> int:
        await self._round_trip("execute_batch")
        return self.database.apply(writes)

    async def close(self) -> None:
        self._closed = True
