"""
Repository abstract base class and generic implementation.
"""

from abc import ABC, abstractmethod
from typing import Any, Generic, List, Optional, Type, TypeVar, Union
from datacore.exceptions import InvalidStateError, NotFoundError
from datacore.specification import Query, Specification, SpecificationEvaluator
from datacore.store.base import Store, call_store
from datacore.tracking import EntityState, EntityStateTracker, entity_info

T = TypeVar("T")


class IRepository(ABC, Generic[T]):
    """Repository interface; the capability set a unit of work hands out per entity type."""

    @abstractmethod
    async def get_by_id(self, key: Any) -> T:
        """Get entity by primary key; raises NotFoundError on a miss."""
        pass

    @abstractmethod
    async def query(self, spec: Optional[Specification] = None, tracking: bool = True) -> List[T]:
        """Get entities matching spec (all entities when spec is None)."""
        pass

    @abstractmethod
    async def add(self, entity: T) -> T:
        """Schedule entity for insertion."""
        pass

    @abstractmethod
    async def update(self, entity: T) -> T:
        """Schedule entity for update."""
        pass

    @abstractmethod
    async def remove(self, key_or_entity: Any) -> T:
        """Schedule entity for deletion."""
        pass


class Repository(IRepository[T]):
    """Generic repository over a store session and the session tracker; subclasses can add custom queries."""

    def __init__(
        self,
        store: Store,
        tracker: EntityStateTracker,
        entity_type: Type[T],
        timeout: Optional[float] = None,
    ):
        """Initialize repository with store session, tracker and entity type."""
        self.store = store
        self.tracker = tracker
        self.entity_type = entity_type
        self.info = entity_info(entity_type)
        self.timeout = timeout

    def _label(self, operation: str) -> str:
        return f"{self.info.name}.{operation}"

    # --- Reads ---

    async def get_by_id(self, key: Any) -> T:
        """Get entity by primary key, from the identity map when already tracked."""
        entity = await self.find(key)
        if entity is None:
            raise NotFoundError(
                f"{self.info.name} with key {key!r} not found",
                detail={"entity": self.info.name, "key": key},
            )
        return entity

    async def find(self, key: Any) -> Optional[T]:
        """Like get_by_id but returns None on a miss."""
        key = self.info.normalize_key(key)
        entry = self.tracker.find(self.entity_type, key)
        if entry is not None:
            return entry.entity

        record = await call_store(self.store.get(self.entity_type, key), self.timeout, self._label("get"))
        if record is None:
            return None
        return self.tracker.track_loaded(self.entity_type, record)

    def find_local(self, key: Any) -> Optional[T]:
        """Tracked instance for key; never touches the store."""
        entry = self.tracker.find(self.entity_type, key)
        return entry.entity if entry is not None else None

    def _refine(self, spec: Optional[Specification]) -> Query:
        base = Query.of(self.entity_type)
        if spec is None:
            return base
        return SpecificationEvaluator.apply(base, spec)

    async def query(self, spec: Optional[Specification] = None, tracking: bool = True) -> List[T]:
        """
        Get entities matching spec.

        Tracked results go through the identity map. With tracking=False the
        results are fresh instances the tracker never sees.
        """
        self.tracker.ensure_active()
        refined = self._refine(spec)
        records = await call_store(self.store.query(self.entity_type, refined), self.timeout, self._label("query"))
        if not tracking:
            return [self.info.build(record) for record in records]
        return [self.tracker.track_loaded(self.entity_type, record) for record in records]

    async def query_no_tracking(self, spec: Optional[Specification] = None) -> List[T]:
        """Read-only results, bypassing the tracker."""
        return await self.query(spec, tracking=False)

    async def first(self, spec: Optional[Specification] = None) -> Optional[T]:
        """First match or None."""
        if spec is not None and spec.ordering and spec.paging is None:
            spec = spec.page(0, 1)
        results = await self.query(spec)
        return results[0] if results else None

    async def count(self, spec: Optional[Specification] = None) -> int:
        """Count entities matching spec."""
        self.tracker.ensure_active()
        refined = self._refine(spec).without_shape()
        records = await call_store(self.store.query(self.entity_type, refined), self.timeout, self._label("count"))
        return len(records)

    async def exists(self, spec: Optional[Specification] = None) -> bool:
        return await self.count(spec) > 0

    # --- Writes (recorded in the tracker, sent on commit) ---

    async def add(self, entity: T) -> T:
        """Track entity as ADDED; fails if the instance is already tracked in another state."""
        entry = self.tracker.entry(entity)
        if entry is not None and entry.state != EntityState.ADDED:
            raise InvalidStateError(
                f"{self.info.name} with key {entry.key!r} is already tracked as {entry.state.value}",
                detail={"entity": self.info.name, "key": entry.key},
            )
        self.tracker.track(entity, EntityState.ADDED)
        return entity

    async def update(self, entity: T) -> T:
        """
        Mark entity modified.

        A tracked instance is marked modified (an ADDED one stays ADDED). An
        untracked instance is attached with every field marked modified, so the
        update overwrites the whole row; use merge() to write only real changes.
        """
        entry = self.tracker.entry(entity)
        if entry is None:
            self.tracker.attach(entity)
        elif entry.state != EntityState.ADDED:
            self.tracker.mark_modified(entity)
        return entity

    async def merge(self, entity: T) -> T:
        """Copy entity's fields onto the tracked (or freshly loaded) instance with the same key."""
        current = await self.get_by_id(self.info.key_of(entity))
        if current is entity:
            return current
        for field in self.info.value_fields:
            setattr(current, field, getattr(entity, field))
        self.tracker.diff(current)
        return current

    async def remove(self, key_or_entity: Union[T, Any]) -> T:
        """Mark an entity (or the entity with this key) deleted."""
        if isinstance(key_or_entity, self.entity_type):
            entity = key_or_entity
            if self.tracker.entry(entity) is None:
                entity = await self.get_by_id(self.info.key_of(entity))
        else:
            entity = await self.get_by_id(key_or_entity)
        self.tracker.mark_deleted(entity)
        return entity
