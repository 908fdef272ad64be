import copy
from enum import Enum
from typing import Any, Dict, List, Set
from datacore.exceptions import SessionDisposedError
from .metadata import EntityInfo


class EntityState(str, Enum):
    """Lifecycle state of a tracked entity."""
    DETACHED = "DETACHED"
    UNCHANGED = "UNCHANGED"
    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


PENDING_STATES = (EntityState.ADDED, EntityState.MODIFIED, EntityState.DELETED)


class EntityEntry:
    """Tracker-side record of one entity instance: state, key and original values."""

    def __init__(self, tracker, entity: Any, info: EntityInfo, key: Any, state: EntityState):
        self._tracker = tracker
        self._entity = entity
        self._info = info
        self._key = key
        self._state = state
        self._original_values: Dict[str, Any] = info.snapshot(entity)
        self._forced_fields: Set[str] = set()
        self.owned: Dict[str, List["EntityEntry"]] = {}

    def _check(self) -> None:
        if self._tracker.disposed:
            raise SessionDisposedError(
                f"Entry for {self._info.name}({self._key!r}) belongs to a disposed session"
            )

    @property
    def entity(self) -> Any:
        self._check()
        return self._entity

    @property
    def entity_type(self) -> type:
        return self._info.entity_type

    @property
    def info(self) -> EntityInfo:
        return self._info

    @property
    def key(self) -> Any:
        self._check()
        return self._key

    @property
    def state(self) -> EntityState:
        self._check()
        return self._state

    @property
    def original_values(self) -> Dict[str, Any]:
        self._check()
        return dict(self._original_values)

    @property
    def forced_fields(self) -> Set[str]:
        self._check()
        return set(self._forced_fields)

    @property
    def identity(self):
        """Identity-map key: (entity type, primary key)."""
        return (self._info.entity_type, self._key)

    def changed_fields(self) -> Set[str]:
        """Scalar fields whose current value differs from the snapshot."""
        self._check()
        return {
            field
            for field, original in self._original_values.items()
            if getattr(self._entity, field, None) != original
        }

    def refresh_snapshot(self) -> None:
        self._original_values = self._info.snapshot(self._entity)
        self._forced_fields = set()

    def restore_snapshot(self) -> None:
        """Write the original values back onto the entity."""
        for field, value in self._original_values.items():
            setattr(self._entity, field, copy.deepcopy(value))
        self._forced_fields = set()

    def __repr__(self) -> str:
        return f"<EntityEntry {self._info.name}({self._key!r}) {self._state.value}>"
