"""
Change tracker: the identity map and entity state machine of one session.

Legal transitions:

    (none)/DETACHED --add--------------> ADDED
    (none) ----------store read--------> UNCHANGED
    UNCHANGED ------diff / mark--------> MODIFIED
    UNCHANGED/MODIFIED --mark deleted--> DELETED
    ADDED ----------mark deleted-------> removed (never persisted)
    ADDED/MODIFIED --commit------------> UNCHANGED, snapshot refreshed
    DELETED --------commit-------------> DETACHED, removed
    any ------------detach-------------> DETACHED, removed

A tracker is owned by a single unit of work and is not synchronized.
"""

from typing import Any, Dict, List, Optional, Set, Tuple
from datacore.exceptions import (
    CascadeViolationError,
    DuplicateKeyError,
    InvalidStateError,
    SessionDisposedError,
)
from datacore.logging.logger import get_logger
from .entry import EntityEntry, EntityState, PENDING_STATES
from .metadata import CascadePolicy, RelationKind, entity_info


class EntityStateTracker:
    """Tracks every entity instance known to one session."""

    def __init__(
        self,
        default_cascade: CascadePolicy = CascadePolicy.RESTRICT,
        auto_detect_changes: bool = True,
        session_id: Optional[str] = None,
    ):
        self.default_cascade = CascadePolicy(default_cascade)
        self.auto_detect_changes = auto_detect_changes
        # Insertion ordered; tracking order breaks ties in commit ordering
        self._entries: Dict[Tuple[type, Any], EntityEntry] = {}
        self._by_instance: Dict[int, EntityEntry] = {}
        self._disposed = False
        self.logger = get_logger("tracker", session_id=session_id)

    @property
    def disposed(self) -> bool:
        return self._disposed

    def ensure_active(self) -> None:
        if self._disposed:
            raise SessionDisposedError("Change tracker has been disposed")

    def __len__(self) -> int:
        self.ensure_active()
        return len(self._entries)

    def __contains__(self, entity: Any) -> bool:
        return self.entry(entity) is not None

    # --- Lookups ---

    def find(self, entity_type: type, key: Any) -> Optional[EntityEntry]:
        """Entry for (entity_type, key) from the identity map."""
        self.ensure_active()
        info = entity_info(entity_type)
        return self._entries.get((info.entity_type, info.normalize_key(key)))

    def entry(self, entity: Any) -> Optional[EntityEntry]:
        """Entry tracking this exact instance, or None."""
        self.ensure_active()
        return self._by_instance.get(id(entity))

    def state_of(self, entity: Any) -> EntityState:
        entry = self.entry(entity)
        return entry.state if entry is not None else EntityState.DETACHED

    def entries(self, *states: EntityState) -> List[EntityEntry]:
        self.ensure_active()
        if not states:
            return list(self._entries.values())
        return [e for e in self._entries.values() if e._state in states]

    def has_changes(self) -> bool:
        self.ensure_active()
        if self.auto_detect_changes:
            self.detect_changes()
        return any(e._state in PENDING_STATES for e in self._entries.values())

    def _require(self, entity: Any) -> EntityEntry:
        entry = self.entry(entity)
        if entry is None:
            raise InvalidStateError(
                f"{type(entity).__name__} instance is not tracked (DETACHED)"
            )
        return entry

    def _remove(self, entry: EntityEntry) -> None:
        self._entries.pop(entry.identity, None)
        self._by_instance.pop(id(entry._entity), None)
        entry._state = EntityState.DETACHED
        entry.owned = {}

    # --- Registration ---

    def track(self, entity: Any, state: EntityState = EntityState.UNCHANGED) -> EntityEntry:
        """
        Register entity in the given state.

        Tracking an instance that is already tracked returns its existing
        entry unchanged, whatever state is requested.
        """
        self.ensure_active()
        state = EntityState(state)
        if state not in (EntityState.UNCHANGED, EntityState.ADDED, EntityState.MODIFIED):
            raise InvalidStateError(f"Cannot start tracking an entity as {state.value}")

        info = entity_info(type(entity))
        existing = self._by_instance.get(id(entity))
        if existing is not None:
            return existing

        key = info.key_of(entity)
        if (info.entity_type, key) in self._entries:
            raise DuplicateKeyError(
                f"Another {info.name} instance with key {key!r} is already tracked",
                detail={"entity": info.name, "key": key},
            )

        entry = EntityEntry(self, entity, info, key, state)
        if state == EntityState.MODIFIED:
            entry._forced_fields = set(info.value_fields)
        self._entries[entry.identity] = entry
        self._by_instance[id(entity)] = entry
        self.logger.debug(f"Tracking {entry!r}")
        return entry

    def track_loaded(self, entity_type: type, record: Dict[str, Any]) -> Any:
        """
        Materialize a store record and its nested relation records.

        Keys already in the identity map resolve to the tracked instance, whose
        field values are kept; new keys are tracked as UNCHANGED.
        """
        self.ensure_active()
        info = entity_info(entity_type)
        entry = self._entries.get((info.entity_type, info.key_from_values(record)))
        if entry is None:
            entity = info.entity_type(**{f: record[f] for f in info.scalar_fields if f in record})
            entry = self.track(entity, EntityState.UNCHANGED)
        entity = entry._entity

        for name, relation in info.relations.items():
            if name not in record:
                continue
            related = record[name]
            if relation.uselist:
                value = [self.track_loaded(relation.target, r) for r in related or []]
            else:
                value = self.track_loaded(relation.target, related) if related is not None else None
            setattr(entity, name, value)
        return entity

    def attach(self, entity: Any, unchanged: bool = False) -> EntityEntry:
        """
        Register an instance built outside this session.

        Every non-key field is marked modified whether or not it differs from
        the stored row, so the resulting update overwrites the full row. Pass
        unchanged=True to start tracking it as UNCHANGED instead.
        """
        self.ensure_active()
        existing = self._by_instance.get(id(entity))
        if existing is None:
            return self.track(entity, EntityState.UNCHANGED if unchanged else EntityState.MODIFIED)
        if unchanged or existing._state == EntityState.ADDED:
            return existing
        if existing._state == EntityState.DELETED:
            raise InvalidStateError(f"Cannot attach {existing!r} as modified; it is marked for deletion")
        existing._state = EntityState.MODIFIED
        existing._forced_fields = set(existing.info.value_fields)
        return existing

    def detach(self, entity: Any) -> None:
        """Stop tracking entity; untracked entities are ignored."""
        entry = self.entry(entity)
        if entry is not None:
            self._remove(entry)
            self.logger.debug(f"Detached {entry.info.name}({entry._key!r})")

    def clear(self) -> None:
        self.ensure_active()
        for entry in list(self._entries.values()):
            self._remove(entry)

    # --- State transitions ---

    def mark_modified(self, entity: Any) -> EntityEntry:
        """UNCHANGED -> MODIFIED with every non-key field forced; no-op when already MODIFIED."""
        entry = self._require(entity)
        if entry._state == EntityState.MODIFIED:
            return entry
        if entry._state != EntityState.UNCHANGED:
            raise InvalidStateError(
                f"Cannot mark {entry!r} as modified",
                detail={"state": entry._state.value},
            )
        entry._state = EntityState.MODIFIED
        entry._forced_fields = set(entry.info.value_fields)
        return entry

    def mark_deleted(self, entity: Any) -> EntityEntry:
        """
        Mark entity DELETED, applying cascade policies to its tracked dependents.

        Restrict violations are found before any state changes. ADDED entries
        are removed immediately since they were never persisted.
        """
        entry = self._require(entity)
        if entry._state == EntityState.DELETED:
            return entry

        plan: List[EntityEntry] = []
        self._plan_delete(entry, plan, set())

        for target in plan:
            if target._state == EntityState.ADDED:
                self._remove(target)
            else:
                target._state = EntityState.DELETED
                target._forced_fields = set()
        if len(plan) > 1:
            self.logger.debug(f"Delete of {entry.info.name}({entry._key!r}) cascaded to {len(plan) - 1} entries")
        return entry

    def _plan_delete(self, entry: EntityEntry, plan: List[EntityEntry], seen: Set[int]) -> None:
        seen.add(id(entry))
        plan.append(entry)
        self._link_owned(entry)
        for name, dependents in entry.owned.items():
            live = [d for d in dependents if d._state != EntityState.DELETED and id(d) not in seen]
            if not live:
                continue
            relation = entry.info.relations[name]
            policy = relation.cascade or self.default_cascade
            if policy == CascadePolicy.RESTRICT:
                raise CascadeViolationError(
                    f"Cannot delete {entry.info.name}({entry._key!r}): "
                    f"{len(live)} tracked {relation.target.__name__} dependents via '{name}'",
                    detail={"relation": name, "dependents": [d._key for d in live]},
                )
            for dependent in live:
                if id(dependent) not in seen:
                    self._plan_delete(dependent, plan, seen)

    def _link_owned(self, entry: EntityEntry) -> None:
        """
        Refresh entry.owned: tracked dependents per one-to-many relation.

        A dependent's foreign key decides ownership. Membership in the loaded
        collection only counts for dependents whose foreign key is unset.
        """
        entry.owned = {}
        for relation in entry.info.relations.values():
            if not relation.owns_dependents:
                continue
            parent_values = tuple(getattr(entry._entity, f, None) for f in relation.local_fields)
            loaded = getattr(entry._entity, relation.name, None)
            if not relation.uselist:
                loaded = [loaded] if loaded is not None else []
            loaded_ids = {id(e) for e in loaded or []}

            owned = []
            for candidate in self._entries.values():
                if candidate.entity_type is not relation.target or candidate is entry:
                    continue
                fk = tuple(getattr(candidate._entity, f, None) for f in relation.remote_fields)
                if any(v is None for v in fk):
                    if id(candidate._entity) in loaded_ids:
                        owned.append(candidate)
                elif fk == parent_values:
                    owned.append(candidate)
            entry.owned[relation.name] = owned

    # --- Change detection ---

    def diff(self, entity: Any) -> Set[str]:
        """Changed field names; an UNCHANGED entry with changes becomes MODIFIED."""
        return self._diff_entry(self._require(entity))

    def _diff_entry(self, entry: EntityEntry) -> Set[str]:
        changed = entry.changed_fields()
        if entry._state != EntityState.ADDED and changed & set(entry.info.key_fields):
            raise InvalidStateError(
                f"Primary key of {entry!r} changed; detach it and add a new instance instead"
            )
        if changed and entry._state == EntityState.UNCHANGED:
            entry._state = EntityState.MODIFIED
            self.logger.debug(f"{entry.info.name}({entry._key!r}) modified: {sorted(changed)}")
        return changed

    def detect_changes(self) -> None:
        self.ensure_active()
        for entry in list(self._entries.values()):
            if entry._state in (EntityState.UNCHANGED, EntityState.MODIFIED):
                self._diff_entry(entry)
            elif entry._state == EntityState.ADDED and entry.info.key_of(entry._entity) != entry._key:
                raise InvalidStateError(f"Primary key of {entry!r} changed after it was added")

    def changes_for(self, entry: EntityEntry) -> Set[str]:
        """Fields an update of a MODIFIED entry must write."""
        return (entry.changed_fields() | entry._forced_fields) - set(entry.info.key_fields)

    # --- Commit support ---

    def entries_for_commit(self) -> List[EntityEntry]:
        """
        Pending entries in write order: inserts parents first, then updates,
        then deletes children first.
        """
        self.ensure_active()
        if self.auto_detect_changes:
            self.detect_changes()
        added = self.entries(EntityState.ADDED)
        modified = self.entries(EntityState.MODIFIED)
        deleted = self.entries(EntityState.DELETED)
        return (
            self._dependency_order(added, parents_first=True)
            + modified
            + self._dependency_order(deleted, parents_first=False)
        )

    def _dependency_order(self, entries: List[EntityEntry], parents_first: bool) -> List[EntityEntry]:
        index = {e.identity: e for e in entries}
        parents: Dict[Tuple[type, Any], Set[Tuple[type, Any]]] = {e.identity: set() for e in entries}
        for e in entries:
            for relation, parent_key in e.info.parent_keys(e._entity):
                identity = (relation.target, parent_key)
                if identity in index and identity != e.identity:
                    parents[e.identity].add(identity)
            for relation in e.info.relations.values():
                if relation.kind != RelationKind.MANY_TO_ONE:
                    continue
                parent_entry = self._by_instance.get(id(getattr(e._entity, relation.name, None)))
                if parent_entry is not None and parent_entry is not e and parent_entry.identity in index:
                    parents[e.identity].add(parent_entry.identity)

        if parents_first:
            blockers = parents
        else:
            blockers = {identity: set() for identity in parents}
            for child, its_parents in parents.items():
                for parent in its_parents:
                    blockers[parent].add(child)

        ordered: List[EntityEntry] = []
        done: Set[Tuple[type, Any]] = set()
        pending = list(entries)
        while pending:
            for e in pending:
                if blockers[e.identity] <= done:
                    ordered.append(e)
                    done.add(e.identity)
                    pending.remove(e)
                    break
            else:
                raise InvalidStateError(
                    "Cyclic dependency between pending entries",
                    detail={"entries": [repr(e) for e in pending]},
                )
        return ordered

    def accept_changes(self, entries: List[EntityEntry]) -> None:
        """Finalize entries after a successful commit."""
        self.ensure_active()
        for entry in entries:
            if entry._state in (EntityState.ADDED, EntityState.MODIFIED):
                entry._state = EntityState.UNCHANGED
                entry.refresh_snapshot()
            elif entry._state == EntityState.DELETED:
                self._remove(entry)

    def reject_changes(self) -> None:
        """
        Discard pending work: drop ADDED entries, restore the rest to their snapshots.

        Only scalar fields are restored. Relation attributes reassigned during
        the session keep their current value.
        """
        self.ensure_active()
        for entry in list(self._entries.values()):
            if entry._state == EntityState.ADDED:
                self._remove(entry)
            elif entry._state != EntityState.UNCHANGED or entry.changed_fields():
                entry.restore_snapshot()
                entry._state = EntityState.UNCHANGED

    def dispose(self) -> None:
        if self._disposed:
            return
        for entry in list(self._entries.values()):
            self._remove(entry)
        self._disposed = True
