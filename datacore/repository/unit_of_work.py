"""
Unit of Work: owns one store session, caches repositories and commits atomically.
"""

import asyncio
import uuid
from typing import Dict, List, Optional, Type
from datacore.config import Settings, settings as default_settings
from datacore.exceptions import SessionDisposedError, StoreFailure
from datacore.logging.logger import bind_session, get_logger, unbind_session
from datacore.store.base import Store, Write, WriteKind, call_store
from datacore.tracking import CascadePolicy, EntityEntry, EntityState, EntityStateTracker
from .base import Repository


class UnitOfWork:
    """
    Manages one store session, its change tracker and one repository per entity type.

    Not safe for concurrent use: one unit of work serves one logical
    transaction and must not be shared between concurrently running tasks.
    """

    def __init__(
        self,
        store: Optional[Store] = None,
        settings: Optional[Settings] = None,
        cascade_policy: Optional[CascadePolicy] = None,
    ):
        """Initialize UnitOfWork; store must be provided (e.g. UnitOfWork.from_store())."""
        if store is None:
            raise ValueError("Store must be provided. Use UnitOfWork.from_store() or pass store explicitly.")

        self.settings = settings or default_settings
        self.session_id = uuid.uuid4().hex[:12]
        self.store = store
        self.tracker = EntityStateTracker(
            default_cascade=cascade_policy or CascadePolicy(self.settings.DEFAULT_CASCADE_POLICY),
            auto_detect_changes=self.settings.AUTO_DETECT_CHANGES,
            session_id=self.session_id,
        )
        self.timeout = self.settings.STORE_TIMEOUT_SECONDS
        self.logger = get_logger("unit_of_work", session_id=self.session_id)
        self._repositories: Dict[type, Repository] = {}
        self._repository_classes: Dict[type, Type[Repository]] = {}
        self._disposed = False
        self._log_token = None

    @classmethod
    async def from_store(cls, store: Store, **kwargs) -> "UnitOfWork":
        """Create UnitOfWork from an existing store session."""
        return cls(store=store, **kwargs)

    @property
    def disposed(self) -> bool:
        return self._disposed

    def _ensure_active(self) -> None:
        if self._disposed:
            raise SessionDisposedError(f"Unit of work {self.session_id} has been disposed")

    # --- Repositories ---

    def register_repository(self, entity_type: type, repo_class: Type[Repository]) -> None:
        """Use repo_class for entity_type; must happen before the repository is first requested."""
        self._ensure_active()
        if entity_type in self._repositories:
            raise ValueError(f"Repository for {entity_type.__name__} already created in this unit of work")
        self._repository_classes[entity_type] = repo_class

    def repository(self, entity_type: type) -> Repository:
        """Get or create the repository for entity_type (one per unit of work)."""
        self._ensure_active()
        repository = self._repositories.get(entity_type)
        if repository is None:
            repo_class = self._repository_classes.get(entity_type, Repository)
            repository = repo_class(self.store, self.tracker, entity_type, timeout=self.timeout)
            self._repositories[entity_type] = repository
        return repository

    # --- Transaction boundary ---

    def has_changes(self) -> bool:
        self._ensure_active()
        return self.tracker.has_changes()

    def _write_for(self, entry: EntityEntry) -> Optional[Write]:
        info = entry.info
        key = info.key_values(entry.key)
        if entry.state == EntityState.ADDED:
            return Write(kind=WriteKind.INSERT, entity_type=info.entity_type, key=key,
                         values=info.values(entry.entity, info.value_fields))
        if entry.state == EntityState.MODIFIED:
            fields = self.tracker.changes_for(entry)
            if not fields:
                return None
            return Write(kind=WriteKind.UPDATE, entity_type=info.entity_type, key=key,
                         values=info.values(entry.entity, sorted(fields)))
        return Write(kind=WriteKind.DELETE, entity_type=info.entity_type, key=key)

    async def commit(self) -> int:
        """
        Send every pending change as one atomic batch; returns the number of writes.

        On failure or cancellation no entry changes state.
        """
        self._ensure_active()
        entries = self.tracker.entries_for_commit()
        writes: List[Write] = []
        for entry in entries:
            write = self._write_for(entry)
            if write is not None:
                writes.append(write)

        if not writes:
            # Modified entries with nothing to write still count as saved
            self.tracker.accept_changes(entries)
            return 0

        try:
            applied = await call_store(self.store.execute_batch(writes), self.timeout, "commit")
        except StoreFailure as exc:
            self.logger.error(f"Commit failed, batch of {len(writes)} writes rolled back: {exc.message}")
            raise
        except asyncio.CancelledError:
            self.logger.warning(f"Commit of {len(writes)} writes cancelled")
            raise

        self.tracker.accept_changes(entries)
        self.logger.info(f"Committed {len(writes)} writes")
        return applied

    async def rollback(self) -> None:
        """Discard pending changes held by the tracker."""
        self._ensure_active()
        self.tracker.reject_changes()

    async def dispose(self) -> None:
        """Release the store session; later use raises SessionDisposedError."""
        if self._disposed:
            return
        self._disposed = True
        self._repositories.clear()
        self.tracker.dispose()
        await self.store.close()
        self.logger.debug("Unit of work disposed")

    async def __aenter__(self):
        self._ensure_active()
        self._log_token = bind_session(self.session_id)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        try:
            if self._disposed:
                return
            if exc_type is not None:
                await self.rollback()
            else:
                await self.commit()
        finally:
            await self.dispose()
            if self._log_token is not None:
                unbind_session(self._log_token)
                self._log_token = None
