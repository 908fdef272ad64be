"""
datacore: change tracking, query specifications and unit of work over a pluggable store.
"""

from datacore.exceptions import (
    AmbiguousPagingError,
    CascadeViolationError,
    DataAccessError,
    DuplicateKeyError,
    InvalidSpecificationError,
    InvalidStateError,
    NotFoundError,
    SessionDisposedError,
    StoreFailure,
    UnmappedEntityError,
)
from datacore.repository import IRepository, Repository, UnitOfWork
from datacore.specification import OrderBy, Paging, Query, SortDirection, Specification, SpecificationEvaluator
from datacore.store import InMemoryDatabase, InMemoryStore, Store, Write, WriteKind
from datacore.tracking import CascadePolicy, EntityEntry, EntityState, EntityStateTracker

__version__ = "1.0.0"

__all__ = [
    "AmbiguousPagingError",
    "CascadeViolationError",
    "DataAccessError",
    "DuplicateKeyError",
    "InvalidSpecificationError",
    "InvalidStateError",
    "NotFoundError",
    "SessionDisposedError",
    "StoreFailure",
    "UnmappedEntityError",
    "IRepository",
    "Repository",
    "UnitOfWork",
    "OrderBy",
    "Paging",
    "Query",
    "SortDirection",
    "Specification",
    "SpecificationEvaluator",
    "InMemoryDatabase",
    "InMemoryStore",
    "Store",
    "Write",
    "WriteKind",
    "CascadePolicy",
    "EntityEntry",
    "EntityState",
    "EntityStateTracker",
]
