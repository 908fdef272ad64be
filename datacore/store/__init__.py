"""
Store boundary: the contract the data access core consumes, plus an in-memory implementation.
"""

from .base import Store, Write, WriteKind, call_store
from .memory import ConstraintViolation, InMemoryDatabase, InMemoryStore, StoreClosedError

__all__ = [
    "Store",
    "Write",
    "WriteKind",
    "call_store",
    "ConstraintViolation",
    "InMemoryDatabase",
    "InMemoryStore",
    "StoreClosedError",
]
