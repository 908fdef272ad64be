"""
Change tracking: entity metadata, entries and the per-session state tracker.
"""

from .metadata import CascadePolicy, EntityInfo, RelationInfo, RelationKind, entity_info
from .entry import EntityEntry, EntityState
from .tracker import EntityStateTracker

__all__ = [
    "CascadePolicy",
    "EntityInfo",
    "RelationInfo",
    "RelationKind",
    "entity_info",
    "EntityEntry",
    "EntityState",
    "EntityStateTracker",
]
