"""
Data access error taxonomy.

State-machine and specification errors are raised before any store I/O;
store errors always surface as StoreFailure chained to the original exception.
"""

from typing import Any


class DataAccessError(Exception):
    """Base class for data access errors."""
    code: int = 400

    def __init__(self, message: str, code: int = None, detail: Any = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.detail = detail


class NotFoundError(DataAccessError):
    """Key lookup miss."""
    code = 404


class DuplicateKeyError(DataAccessError):
    """Another instance with the same key is already tracked, or the key is already added."""
    code = 409


class InvalidStateError(DataAccessError):
    """Requested state transition is not legal for the entry's current state."""
    code = 409


class CascadeViolationError(DataAccessError):
    """Delete blocked by a restrict cascade policy."""
    code = 409


class InvalidSpecificationError(DataAccessError):
    """Specification names an unknown relation or ordering field."""
    code = 400


class AmbiguousPagingError(InvalidSpecificationError):
    """Paging requested without an ordering."""
    code = 400


class SessionDisposedError(DataAccessError):
    """Unit of work, tracker or entry used after dispose."""
    code = 410


class UnmappedEntityError(DataAccessError):
    """Class is not a mapped entity type."""
    code = 400


class StoreFailure(DataAccessError):
    """Underlying store error, timeout or rolled-back batch."""
    code = 503
