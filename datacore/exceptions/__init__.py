from .errors import (
    DataAccessError,
    NotFoundError,
    DuplicateKeyError,
    InvalidStateError,
    CascadeViolationError,
    InvalidSpecificationError,
    AmbiguousPagingError,
    SessionDisposedError,
    UnmappedEntityError,
    StoreFailure,
)
from .handler import ErrorResponse, error_payload

__all__ = [
    "DataAccessError",
    "NotFoundError",
    "DuplicateKeyError",
    "InvalidStateError",
    "CascadeViolationError",
    "InvalidSpecificationError",
    "AmbiguousPagingError",
    "SessionDisposedError",
    "UnmappedEntityError",
    "StoreFailure",
    "ErrorResponse",
    "error_payload",
]
