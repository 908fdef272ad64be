import asyncio
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Awaitable, Dict, List, Optional, Sequence, TypeVar
from pydantic import BaseModel, ConfigDict, Field
from datacore.exceptions import StoreFailure
from datacore.specification.base import Query

R = TypeVar("R")


class WriteKind(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class Write(BaseModel):
    """
    One store write.

    INSERT carries every scalar value, UPDATE only the changed fields,
    DELETE none; `key` always holds the primary key field values.
    """
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    kind: WriteKind
    entity_type: Any
    key: Dict[str, Any]
    values: Dict[str, Any] = Field(default_factory=dict)


class Store(ABC):
    """One store session: a keyed, queryable record source with atomic batch writes."""

    @abstractmethod
    async def get(self, entity_type: type, key: Any) -> Optional[Dict[str, Any]]:
        """Record for key, or None."""
        pass

    @abstractmethod
    async def query(self, entity_type: type, query: Query) -> List[Dict[str, Any]]:
        """Records matching query, with nested records for each include path."""
        pass

    @abstractmethod
    async def execute_batch(self, writes: Sequence[Write]) -> int:
        """Apply every write or none of them; returns the number applied."""
        pass

    @abstractmethod
    async def close(self) -> None:
        pass


async def call_store(awaitable: Awaitable[R], timeout: Optional[float] = None, operation: str = "store call") -> R:
    """
    Await a store call, surfacing timeouts and store errors as StoreFailure.

    No retries happen here. Cancellation propagates unchanged.
    """
    try:
        if timeout is None:
            return await awaitable
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError as exc:
        raise StoreFailure(
            f"{operation} timed out after {timeout}s",
            detail={"operation": operation, "timeout": timeout},
        ) from exc
    except StoreFailure:
        raise
    except Exception as exc:
        raise StoreFailure(
            f"{operation} failed: {exc}",
            detail={"operation": operation, "error": type(exc).__name__},
        ) from exc
