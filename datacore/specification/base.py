"""
Specifications: immutable descriptions of a filtered, shaped query.

A specification can be built inline:

    Specification(criteria=lambda e: e.age > 30, includes=["department"]).order_by("name")

or declared once as a named subclass with preset fields:

    class EmployeesWithDepartment(Specification):
        includes: Tuple[str, ...] = ("department",)
"""

from enum import Enum
from typing import Any, Callable, Iterable, Optional, Tuple, Union
from pydantic import BaseModel, ConfigDict, Field, field_validator

Criteria = Callable[[Any], bool]


class SortDirection(str, Enum):
    ASC = "asc"
    DESC = "desc"


class OrderBy(BaseModel):
    """One sort key."""
    model_config = ConfigDict(frozen=True)

    field: str
    direction: SortDirection = SortDirection.ASC

    @property
    def descending(self) -> bool:
        return self.direction == SortDirection.DESC


class Paging(BaseModel):
    """Skip/take window; only valid together with an ordering."""
    model_config = ConfigDict(frozen=True)

    skip: int = Field(default=0, ge=0)
    take: int = Field(gt=0)


OrderingItem = Union[OrderBy, str, Tuple[str, str]]


def collapse_paths(paths: Union[str, Iterable[str]]) -> Tuple[str, ...]:
    """Strip and de-duplicate include paths, keeping first-seen order."""
    if isinstance(paths, str):
        paths = (paths,)
    collapsed = []
    for path in paths:
        path = path.strip()
        if path and path not in collapsed:
            collapsed.append(path)
    return tuple(collapsed)


def to_order_by(item: OrderingItem) -> OrderBy:
    """OrderBy from an OrderBy, a field name ('-name' for descending) or a (field, direction) pair."""
    if isinstance(item, OrderBy):
        return item
    if isinstance(item, str):
        if item.startswith("-"):
            return OrderBy(field=item[1:], direction=SortDirection.DESC)
        return OrderBy(field=item)
    field, direction = item
    return OrderBy(field=field, direction=SortDirection(direction))


class Specification(BaseModel):
    """Criteria, eager includes, ordering and paging for one entity type."""
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    criteria: Optional[Criteria] = None
    includes: Tuple[str, ...] = ()
    ordering: Tuple[OrderBy, ...] = ()
    paging: Optional[Paging] = None

    @field_validator("includes", mode="before")
    @classmethod
    def _collapse_includes(cls, value):
        return collapse_paths(value or ())

    @field_validator("ordering", mode="before")
    @classmethod
    def _normalize_ordering(cls, value):
        if isinstance(value, (str, OrderBy)):
            value = (value,)
        return tuple(to_order_by(item) for item in value or ())

    def where(self, criteria: Criteria) -> "Specification":
        """New specification whose criteria also require `criteria`."""
        if self.criteria is None:
            combined = criteria
        else:
            first = self.criteria

            def combined(entity):
                return first(entity) and criteria(entity)

        return self.model_copy(update={"criteria": combined})

    def include(self, *paths: str) -> "Specification":
        return self.model_copy(update={"includes": collapse_paths(self.includes + paths)})

    def order_by(self, field: str, direction: Union[SortDirection, str] = SortDirection.ASC) -> "Specification":
        """Append a sort key; the first key added is the primary one."""
        key = OrderBy(field=field, direction=SortDirection(direction))
        return self.model_copy(update={"ordering": self.ordering + (key,)})

    def order_by_descending(self, field: str) -> "Specification":
        return self.order_by(field, SortDirection.DESC)

    def page(self, skip: int, take: int) -> "Specification":
        return self.model_copy(update={"paging": Paging(skip=skip, take=take)})


class Query(BaseModel):
    """
    Refined query description handed to a store.

    include_paths holds every relation hop once, parents before nested hops,
    e.g. ("department",), ("department", "projects").
    """
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    entity_type: Any
    criteria: Tuple[Criteria, ...] = ()
    include_paths: Tuple[Tuple[str, ...], ...] = ()
    ordering: Tuple[OrderBy, ...] = ()
    paging: Optional[Paging] = None

    @classmethod
    def of(cls, entity_type: type) -> "Query":
        """Base query: every record of entity_type."""
        return cls(entity_type=entity_type)

    def matches(self, entity: Any) -> bool:
        return all(predicate(entity) for predicate in self.criteria)

    def without_shape(self) -> "Query":
        """Same filter with no includes, ordering or paging; used for counting."""
        return self.model_copy(update={"include_paths": (), "ordering": (), "paging": None})
