from typing import List, Tuple
from datacore.exceptions import AmbiguousPagingError, InvalidSpecificationError
from datacore.tracking.metadata import EntityInfo, entity_info
from .base import OrderBy, Query, Specification


class SpecificationEvaluator:
    """Applies a Specification to a base Query. Pure: no I/O, no retained state."""

    @staticmethod
    def apply(base_query: Query, spec: Specification) -> Query:
        info = entity_info(base_query.entity_type)

        criteria = base_query.criteria
        if spec.criteria is not None:
            criteria = criteria + (spec.criteria,)

        include_paths = _expand_includes(info, base_query.include_paths, spec.includes)

        ordering = spec.ordering or base_query.ordering
        _check_ordering(info, ordering)

        paging = spec.paging or base_query.paging
        if paging is not None and not ordering:
            raise AmbiguousPagingError(
                f"Paging {info.name} without an ordering is non-deterministic; add order_by()",
                detail={"skip": paging.skip, "take": paging.take},
            )

        return Query(
            entity_type=base_query.entity_type,
            criteria=criteria,
            include_paths=include_paths,
            ordering=ordering,
            paging=paging,
        )


def _expand_includes(info: EntityInfo, existing, includes) -> Tuple[Tuple[str, ...], ...]:
    # "a.b" contributes ("a",) and ("a", "b"); each hop is joined once
    paths: List[Tuple[str, ...]] = list(existing)
    for include in includes:
        parts = tuple(include.split("."))
        current = info
        for depth, name in enumerate(parts):
            relation = current.relations.get(name)
            if relation is None:
                raise InvalidSpecificationError(
                    f"Include '{include}': {current.name} has no relation '{name}'",
                    detail={"include": include, "available": sorted(current.relations)},
                )
            prefix = parts[: depth + 1]
            if prefix not in paths:
                paths.append(prefix)
            current = entity_info(relation.target)
    return tuple(paths)


def _check_ordering(info: EntityInfo, ordering: Tuple[OrderBy, ...]) -> None:
    for key in ordering:
        if key.field not in info.scalar_fields:
            raise InvalidSpecificationError(
                f"Cannot order {info.name} by '{key.field}': not a scalar field",
                detail={"field": key.field, "available": list(info.scalar_fields)},
            )
