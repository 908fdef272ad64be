from .base import OrderBy, Paging, Query, SortDirection, Specification
from .evaluator import SpecificationEvaluator

__all__ = ["OrderBy", "Paging", "Query", "SortDirection", "Specification", "SpecificationEvaluator"]
