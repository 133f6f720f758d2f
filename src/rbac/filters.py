"""
Storage-agnostic query filters.

``RbacService.get_permission_filters`` and ``BaseService.build_where_clause``
produce ``QueryFilter`` values; entity stores translate them into their own
query language (see ``services.entity_store.compile_filter``).
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Tuple, Union


class FilterOp(str, Enum):
    EQ = "eq"
    NE = "ne"
    IN = "in"
    NIN = "nin"
    CONTAINS = "contains"  # case-insensitive substring
    GTE = "gte"
    LTE = "lte"
    IS_NULL = "is_null"


_MISSING = object()


def resolve_field(record: Any, path: str, default: Any = None) -> Any:
    """Read a dotted path from a mapping or an object, ``default`` if absent."""
    current = record
    for key in path.split("."):
        if current is None:
            return default
        if isinstance(current, Mapping):
            current = current.get(key, _MISSING)
        else:
            current = getattr(current, key, _MISSING)
        if current is _MISSING:
            return default
    return current


def _comparable(value: Any) -> Any:
    if isinstance(value, datetime) and value.tzinfo is not None:
        return value.replace(tzinfo=None)
    return value


@dataclass(frozen=True)
class FieldFilter:
    """Single ``field <op> value`` clause."""
    field: str
    op: FilterOp
    value: Any = None

    def __post_init__(self):
        if not isinstance(self.op, FilterOp):
            object.__setattr__(self, "op", FilterOp(self.op))
        if isinstance(self.value, (list, set, frozenset)):
            object.__setattr__(self, "value", tuple(self.value))

    def matches(self, record: Any) -> bool:
        actual = resolve_field(record, self.field)
        if self.op == FilterOp.EQ:
            return actual == self.value
        if self.op == FilterOp.NE:
            return actual != self.value
        if self.op == FilterOp.IN:
            return actual in self.value
        if self.op == FilterOp.NIN:
            return actual not in self.value
        if self.op == FilterOp.CONTAINS:
            return actual is not None and str(self.value).lower() in str(actual).lower()
        if self.op == FilterOp.GTE:
            return actual is not None and _comparable(actual) >= _comparable(self.value)
        if self.op == FilterOp.LTE:
            return actual is not None and _comparable(actual) <= _comparable(self.value)
        if self.op == FilterOp.IS_NULL:
            return (actual is None) == bool(self.value)
        return False


FilterNode = Union[FieldFilter, "QueryFilter"]


@dataclass(frozen=True)
class QueryFilter:
    """
    Boolean filter tree.

    Every node in ``all_of`` must hold, and at least one node in ``any_of``
    must hold when ``any_of`` is non-empty. ``match_nothing`` short-circuits
    to an always-false filter (used for fail-closed results).
    """
    all_of: Tuple[FilterNode, ...] = ()
    any_of: Tuple[FilterNode, ...] = ()
    match_nothing: bool = False

    @classmethod
    def unrestricted(cls) -> "QueryFilter":
        return cls()

    @classmethod
    def nothing(cls) -> "QueryFilter":
        return cls(match_nothing=True)

    @classmethod
    def where(cls, *nodes: FilterNode) -> "QueryFilter":
        return cls(all_of=tuple(nodes))

    @classmethod
    def either(cls, *nodes: FilterNode) -> "QueryFilter":
        return cls(any_of=tuple(nodes))

    @property
    def is_unrestricted(self) -> bool:
        return not self.match_nothing and not self.all_of and not self.any_of

    def merge(self, *others: "QueryFilter") -> "QueryFilter":
        """AND this filter with ``others``; unrestricted operands are dropped."""
        filters = [self, *others]
        if any(f.match_nothing for f in filters):
            return QueryFilter.nothing()
        parts = [f for f in filters if not f.is_unrestricted]
        if not parts:
            return QueryFilter.unrestricted()
        if len(parts) == 1:
            return parts[0]
        return QueryFilter(all_of=tuple(parts))

    def matches(self, record: Any) -> bool:
        """Evaluate against an in-memory record (mapping or object)."""
        if self.match_nothing:
            return False
        if not all(node.matches(record) for node in self.all_of):
            return False
        if self.any_of and not any(node.matches(record) for node in self.any_of):
            return False
        return True


@dataclass(frozen=True)
class OrderBy:
    """Single-column ordering."""
    field: str = "created_at"
    direction: str = "desc"

    def __post_init__(self):
        direction = (self.direction or "desc").lower()
        if direction not in ("asc", "desc"):
            raise ValueError(f"Invalid sort direction: {self.direction!r}")
        object.__setattr__(self, "direction", direction)
