"""
Pagination and filter inputs for list operations, and the paginated result.

Inputs are pydantic models so transports can validate query parameters
directly; results are plain dataclasses.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, Generic, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

T = TypeVar("T")


class PaginationOptions(BaseModel):
    """Page selection and ordering for ``find_all``."""

    page: int = Field(default=1, ge=1, description="1-based page number")
    limit: Optional[int] = Field(
        default=None,
        ge=1,
        description="Page size; defaults to AccessSettings.default_page_size, capped at max_page_size",
    )
    sort_by: Optional[str] = Field(default=None, description="Column to order by")
    sort_order: Optional[str] = Field(default=None, description="asc or desc")

    @field_validator("sort_order")
    @classmethod
    def _normalize_sort_order(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip().lower()
        if value not in ("asc", "desc"):
            raise ValueError("sort_order must be 'asc' or 'desc'")
        return value


class FilterOptions(BaseModel):
    """
    Generic list filters.

    Entity services may read additional keys (e.g. ``stage``) which are kept
    as extra fields.
    """

    model_config = ConfigDict(extra="allow")

    search: Optional[str] = None
    status: Optional[str] = None
    is_active: Optional[bool] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    @model_validator(mode="after")
    def _check_date_range(self) -> "FilterOptions":
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ValueError("start_date must not be after end_date")
        return self

    def extra(self, key: str, default: Any = None) -> Any:
        return (self.model_extra or {}).get(key, default)


@dataclass(frozen=True)
class PaginationMeta:
    total: int
    page: int
    limit: int
    total_pages: int
    has_next: bool
    has_prev: bool

    @classmethod
    def build(cls, total: int, page: int, limit: int) -> "PaginationMeta":
        total_pages = math.ceil(total / limit) if limit else 0
        return cls(
            total=total,
            page=page,
            limit=limit,
            total_pages=total_pages,
            has_next=page < total_pages,
            has_prev=page > 1,
        )


@dataclass
class PaginatedResult(Generic[T]):
    data: List[T] = field(default_factory=list)
    meta: Optional[PaginationMeta] = None

    @classmethod
    def build(cls, data: List[T], total: int, page: int, limit: int) -> "PaginatedResult[T]":
        return cls(data=list(data), meta=PaginationMeta.build(total, page, limit))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "data": self.data,
            "meta": asdict(self.meta) if self.meta else None,
        }
