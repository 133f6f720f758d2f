"""
Services Module - generic entity lifecycle for the access core.

- BaseService: permission-checked create/find/update/delete orchestration
- EntityStore / SqlAlchemyEntityStore: persistence primitives
- PaginationOptions / FilterOptions / PaginatedResult: list inputs and output
- logging_config: structured logging setup
"""

from .pagination import FilterOptions, PaginatedResult, PaginationMeta, PaginationOptions
from .entity_store import EntityStore, SqlAlchemyEntityStore, compile_filter
from .base_service import BaseService

__all__ = [
    "BaseService",
    "EntityStore",
    "SqlAlchemyEntityStore",
    "compile_filter",
    "FilterOptions",
    "PaginatedResult",
    "PaginationMeta",
    "PaginationOptions",
]
