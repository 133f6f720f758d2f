"""
Base Service - generic entity lifecycle.

``BaseService`` orchestrates create / find_all / find_one / update / remove /
hard_delete for one entity type. It owns the authorization sequencing; the
entity's persistence is supplied by an injected ``EntityStore``.

Every operation checks the principal's permission on ``resource_type``
before any store primitive runs. A denied check raises ``ForbiddenError``
and nothing is written.

Subclasses set ``resource_type`` and usually override ``build_where_clause``
to search their own columns and merge ``RbacService.get_permission_filters``.
"""

import asyncio
from typing import Any, Dict, Generic, Mapping, Optional, Tuple, TypeVar, Union

from pydantic import BaseModel

from config.settings import AccessSettings, get_settings
from rbac.filters import FieldFilter, FilterOp, OrderBy, QueryFilter, resolve_field
from rbac.permission_types import ActionType, Permission, ResourceType
from rbac.service import RbacService
from security.api_errors import ForbiddenError, NotFoundError

from .entity_store import EntityStore
from .logging_config import get_logger
from .pagination import FilterOptions, PaginatedResult, PaginationOptions

T = TypeVar("T")
CreateT = TypeVar("CreateT")
UpdateT = TypeVar("UpdateT")


class BaseService(Generic[T, CreateT, UpdateT]):
    """
    Permission-checked lifecycle for one entity type.

    Class attributes:
        resource_type: Resource checked for every operation
        search_fields: Columns matched by ``FilterOptions.search``
        enforce_read_scope: When True, ``find_one`` also matches the fetched
            entity against the principal's visibility filter and reports
            out-of-scope entities as not found
    """

    resource_type: ResourceType = None
    search_fields: Tuple[str, ...] = ("name", "description")
    enforce_read_scope: bool = False

    def __init__(
        self,
        store: EntityStore[T],
        rbac: RbacService,
        settings: Optional[AccessSettings] = None,
    ):
        if self.resource_type is None:
            raise TypeError(f"{type(self).__name__} must define resource_type")
        self.store = store
        self.rbac = rbac
        self._settings = settings or get_settings()
        self._logger = get_logger(
            f"{type(self).__module__}.{type(self).__name__}",
            resource=self.resource_type.value,
        )

    @property
    def resource_name(self) -> str:
        return self.resource_type.value

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def create(self, data: CreateT, principal_id: str) -> T:
        await self.check_permission(principal_id, ActionType.CREATE)

        try:
            entity = await self.store.create(self.to_create_data(data), principal_id)
        except Exception as e:
            self._logger.error(f"Failed to create {self.resource_name}: {e}")
            raise

        self._logger.info(f"Created {self.resource_name} with ID: {resolve_field(entity, 'id')}")
        return entity

    async def find_all(
        self,
        principal_id: str,
        pagination: Optional[PaginationOptions] = None,
        filters: Optional[FilterOptions] = None,
    ) -> PaginatedResult[T]:
        """
        List entities a page at a time.

        Only the coarse ``read`` check happens here; row-level visibility comes
        from ``build_where_clause``.
        """
        await self.check_permission(principal_id, ActionType.READ)

        pagination = pagination or PaginationOptions()
        page = pagination.page
        limit = min(pagination.limit or self._settings.default_page_size, self._settings.max_page_size)
        skip = (page - 1) * limit

        try:
            where = await self.build_where_clause(filters, principal_id)
            order_by = self.build_order_by(pagination)
            data, total = await self._find_and_count(where, order_by, skip, limit)
        except Exception as e:
            self._logger.error(f"Failed to list {self.resource_name}s: {e}")
            raise

        return PaginatedResult.build(data, total, page, limit)

    async def _find_and_count(
        self, where: QueryFilter, order_by: OrderBy, skip: int, limit: int
    ) -> Tuple[list, int]:
        """Run the page query and the count concurrently; a failure cancels the other."""
        rows = asyncio.ensure_future(self.store.find_many(where, order_by, skip, limit))
        total = asyncio.ensure_future(self.store.count(where))
        try:
            data, count = await asyncio.gather(rows, total)
        except BaseException:
            for task in (rows, total):
                task.cancel()
            await asyncio.gather(rows, total, return_exceptions=True)
            raise
        return data, count

    async def find_one(self, entity_id: str, principal_id: str) -> T:
        await self.check_permission(principal_id, ActionType.READ)

        try:
            entity = await self.store.find_unique(entity_id)
        except Exception as e:
            self._logger.error(f"Failed to find {self.resource_name} with ID {entity_id}: {e}")
            raise

        if entity is None:
            self._logger.warning(f"{self.resource_name} not found: {entity_id}")
            raise NotFoundError(self.resource_name, entity_id)

        await self.check_resource_access(entity, principal_id)
        return entity

    async def update(self, entity_id: str, data: UpdateT, principal_id: str) -> T:
        await self.check_permission(principal_id, ActionType.UPDATE)
        await self.find_one(entity_id, principal_id)

        try:
            entity = await self.store.update(entity_id, self.to_update_data(data), principal_id)
        except Exception as e:
            self._logger.error(f"Failed to update {self.resource_name} with ID {entity_id}: {e}")
            raise

        self._logger.info(f"Updated {self.resource_name} with ID: {entity_id}")
        return entity

    async def remove(self, entity_id: str, principal_id: str) -> None:
        """Soft delete: the entity disappears from every default read."""
        await self.check_permission(principal_id, ActionType.DELETE)
        await self.find_one(entity_id, principal_id)

        try:
            await self.store.soft_delete(entity_id, principal_id)
        except Exception as e:
            self._logger.error(f"Failed to delete {self.resource_name} with ID {entity_id}: {e}")
            raise

        self._logger.info(f"Soft deleted {self.resource_name} with ID: {entity_id}")

    async def hard_delete(self, entity_id: str, principal_id: str) -> None:
        """Physical removal. Irreversible."""
        await self.check_permission(principal_id, ActionType.DELETE)
        await self.find_one(entity_id, principal_id)

        try:
            await self.store.hard_delete(entity_id)
        except Exception as e:
            self._logger.error(f"Failed to hard delete {self.resource_name} with ID {entity_id}: {e}")
            raise

        self._logger.info(f"Hard deleted {self.resource_name} with ID: {entity_id}")

    # =========================================================================
    # OVERRIDABLE HOOKS
    # =========================================================================

    async def build_where_clause(
        self,
        filters: Optional[FilterOptions] = None,
        principal_id: Optional[str] = None,
    ) -> QueryFilter:
        """Live rows, optional search over ``search_fields`` and a created_at window."""
        nodes = [FieldFilter("deleted_at", FilterOp.IS_NULL, True)]

        if filters is not None:
            if filters.search:
                nodes.append(QueryFilter.either(*[
                    FieldFilter(field, FilterOp.CONTAINS, filters.search)
                    for field in self.search_fields
                ]))
            if filters.start_date:
                nodes.append(FieldFilter("created_at", FilterOp.GTE, filters.start_date))
            if filters.end_date:
                nodes.append(FieldFilter("created_at", FilterOp.LTE, filters.end_date))

        return QueryFilter.where(*nodes)

    async def scoped_where_clause(
        self,
        filters: Optional[FilterOptions],
        principal_id: Optional[str],
    ) -> QueryFilter:
        """``build_where_clause`` narrowed by the principal's visibility filter."""
        base = await BaseService.build_where_clause(self, filters, principal_id)
        scope = await self.rbac.get_permission_filters(principal_id, self.resource_type)
        return base.merge(scope)

    def build_order_by(self, pagination: Optional[PaginationOptions] = None) -> OrderBy:
        if pagination is None:
            return OrderBy()
        return OrderBy(pagination.sort_by or "created_at", pagination.sort_order or "desc")

    async def check_permission(self, principal_id: str, action: ActionType) -> None:
        allowed = await self.rbac.has_permission(principal_id, Permission(self.resource_type, action))
        if not allowed:
            raise ForbiddenError(
                f"Insufficient permissions for {action.value} on {self.resource_name}",
                resource=self.resource_name,
                action=action.value,
            )

    async def check_resource_access(self, entity: T, principal_id: str) -> None:
        """
        Access check on a fetched entity.

        Entities created by someone else need the ``read`` permission again
        (coarse: conditions are not evaluated). With ``enforce_read_scope``
        the entity must also fall inside the principal's visibility filter.
        """
        owner_id = resolve_field(entity, "created_by_id")
        if owner_id is not None and owner_id != principal_id:
            allowed = await self.rbac.has_permission(
                principal_id, Permission(self.resource_type, ActionType.READ)
            )
            if not allowed:
                raise ForbiddenError("You do not have access to this resource")

        if self.enforce_read_scope:
            scope = await self.rbac.get_permission_filters(principal_id, self.resource_type)
            if not scope.matches(entity):
                raise NotFoundError(self.resource_name, resolve_field(entity, "id"))

    def to_create_data(self, data: Union[CreateT, Mapping[str, Any]]) -> Dict[str, Any]:
        if isinstance(data, BaseModel):
            return data.model_dump(exclude_none=True)
        return dict(data)

    def to_update_data(self, data: Union[UpdateT, Mapping[str, Any]]) -> Dict[str, Any]:
        if isinstance(data, BaseModel):
            return data.model_dump(exclude_unset=True)
        return dict(data)
