"""Deal service."""

from typing import Optional

from database.models import Deal
from rbac.filters import FieldFilter, FilterOp, QueryFilter
from rbac.permission_types import ResourceType
from services.base_service import BaseService
from services.pagination import FilterOptions

from .schemas import DealCreate, DealUpdate


class DealService(BaseService[Deal, DealCreate, DealUpdate]):
    resource_type = ResourceType.DEAL
    search_fields = ("title", "description")
    enforce_read_scope = True

    async def build_where_clause(
        self,
        filters: Optional[FilterOptions] = None,
        principal_id: Optional[str] = None,
    ) -> QueryFilter:
        where = await self.scoped_where_clause(filters, principal_id)
        if filters is None:
            return where

        nodes = []
        stage = filters.extra("stage") or filters.status
        if stage:
            nodes.append(FieldFilter("stage", FilterOp.EQ, str(stage).upper()))
        if filters.extra("lead_id"):
            nodes.append(FieldFilter("lead_id", FilterOp.EQ, filters.extra("lead_id")))
        if filters.extra("assigned_to_id"):
            nodes.append(FieldFilter("assigned_to_id", FilterOp.EQ, filters.extra("assigned_to_id")))
        return where.merge(QueryFilter.where(*nodes))
