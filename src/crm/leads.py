"""
Lead service.

Leads are listed within the principal's visibility scope and can be
converted into a deal. Conversion claims the lead with a conditional
``CONVERTED`` status update and writes the new deal in the same
transaction, so a lead yields at most one deal.
"""

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.settings import AccessSettings
from database.models import Deal, DealStage, Lead, LeadStatus
from database.transaction import TransactionManager
from rbac.filters import FieldFilter, FilterOp, QueryFilter
from rbac.permission_types import ActionType, Permission, ResourceType
from rbac.service import RbacService
from security.api_errors import APIError, ErrorCode, ForbiddenError, NotFoundError
from services.base_service import BaseService
from services.entity_store import SqlAlchemyEntityStore
from services.pagination import FilterOptions

from .schemas import LeadCreate, LeadUpdate

CONVERTED_DEAL_PROBABILITY = 25


@dataclass
class LeadConversion:
    lead: Lead
    deal: Deal


class LeadService(BaseService[Lead, LeadCreate, LeadUpdate]):
    resource_type = ResourceType.LEAD
    search_fields = ("title", "description", "source")
    enforce_read_scope = True

    def __init__(
        self,
        store: SqlAlchemyEntityStore[Lead],
        deal_store: SqlAlchemyEntityStore[Deal],
        rbac: RbacService,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Optional[AccessSettings] = None,
    ):
        super().__init__(store, rbac, settings)
        self.deal_store = deal_store
        self._session_factory = session_factory

    async def build_where_clause(
        self,
        filters: Optional[FilterOptions] = None,
        principal_id: Optional[str] = None,
    ) -> QueryFilter:
        where = await self.scoped_where_clause(filters, principal_id)
        if filters is None:
            return where

        nodes = []
        if filters.status:
            nodes.append(FieldFilter("status", FilterOp.EQ, filters.status.upper()))
        if filters.is_active is not None:
            nodes.append(FieldFilter("is_active", FilterOp.EQ, filters.is_active))
        if filters.extra("priority"):
            nodes.append(FieldFilter("priority", FilterOp.EQ, str(filters.extra("priority")).upper()))
        if filters.extra("assigned_to_id"):
            nodes.append(FieldFilter("assigned_to_id", FilterOp.EQ, filters.extra("assigned_to_id")))
        return where.merge(QueryFilter.where(*nodes))

    async def convert_to_deal(self, lead_id: str, principal_id: str) -> LeadConversion:
        """
        Turn a lead into a deal.

        Requires ``lead:update`` and ``deal:create``. The deal inherits the
        lead's title, contact, company, assignee, value, priority, expected
        close date and description, starting at PROSPECTING with 25%
        probability.

        Raises:
            ForbiddenError: Missing permission (checked before any lookup).
            NotFoundError: Lead absent, soft-deleted or outside the principal's scope.
            APIError: Lead already converted.
        """
        can_update = await self.rbac.has_permission(
            principal_id, Permission(ResourceType.LEAD, ActionType.UPDATE)
        )
        can_create_deal = await self.rbac.has_permission(
            principal_id, Permission(ResourceType.DEAL, ActionType.CREATE)
        )
        if not can_update or not can_create_deal:
            raise ForbiddenError("Insufficient permissions to convert lead to deal")

        lead = await self.store.find_unique(lead_id)
        if lead is None:
            raise NotFoundError(self.resource_name, lead_id)
        await self.check_resource_access(lead, principal_id)

        if lead.status == LeadStatus.CONVERTED.value:
            raise APIError(ErrorCode.BUSINESS_RULE_VIOLATION, "Lead has already been converted")

        deal_data = {
            "title": lead.title,
            "lead_id": lead.id,
            "contact_id": lead.contact_id,
            "company_id": lead.company_id,
            "assigned_to_id": lead.assigned_to_id,
            "value": lead.value or 0,
            "stage": DealStage.PROSPECTING.value,
            "probability": CONVERTED_DEAL_PROBABILITY,
            "priority": lead.priority,
            "expected_close_date": lead.expected_close_date,
            "description": lead.description,
        }

        not_converted = QueryFilter.where(
            FieldFilter("status", FilterOp.NE, LeadStatus.CONVERTED.value)
        )
        try:
            async with TransactionManager(self._session_factory) as session:
                # Claim the lead first; a concurrent conversion finds no row to claim.
                lead = await self.store.bound_to(session).update_where(
                    lead_id, not_converted, {"status": LeadStatus.CONVERTED.value}, principal_id
                )
                if lead is None:
                    raise APIError(ErrorCode.BUSINESS_RULE_VIOLATION, "Lead has already been converted")
                deal = await self.deal_store.bound_to(session).create(deal_data, principal_id)
        except APIError:
            raise
        except Exception as e:
            self._logger.error(f"Failed to convert lead {lead_id}: {e}")
            raise

        self._logger.info(f"Lead converted to deal: {lead.title} -> {deal.id}")
        return LeadConversion(lead=lead, deal=deal)
