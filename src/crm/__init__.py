"""
CRM entity services built on the generic lifecycle.

Usage:
    from crm import build_crm_services

    crm = build_crm_services(session_factory, rbac)
    page = await crm.leads.find_all(user_id)
"""

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.settings import AccessSettings
from database.models import Deal, Lead
from rbac.service import RbacService
from services.entity_store import SqlAlchemyEntityStore

from .deals import DealService
from .leads import LeadConversion, LeadService
from .schemas import DealCreate, DealUpdate, LeadCreate, LeadUpdate


@dataclass
class CrmServices:
    leads: LeadService
    deals: DealService


def build_crm_services(
    session_factory: async_sessionmaker[AsyncSession],
    rbac: RbacService,
    settings: Optional[AccessSettings] = None,
) -> CrmServices:
    lead_store = SqlAlchemyEntityStore(Lead, session_factory, "lead")
    deal_store = SqlAlchemyEntityStore(Deal, session_factory, "deal")
    return CrmServices(
        leads=LeadService(lead_store, deal_store, rbac, session_factory, settings),
        deals=DealService(deal_store, rbac, settings),
    )


__all__ = [
    "CrmServices",
    "build_crm_services",
    "LeadService",
    "LeadConversion",
    "DealService",
    "LeadCreate",
    "LeadUpdate",
    "DealCreate",
    "DealUpdate",
]
