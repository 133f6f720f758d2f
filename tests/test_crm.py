"""Integration tests for the lead and deal services over SQLite."""

import asyncio
from decimal import Decimal
from unittest.mock import patch

import pytest
import pytest_asyncio
from pydantic import ValidationError
from sqlalchemy import func, select

from crm import DealCreate, DealUpdate, LeadCreate, LeadUpdate, build_crm_services
from crm.leads import CONVERTED_DEAL_PROBABILITY
from database.models import Deal, DealStage, LeadStatus
from rbac.service import RbacService
from rbac.store import SqlAlchemyPrincipalStore
from security.api_errors import APIError, ErrorCode, ForbiddenError, NotFoundError
from services.entity_store import SqlAlchemyEntityStore
from services.pagination import FilterOptions, PaginationOptions


@pytest.fixture
def crm(session_factory, crm_world, access_settings):
    rbac = RbacService(SqlAlchemyPrincipalStore(session_factory), settings=access_settings)
    return build_crm_services(session_factory, rbac, access_settings)


@pytest_asyncio.fixture
async def leads(crm, crm_world):
    """
    - acme:   created by alice, unassigned
    - globex: created by alice, assigned to dave
    - initech: created by dave
    """
    users = crm_world.users
    acme = await crm.leads.create(
        LeadCreate(title="Acme renewal", value=Decimal("1500.00"), priority="HIGH", source="web"),
        users["alice"],
    )
    globex = await crm.leads.create(
        LeadCreate(title="Globex upsell", assigned_to_id=users["dave"], description="Second seat"),
        users["alice"],
    )
    initech = await crm.leads.create(
        LeadCreate(title="Initech pilot", value=Decimal("900"), priority="LOW", company_id="co-1"),
        users["dave"],
    )
    return {"acme": acme, "globex": globex, "initech": initech}


async def deal_count(session_factory) -> int:
    async with session_factory() as session:
        return (await session.execute(select(func.count()).select_from(Deal))).scalar_one()


class TestLeadCreation:
    """Tests for LeadService.create."""

    @pytest.mark.asyncio
    async def test_defaults(self, leads, crm_world):
        acme = leads["acme"]
        assert acme.status == LeadStatus.NEW.value
        assert acme.priority == "HIGH"
        assert acme.created_by_id == crm_world.users["alice"]

    @pytest.mark.asyncio
    async def test_read_only_role_cannot_create(self, crm, crm_world):
        with pytest.raises(ForbiddenError):
            await crm.leads.create(LeadCreate(title="Nope"), crm_world.users["carol"])

    def test_input_validation(self):
        with pytest.raises(ValidationError):
            LeadCreate(title="")
        with pytest.raises(ValidationError):
            LeadCreate(title="x", unknown_field=1)


class TestLeadVisibility:
    """Tests for scoped lead listing and lookup."""

    @pytest.mark.asyncio
    async def test_own_scope(self, crm, crm_world, leads):
        """Should list leads the rep created or is assigned to."""
        page = await crm.leads.find_all(crm_world.users["dave"])
        assert page.meta.total == 2
        assert {lead.title for lead in page.data} == {"Globex upsell", "Initech pilot"}

    @pytest.mark.asyncio
    async def test_team_scope(self, crm, crm_world, leads):
        """Should list the leads owned by or assigned to team members."""
        page = await crm.leads.find_all(crm_world.users["erin"])
        assert {lead.title for lead in page.data} == {"Globex upsell", "Initech pilot"}

    @pytest.mark.parametrize("name", ["root", "alice", "carol"])
    @pytest.mark.asyncio
    async def test_unrestricted(self, crm, crm_world, leads, name):
        page = await crm.leads.find_all(crm_world.users[name])
        assert page.meta.total == 3

    @pytest.mark.asyncio
    async def test_newest_first(self, crm, crm_world, leads):
        page = await crm.leads.find_all(crm_world.users["alice"], PaginationOptions(limit=2))
        assert [lead.title for lead in page.data] == ["Initech pilot", "Globex upsell"]
        assert page.meta.has_next

    @pytest.mark.asyncio
    async def test_filters(self, crm, crm_world, leads):
        alice = crm_world.users["alice"]

        by_search = await crm.leads.find_all(alice, filters=FilterOptions(search="seat"))
        assert [lead.title for lead in by_search.data] == ["Globex upsell"]

        by_priority = await crm.leads.find_all(alice, filters=FilterOptions(priority="low"))
        assert [lead.title for lead in by_priority.data] == ["Initech pilot"]

        by_assignee = await crm.leads.find_all(
            alice, filters=FilterOptions(assigned_to_id=crm_world.users["dave"])
        )
        assert [lead.title for lead in by_assignee.data] == ["Globex upsell"]

        by_status = await crm.leads.find_all(alice, filters=FilterOptions(status="qualified"))
        assert by_status.meta.total == 0

    @pytest.mark.asyncio
    async def test_out_of_scope_lead_is_not_found(self, crm, crm_world, leads):
        """Should not reveal leads outside the principal's scope."""
        with pytest.raises(NotFoundError):
            await crm.leads.find_one(leads["acme"].id, crm_world.users["dave"])
        found = await crm.leads.find_one(leads["globex"].id, crm_world.users["dave"])
        assert found.title == "Globex upsell"

    @pytest.mark.asyncio
    async def test_no_read_grant(self, crm, crm_world, leads, session_factory):
        """Should refuse principals whose role holds nothing on leads."""
        from database.models import Role, User

        async with session_factory() as session:
            role = Role(name="Intern")
            session.add(role)
            await session.flush()
            intern = User(email="intern@example.com", role_id=role.id)
            session.add(intern)
            await session.commit()

        with pytest.raises(ForbiddenError):
            await crm.leads.find_all(intern.id)
        with pytest.raises(ForbiddenError):
            await crm.leads.find_one(leads["acme"].id, intern.id)


class TestLeadUpdates:
    """Tests for lead update and deletion."""

    @pytest.mark.asyncio
    async def test_partial_update(self, crm, crm_world, leads):
        updated = await crm.leads.update(
            leads["initech"].id, LeadUpdate(status="CONTACTED"), crm_world.users["dave"]
        )
        assert updated.status == "CONTACTED"
        assert updated.title == "Initech pilot"

    @pytest.mark.asyncio
    async def test_update_outside_scope(self, crm, crm_world, leads):
        with pytest.raises(NotFoundError):
            await crm.leads.update(leads["acme"].id, {"title": "Hijacked"}, crm_world.users["dave"])
        acme = await crm.leads.find_one(leads["acme"].id, crm_world.users["alice"])
        assert acme.title == "Acme renewal"

    @pytest.mark.asyncio
    async def test_soft_delete(self, crm, crm_world, leads):
        alice = crm_world.users["alice"]
        await crm.leads.remove(leads["acme"].id, alice)

        with pytest.raises(NotFoundError):
            await crm.leads.find_one(leads["acme"].id, alice)
        assert (await crm.leads.find_all(alice)).meta.total == 2

    @pytest.mark.asyncio
    async def test_rep_cannot_delete(self, crm, crm_world, leads):
        with pytest.raises(ForbiddenError):
            await crm.leads.remove(leads["initech"].id, crm_world.users["dave"])


class TestConvertToDeal:
    """Tests for LeadService.convert_to_deal."""

    @pytest.mark.asyncio
    async def test_conversion(self, crm, crm_world, leads):
        """Should create a prospecting deal from the lead and mark it converted."""
        dave = crm_world.users["dave"]
        result = await crm.leads.convert_to_deal(leads["initech"].id, dave)

        assert result.lead.status == LeadStatus.CONVERTED.value
        deal = result.deal
        assert deal.title == "Initech pilot"
        assert deal.lead_id == leads["initech"].id
        assert deal.company_id == "co-1"
        assert deal.value == Decimal("900")
        assert deal.priority == "LOW"
        assert deal.stage == DealStage.PROSPECTING.value
        assert deal.probability == CONVERTED_DEAL_PROBABILITY
        assert deal.created_by_id == dave

        stored = await crm.deals.find_one(deal.id, dave)
        assert stored.lead_id == leads["initech"].id
        assert (await crm.leads.find_one(leads["initech"].id, dave)).status == "CONVERTED"

    @pytest.mark.asyncio
    async def test_assignee_carried_over(self, crm, crm_world, leads):
        result = await crm.leads.convert_to_deal(leads["globex"].id, crm_world.users["dave"])
        assert result.deal.assigned_to_id == crm_world.users["dave"]
        assert result.deal.value == 0

    @pytest.mark.asyncio
    async def test_already_converted(self, crm, crm_world, leads, session_factory):
        dave = crm_world.users["dave"]
        await crm.leads.convert_to_deal(leads["initech"].id, dave)

        with pytest.raises(APIError) as exc_info:
            await crm.leads.convert_to_deal(leads["initech"].id, dave)
        assert exc_info.value.code is ErrorCode.BUSINESS_RULE_VIOLATION
        assert exc_info.value.status_code == 400
        assert await deal_count(session_factory) == 1

    @pytest.mark.asyncio
    async def test_concurrent_conversions_create_one_deal(self, crm, crm_world, leads, session_factory):
        """Should let only one of two simultaneous conversions of a lead succeed."""
        alice = crm_world.users["alice"]
        acme_id = leads["acme"].id

        results = await asyncio.gather(
            crm.leads.convert_to_deal(acme_id, alice),
            crm.leads.convert_to_deal(acme_id, alice),
            return_exceptions=True,
        )

        converted = [r for r in results if not isinstance(r, BaseException)]
        failed = [r for r in results if isinstance(r, BaseException)]
        assert len(converted) == 1
        assert len(failed) == 1
        assert isinstance(failed[0], APIError)
        assert failed[0].code is ErrorCode.BUSINESS_RULE_VIOLATION

        async with session_factory() as session:
            deals = (await session.execute(select(Deal).where(Deal.lead_id == acme_id))).scalars().all()
        assert len(deals) == 1
        assert deals[0].id == converted[0].deal.id

    @pytest.mark.asyncio
    async def test_status_claim_refuses_converted_lead(self, crm, crm_world, leads, session_factory):
        """Should refuse inside the transaction when the lead is already converted."""
        alice = crm_world.users["alice"]
        acme_id = leads["acme"].id
        await crm.leads.store.update(acme_id, {"status": LeadStatus.CONVERTED.value}, alice)

        stale = await crm.leads.store.find_unique(acme_id)
        stale.status = LeadStatus.NEW.value
        with patch.object(SqlAlchemyEntityStore, "find_unique", return_value=stale):
            with pytest.raises(APIError) as exc_info:
                await crm.leads.convert_to_deal(acme_id, alice)

        assert exc_info.value.code is ErrorCode.BUSINESS_RULE_VIOLATION
        assert await deal_count(session_factory) == 0

    @pytest.mark.asyncio
    async def test_forbidden(self, crm, crm_world, leads, session_factory):
        """Should refuse principals lacking lead:update or deal:create."""
        with pytest.raises(ForbiddenError):
            await crm.leads.convert_to_deal(leads["acme"].id, crm_world.users["carol"])
        with pytest.raises(ForbiddenError):
            await crm.leads.convert_to_deal("missing", crm_world.users["erin"])
        assert await deal_count(session_factory) == 0

    @pytest.mark.asyncio
    async def test_missing_or_out_of_scope(self, crm, crm_world, leads):
        dave = crm_world.users["dave"]
        with pytest.raises(NotFoundError):
            await crm.leads.convert_to_deal("missing", dave)
        with pytest.raises(NotFoundError):
            await crm.leads.convert_to_deal(leads["acme"].id, dave)

    @pytest.mark.asyncio
    async def test_failure_rolls_back(self, crm, crm_world, leads, session_factory):
        """Should leave the lead unconverted when the deal insert fails."""
        with patch.object(SqlAlchemyEntityStore, "create", side_effect=RuntimeError("boom")):
            with pytest.raises(RuntimeError, match="boom"):
                await crm.leads.convert_to_deal(leads["initech"].id, crm_world.users["dave"])

        assert await deal_count(session_factory) == 0
        lead = await crm.leads.find_one(leads["initech"].id, crm_world.users["dave"])
        assert lead.status == LeadStatus.NEW.value


class TestDeals:
    """Tests for DealService."""

    @pytest.mark.asyncio
    async def test_own_scope_and_stage_filter(self, crm, crm_world, leads):
        dave, alice = crm_world.users["dave"], crm_world.users["alice"]
        await crm.leads.convert_to_deal(leads["initech"].id, dave)
        await crm.deals.create(DealCreate(title="Umbrella expansion", stage="PROPOSAL", probability=60), alice)

        assert (await crm.deals.find_all(dave)).meta.total == 1
        assert (await crm.deals.find_all(alice)).meta.total == 2

        proposals = await crm.deals.find_all(alice, filters=FilterOptions(stage="proposal"))
        assert [deal.title for deal in proposals.data] == ["Umbrella expansion"]

        from_lead = await crm.deals.find_all(alice, filters=FilterOptions(lead_id=leads["initech"].id))
        assert [deal.title for deal in from_lead.data] == ["Initech pilot"]

    @pytest.mark.asyncio
    async def test_update_deal(self, crm, crm_world):
        alice = crm_world.users["alice"]
        deal = await crm.deals.create(DealCreate(title="Hooli"), alice)
        assert deal.stage == DealStage.PROSPECTING.value

        updated = await crm.deals.update(deal.id, DealUpdate(stage="NEGOTIATION", probability=80), alice)
        assert updated.stage == "NEGOTIATION"
        assert updated.probability == 80

    @pytest.mark.asyncio
    async def test_rep_cannot_see_others_deal(self, crm, crm_world):
        deal = await crm.deals.create(DealCreate(title="Hooli"), crm_world.users["alice"])
        with pytest.raises(NotFoundError):
            await crm.deals.find_one(deal.id, crm_world.users["dave"])

    def test_probability_bounds(self):
        with pytest.raises(ValidationError):
            DealCreate(title="x", probability=150)
