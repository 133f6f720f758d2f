"""Pytest configuration and fixtures for test suite."""

import os
import sys
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional
from uuid import uuid4

import pytest
import pytest_asyncio

# Set test environment BEFORE any other imports
os.environ.setdefault("DB_DRIVER", "sqlite+aiosqlite")

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))

from config.database import DatabaseSettings
from config.settings import AccessSettings
from rbac.filters import OrderBy, QueryFilter, resolve_field
from rbac.permission_types import PermissionScope
from rbac.service import RbacService
from rbac.store import GrantedPermission, PrincipalRecord, PrincipalStore
from security.api_errors import ConflictError, NotFoundError
from services.entity_store import EntityStore


# =============================================================================
# IN-MEMORY PRINCIPAL STORE
# =============================================================================

class InMemoryPrincipalStore(PrincipalStore):
    """Dict-backed PrincipalStore that counts lookups and can be made to fail."""

    def __init__(self):
        self.users: Dict[str, Dict[str, Any]] = {}
        self.roles: Dict[str, str] = {}
        self.permissions: Dict[str, GrantedPermission] = {}
        self.role_permissions: Dict[str, List[str]] = {}
        self.lookups = 0
        self.fail_lookups = False

    def add_permission(
        self,
        resource: str,
        action: str,
        description: Optional[str] = None,
        scope: Optional[PermissionScope] = None,
    ) -> str:
        permission_id = f"perm-{resource}-{action}-{len(self.permissions)}"
        self.permissions[permission_id] = GrantedPermission(
            permission_id=permission_id,
            resource=resource,
            action=action,
            scope=scope or PermissionScope.from_description(description),
            description=description,
        )
        return permission_id

    def add_role(self, name: str, *permission_ids: str) -> str:
        role_id = f"role-{name.lower().replace(' ', '-')}"
        self.roles[role_id] = name
        self.role_permissions[role_id] = list(permission_ids)
        return role_id

    def add_user(
        self,
        user_id: str,
        role_id: Optional[str] = None,
        is_active: bool = True,
        team_id: Optional[str] = None,
        department: Optional[str] = None,
    ) -> str:
        self.users[user_id] = {
            "is_active": is_active,
            "role_id": role_id,
            "team_id": team_id,
            "department": department,
        }
        return user_id

    async def find_principal(self, principal_id: str) -> Optional[PrincipalRecord]:
        self.lookups += 1
        if self.fail_lookups:
            raise RuntimeError("principal store unavailable")
        user = self.users.get(principal_id)
        if user is None:
            return None
        role_id = user["role_id"]
        grants = tuple(
            self.permissions[pid] for pid in self.role_permissions.get(role_id, [])
        )
        return PrincipalRecord(
            id=principal_id,
            is_active=user["is_active"],
            role_id=role_id,
            role_name=self.roles.get(role_id),
            team_id=user["team_id"],
            department=user["department"],
            grants=grants,
        )

    async def find_team_member_ids(self, principal: PrincipalRecord) -> List[str]:
        if principal.team_id is None:
            return [principal.id]
        return [
            uid for uid, user in self.users.items()
            if user["team_id"] == principal.team_id and user["is_active"]
        ]

    async def find_department_member_ids(self, principal: PrincipalRecord) -> List[str]:
        if not principal.department:
            return [principal.id]
        return [
            uid for uid, user in self.users.items()
            if user["department"] == principal.department and user["is_active"]
        ]

    async def assign_permission_to_role(self, role_id: str, permission_id: str) -> None:
        grants = self.role_permissions.setdefault(role_id, [])
        if permission_id in grants:
            raise ConflictError("role permission", "permission_id", permission_id)
        grants.append(permission_id)

    async def remove_permission_from_role(self, role_id: str, permission_id: str) -> None:
        grants = self.role_permissions.get(role_id, [])
        if permission_id not in grants:
            raise NotFoundError("role permission", f"{role_id}:{permission_id}")
        grants.remove(permission_id)


# =============================================================================
# IN-MEMORY ENTITY STORE
# =============================================================================

@dataclass
class Note:
    id: str
    name: str
    description: Optional[str] = None
    created_by_id: Optional[str] = None
    assigned_to_id: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)
    deleted_at: Optional[datetime] = None


class InMemoryEntityStore(EntityStore[Note]):
    """Dict-backed EntityStore recording every primitive call."""

    def __init__(self):
        self.rows: Dict[str, Note] = {}
        self.calls: List[str] = []

    def seed(self, count: int, created_by_id: str = "u1", **overrides) -> List[Note]:
        base = datetime(2024, 1, 1)
        notes = []
        for i in range(count):
            note = Note(
                id=f"note-{len(self.rows) + 1}",
                name=f"Note {len(self.rows) + 1}",
                created_by_id=created_by_id,
                created_at=base + timedelta(hours=len(self.rows)),
                **overrides,
            )
            self.rows[note.id] = note
            notes.append(note)
        return notes

    async def create(self, data: Mapping[str, Any], principal_id: str) -> Note:
        self.calls.append("create")
        note = Note(id=str(uuid4()), created_by_id=principal_id, **dict(data))
        self.rows[note.id] = note
        return note

    async def find_many(self, where: QueryFilter, order_by: OrderBy, skip: int, take: int) -> List[Note]:
        self.calls.append("find_many")
        rows = [r for r in self.rows.values() if where.matches(r)]
        rows.sort(
            key=lambda r: (resolve_field(r, order_by.field) is None, resolve_field(r, order_by.field)),
            reverse=order_by.direction == "desc",
        )
        return rows[skip:skip + take]

    async def find_unique(self, entity_id: str) -> Optional[Note]:
        self.calls.append("find_unique")
        row = self.rows.get(entity_id)
        if row is None or row.deleted_at is not None:
            return None
        return row

    async def update(self, entity_id: str, data: Mapping[str, Any], principal_id: str) -> Note:
        self.calls.append("update")
        row = await self.find_unique(entity_id)
        if row is None:
            raise NotFoundError("note", entity_id)
        updated = replace(row, updated_at=datetime.utcnow(), **dict(data))
        self.rows[entity_id] = updated
        return updated

    async def soft_delete(self, entity_id: str, principal_id: str) -> None:
        self.calls.append("soft_delete")
        row = self.rows.get(entity_id)
        if row is None or row.deleted_at is not None:
            raise NotFoundError("note", entity_id)
        row.deleted_at = datetime.utcnow()

    async def hard_delete(self, entity_id: str) -> None:
        self.calls.append("hard_delete")
        if self.rows.pop(entity_id, None) is None:
            raise NotFoundError("note", entity_id)

    async def count(self, where: QueryFilter) -> int:
        self.calls.append("count")
        return sum(1 for r in self.rows.values() if where.matches(r))

    @property
    def mutations(self) -> List[str]:
        return [c for c in self.calls if c in ("create", "update", "soft_delete", "hard_delete")]


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def access_settings():
    """Settings with the permission cache disabled."""
    return AccessSettings(permission_cache_ttl_seconds=0)


@pytest.fixture
def principal_store():
    """
    In-memory principals:

    - admin:    "Super Admin" role, no explicit grants
    - reader:   lead:read (unscoped), deal:read scoped to own records
    - manager:  lead:manage
    - owner:    note create/read/update/delete, note:read scoped to own
    - nobody:   role without grants
    - inactive: reader role, deactivated
    """
    store = InMemoryPrincipalStore()

    lead_read = store.add_permission("lead", "read", "Read leads")
    deal_read_own = store.add_permission("deal", "read", "Read own deals")
    lead_manage = store.add_permission("lead", "manage", "Manage leads")
    note_perms = [
        store.add_permission("note", action, f"{action.capitalize()} notes")
        for action in ("create", "update", "delete")
    ]
    note_read_own = store.add_permission("note", "read", "Read own notes")

    admin_role = store.add_role("Super Admin")
    reader_role = store.add_role("Reader", lead_read, deal_read_own)
    manager_role = store.add_role("Manager", lead_manage)
    owner_role = store.add_role("Owner", note_read_own, *note_perms)
    empty_role = store.add_role("Empty")

    store.add_user("admin", admin_role)
    store.add_user("reader", reader_role)
    store.add_user("manager", manager_role)
    store.add_user("u1", owner_role)
    store.add_user("u2", owner_role)
    store.add_user("nobody", empty_role)
    store.add_user("inactive", reader_role, is_active=False)
    return store


@pytest.fixture
def rbac(principal_store, access_settings):
    return RbacService(principal_store, settings=access_settings)


@pytest.fixture
def entity_store():
    return InMemoryEntityStore()


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """Real SQLite database (aiosqlite) with every table created."""
    from database.async_engine import create_engine, init_database

    engine = create_engine(DatabaseSettings(sqlite_path=tmp_path / "access_core.db"))
    await init_database(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    from database.async_engine import get_session_factory
    return get_session_factory(db_engine)


@dataclass
class CrmWorld:
    """Seeded database: role ids and user ids by name."""
    roles: Dict[str, str]
    users: Dict[str, str]
    permissions: Dict[str, str]


@pytest_asyncio.fixture
async def crm_world(session_factory):
    """
    Seed the default catalogue plus:

    - "Super Admin" role and user ``root``
    - users ``alice`` / ``bob`` with the Manager role, ``carol`` with User
    - "Sales Rep" role holding own-scoped lead/deal read plus lead create,
      lead update and deal create, granted to ``dave``; ``erin`` shares
      dave's team with a team-scoped lead read ("Team Lead" role)
    """
    from database.models import Permission, Role, RolePermission, Team, User
    from rbac.seed import seed_all
    from sqlalchemy import select

    roles = await seed_all(session_factory)

    async with session_factory() as session:
        async with session.begin():
            super_admin = Role(name="Super Admin", description="Bypasses every check")
            rep = Role(name="Sales Rep")
            team_lead = Role(name="Team Lead")
            team = Team(name="East")
            session.add_all([super_admin, rep, team_lead, team])
            await session.flush()

            catalogue = {
                f"{p.resource}:{p.action}": p
                for p in (await session.execute(select(Permission))).scalars()
            }
            lead_read_own = Permission(resource="lead", action="read", scope=PermissionScope.OWN)
            deal_read_own = Permission(resource="deal", action="read", description="Read own deals")
            lead_read_team = Permission(resource="lead", action="read", scope=PermissionScope.TEAM)
            session.add_all([lead_read_own, deal_read_own, lead_read_team])
            await session.flush()

            for permission in (
                lead_read_own,
                deal_read_own,
                catalogue["lead:create"],
                catalogue["lead:update"],
                catalogue["deal:create"],
            ):
                session.add(RolePermission(role_id=rep.id, permission_id=permission.id))
            session.add(RolePermission(role_id=team_lead.id, permission_id=lead_read_team.id))

            users = {
                "root": User(email="root@example.com", role_id=super_admin.id),
                "alice": User(email="alice@example.com", role_id=roles["Manager"].id),
                "bob": User(email="bob@example.com", role_id=roles["Manager"].id),
                "carol": User(email="carol@example.com", role_id=roles["User"].id),
                "dave": User(email="dave@example.com", role_id=rep.id, team_id=team.id),
                "erin": User(email="erin@example.com", role_id=team_lead.id, team_id=team.id),
            }
            session.add_all(users.values())
            await session.flush()

            world = CrmWorld(
                roles={
                    **{name: role.id for name, role in roles.items()},
                    "Super Admin": super_admin.id,
                    "Sales Rep": rep.id,
                    "Team Lead": team_lead.id,
                },
                users={name: user.id for name, user in users.items()},
                permissions={key: p.id for key, p in catalogue.items()},
            )
    return world
