"""
RBAC Database Seeding

Seeds the default permission catalogue and the Admin / Manager / User roles.
Re-running is safe: existing permissions, roles and grants are left alone.

Usage:
    python -m rbac.seed
"""

import asyncio
import logging
from typing import Dict, List, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.models import Permission, Role, RolePermission
from rbac.permission_types import ActionType, PermissionScope, ResourceType

logger = logging.getLogger(__name__)


CRUD_ACTIONS = (ActionType.CREATE, ActionType.READ, ActionType.UPDATE, ActionType.DELETE)

SEEDED_RESOURCES: Dict[ResourceType, str] = {
    ResourceType.USER: "users",
    ResourceType.ROLE: "roles",
    ResourceType.PERMISSION: "permissions",
    ResourceType.CONTACT: "contacts",
    ResourceType.COMPANY: "companies",
    ResourceType.LEAD: "leads",
    ResourceType.DEAL: "deals",
}

CRM_RESOURCES = (ResourceType.CONTACT, ResourceType.COMPANY, ResourceType.LEAD, ResourceType.DEAL)

ROLES: Dict[str, str] = {
    "Admin": "System Administrator",
    "Manager": "Sales Manager",
    "User": "Regular User",
}


def default_permissions() -> List[Tuple[str, str, str]]:
    """``(resource, action, description)`` for CRUD on every seeded resource."""
    return [
        (resource.value, action.value, f"{action.value.capitalize()} {plural}")
        for resource, plural in SEEDED_RESOURCES.items()
        for action in CRUD_ACTIONS
    ]


def role_grants(role_name: str, permissions: List[Permission]) -> List[Permission]:
    """Permissions each default role receives."""
    if role_name == "Admin":
        return list(permissions)
    if role_name == "Manager":
        crm = {r.value for r in CRM_RESOURCES}
        return [p for p in permissions if p.resource in crm]
    if role_name == "User":
        return [p for p in permissions if p.action == ActionType.READ.value]
    return []


async def seed_permissions(session: AsyncSession) -> List[Permission]:
    stmt = select(Permission).where(Permission.scope == PermissionScope.NONE.value)
    existing = {
        (p.resource, p.action): p
        for p in (await session.execute(stmt)).scalars()
    }
    created = 0
    for resource, action, description in default_permissions():
        if (resource, action) in existing:
            continue
        permission = Permission(resource=resource, action=action, description=description)
        session.add(permission)
        existing[(resource, action)] = permission
        created += 1
    await session.flush()
    logger.info(f"Seeded {created} permissions ({len(existing)} total)")
    return list(existing.values())


async def seed_roles(session: AsyncSession) -> Dict[str, Role]:
    roles = {r.name: r for r in (await session.execute(select(Role))).scalars()}
    for name, description in ROLES.items():
        if name not in roles:
            role = Role(name=name, description=description)
            session.add(role)
            roles[name] = role
    await session.flush()
    return roles


async def seed_role_permissions(
    session: AsyncSession,
    roles: Dict[str, Role],
    permissions: List[Permission],
) -> int:
    existing = {
        (rp.role_id, rp.permission_id)
        for rp in (await session.execute(select(RolePermission))).scalars()
    }
    created = 0
    for name in ROLES:
        role = roles[name]
        for permission in role_grants(name, permissions):
            if (role.id, permission.id) in existing:
                continue
            session.add(RolePermission(role_id=role.id, permission_id=permission.id))
            existing.add((role.id, permission.id))
            created += 1
    await session.flush()
    logger.info(f"Seeded {created} role grants")
    return created


async def seed_all(session_factory: async_sessionmaker[AsyncSession]) -> Dict[str, Role]:
    """Seed permissions, roles and grants in one transaction."""
    async with session_factory() as session:
        async with session.begin():
            permissions = await seed_permissions(session)
            roles = await seed_roles(session)
            await seed_role_permissions(session, roles, permissions)
    return roles


async def _main() -> None:
    from database.async_engine import get_async_engine, get_session_factory, init_database
    from services.logging_config import configure_logging

    configure_logging()
    engine = get_async_engine()
    await init_database(engine)
    await seed_all(get_session_factory(engine))
    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(_main())
