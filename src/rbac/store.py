"""
Principal store: the authorization engine's view of users, roles and grants.

``PrincipalStore`` is the contract the engine consumes; the SQLAlchemy
implementation resolves a principal with its role and every granted
permission in a single round trip.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from database.models import Permission as PermissionRow
from database.models import Role, RolePermission, User
from rbac.permission_types import ActionType, Permission, PermissionScope, ResourceType
from security.api_errors import ConflictError, NotFoundError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GrantedPermission:
    """A permission as granted to a role, with its visibility scope."""
    permission_id: str
    resource: ResourceType
    action: ActionType
    scope: PermissionScope = PermissionScope.NONE
    description: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.resource, ResourceType):
            object.__setattr__(self, "resource", ResourceType(self.resource))
        if not isinstance(self.action, ActionType):
            object.__setattr__(self, "action", ActionType(self.action))
        if not isinstance(self.scope, PermissionScope):
            object.__setattr__(self, "scope", PermissionScope(self.scope or PermissionScope.NONE))

    def to_permission(self) -> Permission:
        return Permission(self.resource, self.action)


@dataclass(frozen=True)
class PrincipalRecord:
    """Acting principal resolved together with its role and grants."""
    id: str
    is_active: bool = True
    role_id: Optional[str] = None
    role_name: Optional[str] = None
    team_id: Optional[str] = None
    department: Optional[str] = None
    grants: Tuple[GrantedPermission, ...] = field(default_factory=tuple)

    def grants_for(self, resource: ResourceType) -> List[GrantedPermission]:
        return [g for g in self.grants if g.resource == resource]


class PrincipalStore(ABC):
    """Backing store for principals, team lookups and role grants."""

    @abstractmethod
    async def find_principal(self, principal_id: str) -> Optional[PrincipalRecord]:
        """Return the principal with role and grants, or None if unknown."""

    @abstractmethod
    async def find_team_member_ids(self, principal: PrincipalRecord) -> List[str]:
        """Ids of the principals sharing ``principal``'s team (itself included)."""

    @abstractmethod
    async def find_department_member_ids(self, principal: PrincipalRecord) -> List[str]:
        """Ids of the principals in ``principal``'s department (itself included)."""

    @abstractmethod
    async def assign_permission_to_role(self, role_id: str, permission_id: str) -> None:
        """Insert the role/permission join row."""

    @abstractmethod
    async def remove_permission_from_role(self, role_id: str, permission_id: str) -> None:
        """Delete the role/permission join row."""


class SqlAlchemyPrincipalStore(PrincipalStore):
    """
    ``PrincipalStore`` over the ORM models in ``database.models``.

    Each call opens its own session from ``session_factory``.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def find_principal(self, principal_id: str) -> Optional[PrincipalRecord]:
        stmt = (
            select(User)
            .where(User.id == principal_id)
            .options(
                selectinload(User.role)
                .selectinload(Role.permissions)
                .selectinload(RolePermission.permission)
            )
        )
        async with self._session_factory() as session:
            user = (await session.execute(stmt)).scalar_one_or_none()
            if user is None:
                return None
            return self._to_record(user)

    async def find_team_member_ids(self, principal: PrincipalRecord) -> List[str]:
        if principal.team_id is None:
            return [principal.id]
        stmt = select(User.id).where(
            User.team_id == principal.team_id,
            User.is_active.is_(True),
        )
        async with self._session_factory() as session:
            ids = list((await session.execute(stmt)).scalars())
        if principal.id not in ids:
            ids.append(principal.id)
        return ids

    async def find_department_member_ids(self, principal: PrincipalRecord) -> List[str]:
        if not principal.department:
            return [principal.id]
        stmt = select(User.id).where(
            User.department == principal.department,
            User.is_active.is_(True),
        )
        async with self._session_factory() as session:
            ids = list((await session.execute(stmt)).scalars())
        if principal.id not in ids:
            ids.append(principal.id)
        return ids

    async def assign_permission_to_role(self, role_id: str, permission_id: str) -> None:
        async with self._session_factory() as session:
            session.add(RolePermission(role_id=role_id, permission_id=permission_id))
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                logger.warning(
                    f"Role/permission assignment rejected: {role_id} -> {permission_id}: {e.orig}"
                )
                raise ConflictError("role permission", "permission_id", permission_id) from e

    async def remove_permission_from_role(self, role_id: str, permission_id: str) -> None:
        stmt = delete(RolePermission).where(
            RolePermission.role_id == role_id,
            RolePermission.permission_id == permission_id,
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
        if result.rowcount == 0:
            raise NotFoundError("role permission", f"{role_id}:{permission_id}")

    @staticmethod
    def _to_record(user: User) -> PrincipalRecord:
        grants: List[GrantedPermission] = []
        role = user.role
        if role is not None:
            for link in role.permissions:
                row: PermissionRow = link.permission
                try:
                    grants.append(GrantedPermission(
                        permission_id=row.id,
                        resource=row.resource,
                        action=row.action,
                        scope=row.scope,
                        description=row.description,
                    ))
                except ValueError:
                    logger.warning(f"Skipping unknown permission {row.resource}:{row.action}")
        return PrincipalRecord(
            id=user.id,
            is_active=bool(user.is_active),
            role_id=role.id if role is not None else None,
            role_name=role.name if role is not None else None,
            team_id=user.team_id,
            department=user.department,
            grants=tuple(grants),
        )
