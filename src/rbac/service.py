"""
Authorization engine.

``RbacService`` answers permission and role-name checks for a principal,
derives the visibility filter applied to list queries, and mutates role
grants.

Resolution order for a check:
1. Resolve the principal with role and grants (cached); unknown or inactive
   principals hold nothing.
2. Super-admin role names bypass every check.
3. The principal needs an exact ``(resource, action)`` grant or
   ``(resource, manage)``.
4. Conditions on the check are evaluated (AND) only when resource data is
   supplied.

Lookup failures never escape: they are logged and the engine answers with a
denial (``False``, ``[]`` or a match-nothing filter).
"""

from __future__ import annotations

import logging
from typing import (
    Any, Awaitable, Callable, Iterable, List, Optional, Sequence, TypeVar, Union,
)

from config.settings import AccessSettings, get_settings
from rbac.cache import PermissionCache
from rbac.filters import FieldFilter, FilterOp, QueryFilter, resolve_field
from rbac.permission_types import (
    ActionType,
    ConditionOperator,
    Permission,
    PermissionCheck,
    PermissionCondition,
    PermissionScope,
    ResourceType,
)
from rbac.store import PrincipalRecord, PrincipalStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

MemberResolver = Callable[[PrincipalRecord], Awaitable[List[str]]]

OWNER_FIELD = "created_by_id"
ASSIGNEE_FIELD = "assigned_to_id"


class RbacService:
    """
    Role-based permission evaluation over a ``PrincipalStore``.

    Args:
        store: Backing principal/role/permission store
        settings: Access settings (super-admin names, cache sizing)
        cache: Explicit principal cache; built from settings when omitted
        team_resolver: Returns the member ids of a principal's team;
            defaults to ``store.find_team_member_ids``
        department_resolver: Same for departments
    """

    def __init__(
        self,
        store: PrincipalStore,
        settings: Optional[AccessSettings] = None,
        cache: Optional[PermissionCache] = None,
        team_resolver: Optional[MemberResolver] = None,
        department_resolver: Optional[MemberResolver] = None,
    ):
        settings = settings or get_settings()
        self._store = store
        self._super_admin_roles = frozenset(settings.super_admin_roles)
        if cache is None and settings.cache_enabled:
            cache = PermissionCache(
                maxsize=settings.permission_cache_size,
                ttl_seconds=settings.permission_cache_ttl_seconds,
            )
        self._cache = cache
        self._team_resolver = team_resolver or store.find_team_member_ids
        self._department_resolver = department_resolver or store.find_department_member_ids

    @property
    def cache(self) -> Optional[PermissionCache]:
        return self._cache

    # =========================================================================
    # CHECKS
    # =========================================================================

    async def has_permission(
        self,
        principal_id: Optional[str],
        check: PermissionCheck,
        resource_data: Optional[Any] = None,
    ) -> bool:
        """
        Check whether the principal may perform ``check``.

        Declared conditions are only evaluated when ``resource_data`` is
        given; without it a matching grant is enough.
        """
        try:
            principal = await self._resolve_principal(principal_id)
            if principal is None:
                logger.debug(f"Permission denied for unknown principal {principal_id}: {check}")
                return False

            if self.is_super_admin(principal):
                return True

            if not self._holds_grant(principal, check):
                logger.debug(f"Permission denied for {principal_id}: {check}")
                return False

            if check.conditions and resource_data is not None:
                allowed = await self._evaluate_conditions(check.conditions, resource_data, principal)
                if not allowed:
                    logger.debug(f"Conditions not met for {principal_id}: {check}")
                return allowed

            return True
        except Exception as e:
            logger.error(f"Error checking permission {check} for {principal_id}: {e}", exc_info=True)
            return False

    async def has_any_permission(
        self,
        principal_id: Optional[str],
        checks: Iterable[PermissionCheck],
        resource_data: Optional[Any] = None,
    ) -> bool:
        """OR over ``has_permission``; stops at the first granted check."""
        for check in checks:
            if await self.has_permission(principal_id, check, resource_data):
                return True
        return False

    async def has_all_permissions(
        self,
        principal_id: Optional[str],
        checks: Iterable[PermissionCheck],
        resource_data: Optional[Any] = None,
    ) -> bool:
        """AND over ``has_permission``; stops at the first denied check."""
        for check in checks:
            if not await self.has_permission(principal_id, check, resource_data):
                return False
        return True

    async def get_user_permissions(self, principal_id: Optional[str]) -> List[Permission]:
        """Flattened permissions granted through the principal's role."""
        try:
            principal = await self._resolve_principal(principal_id)
        except Exception as e:
            logger.error(f"Error getting permissions for {principal_id}: {e}", exc_info=True)
            return []
        if principal is None:
            return []
        return [grant.to_permission() for grant in principal.grants]

    async def has_role(self, principal_id: Optional[str], role_names: Iterable[str]) -> bool:
        """
        Check whether the principal's role name is one of ``role_names``.

        Role names are compared exactly; super admins get no bypass here.
        """
        try:
            principal = await self._resolve_principal(principal_id)
        except Exception as e:
            logger.error(f"Error resolving role for {principal_id}: {e}", exc_info=True)
            return False
        if principal is None or principal.role_name is None:
            return False
        return principal.role_name in set(role_names)

    # =========================================================================
    # QUERY SCOPING
    # =========================================================================

    async def get_permission_filters(
        self,
        principal_id: Optional[str],
        resource: Union[ResourceType, str],
    ) -> QueryFilter:
        """
        Visibility filter for list/read queries on ``resource``.

        Unknown principal: matches nothing. Super admin: unrestricted.
        Otherwise the narrowest scope among the principal's grants on the
        resource wins (own, then team, then department); grants without a
        scope leave the listing unrestricted.
        """
        try:
            resource = ResourceType(resource)
            principal = await self._resolve_principal(principal_id)
            if principal is None:
                return QueryFilter.nothing()

            if self.is_super_admin(principal):
                return QueryFilter.unrestricted()

            scopes = {grant.scope for grant in principal.grants_for(resource)}

            if PermissionScope.OWN in scopes:
                return self.ownership_filter([principal.id])

            if PermissionScope.TEAM in scopes:
                return self.ownership_filter(await self._team_resolver(principal))

            if PermissionScope.DEPARTMENT in scopes:
                return self.ownership_filter(await self._department_resolver(principal))

            return QueryFilter.unrestricted()
        except Exception as e:
            logger.error(f"Error building permission filters for {principal_id}: {e}", exc_info=True)
            return QueryFilter.nothing()

    @staticmethod
    def ownership_filter(member_ids: Sequence[str]) -> QueryFilter:
        """``created_by_id`` or ``assigned_to_id`` matches one of ``member_ids``."""
        member_ids = list(member_ids)
        if len(member_ids) == 1:
            return QueryFilter.either(
                FieldFilter(OWNER_FIELD, FilterOp.EQ, member_ids[0]),
                FieldFilter(ASSIGNEE_FIELD, FilterOp.EQ, member_ids[0]),
            )
        return QueryFilter.either(
            FieldFilter(OWNER_FIELD, FilterOp.IN, member_ids),
            FieldFilter(ASSIGNEE_FIELD, FilterOp.IN, member_ids),
        )

    async def filter_by_permissions(
        self,
        principal_id: Optional[str],
        resources: Sequence[T],
        resource: Union[ResourceType, str],
        action: Union[ActionType, str],
        id_of: Optional[Callable[[T], Any]] = None,
    ) -> List[T]:
        """
        Keep the items of an already-fetched collection the principal may act on.

        One ``has_permission`` check per item, with ``{"id": id_of(item)}`` as
        resource data. Super admins get the collection back unfiltered.
        """
        id_of = id_of or (lambda item: resolve_field(item, "id"))
        try:
            principal = await self._resolve_principal(principal_id)
        except Exception as e:
            logger.error(f"Error filtering {resource} for {principal_id}: {e}", exc_info=True)
            return []
        if principal is None:
            return []
        if self.is_super_admin(principal):
            return list(resources)

        check = Permission(resource, action)
        allowed: List[T] = []
        for item in resources:
            if await self.has_permission(principal_id, check, {"id": id_of(item)}):
                allowed.append(item)
        return allowed

    # =========================================================================
    # ROLE GRANTS
    # =========================================================================

    async def assign_permission_to_role(self, role_id: str, permission_id: str) -> None:
        await self._store.assign_permission_to_role(role_id, permission_id)
        self._invalidate_role(role_id)
        logger.info(f"Permission {permission_id} assigned to role {role_id}")

    async def remove_permission_from_role(self, role_id: str, permission_id: str) -> None:
        await self._store.remove_permission_from_role(role_id, permission_id)
        self._invalidate_role(role_id)
        logger.info(f"Permission {permission_id} removed from role {role_id}")

    def invalidate_principal(self, principal_id: str) -> None:
        """Forget a cached principal (role change, deactivation)."""
        if self._cache is not None:
            self._cache.invalidate_principal(principal_id)

    def _invalidate_role(self, role_id: str) -> None:
        if self._cache is not None:
            self._cache.invalidate_role(role_id)

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def is_super_admin(self, principal: PrincipalRecord) -> bool:
        return principal.role_name is not None and principal.role_name in self._super_admin_roles

    async def _resolve_principal(self, principal_id: Optional[str]) -> Optional[PrincipalRecord]:
        if not principal_id:
            return None

        generation = None
        if self._cache is not None:
            cached = self._cache.get(principal_id)
            if cached is not None:
                return cached
            generation = self._cache.generation

        principal = await self._store.find_principal(principal_id)
        if principal is None or not principal.is_active:
            return None

        if self._cache is not None:
            self._cache.set(principal, generation)
        return principal

    @staticmethod
    def _holds_grant(principal: PrincipalRecord, check: PermissionCheck) -> bool:
        return any(
            grant.resource == check.resource
            and grant.action in (check.action, ActionType.MANAGE)
            for grant in principal.grants
        )

    async def _evaluate_conditions(
        self,
        conditions: Sequence[PermissionCondition],
        resource_data: Any,
        principal: PrincipalRecord,
    ) -> bool:
        for condition in conditions:
            if not await self._evaluate_condition(condition, resource_data, principal):
                return False
        return True

    async def _evaluate_condition(
        self,
        condition: PermissionCondition,
        resource_data: Any,
        principal: PrincipalRecord,
    ) -> bool:
        value = resolve_field(resource_data, condition.field)
        op = condition.operator

        if op == ConditionOperator.EQ:
            return value == condition.value
        if op == ConditionOperator.NE:
            return value != condition.value
        if op == ConditionOperator.IN:
            return isinstance(condition.value, (tuple, list)) and value in condition.value
        if op == ConditionOperator.NIN:
            return isinstance(condition.value, (tuple, list)) and value not in condition.value
        if op == ConditionOperator.OWN:
            return principal.id in (
                resolve_field(resource_data, OWNER_FIELD),
                resolve_field(resource_data, ASSIGNEE_FIELD),
            )
        if op == ConditionOperator.TEAM:
            if value is not None:
                candidates = [value]
            else:
                candidates = [
                    resolve_field(resource_data, OWNER_FIELD),
                    resolve_field(resource_data, ASSIGNEE_FIELD),
                ]
            candidates = [c for c in candidates if c is not None]
            if not candidates:
                return False
            members = await self._team_resolver(principal)
            return any(c in members for c in candidates)
        if op == ConditionOperator.DEPARTMENT:
            target = value if value is not None else resolve_field(resource_data, "department")
            return principal.department is not None and principal.department == target
        return False
