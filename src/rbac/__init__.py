"""
Role-Based Access Control (RBAC)

Resource/action permissions granted through roles, evaluated by
``RbacService`` and enforced at operation boundaries by ``AccessGate``.

Modules:
    permission_types  Permission / condition value types and parsing
    filters           Storage-agnostic query filters
    store             PrincipalStore contract and SQLAlchemy implementation
    cache             TTL cache of resolved principals
    service           RbacService (authorization engine)
    gate              PermissionRegistry, AccessGate, RequirePermissions, RequireRoles
    seed              Default permission catalogue and roles

Usage:
    from rbac.service import RbacService
    from rbac import Permission, ResourceType, ActionType

    allowed = await rbac.has_permission(
        user_id, Permission(ResourceType.LEAD, ActionType.READ)
    )

Only the value layer is re-exported here; the engine modules depend on the
ORM models, which themselves import ``rbac.permission_types``.
"""

from .permission_types import (
    ResourceType,
    ActionType,
    ConditionOperator,
    PermissionScope,
    PermissionCondition,
    Permission,
    PermissionCheck,
    parse_permission_string,
)
from .filters import FilterOp, FieldFilter, QueryFilter, OrderBy, resolve_field

__all__ = [
    "ResourceType",
    "ActionType",
    "ConditionOperator",
    "PermissionScope",
    "PermissionCondition",
    "Permission",
    "PermissionCheck",
    "parse_permission_string",
    "FilterOp",
    "FieldFilter",
    "QueryFilter",
    "OrderBy",
    "resolve_field",
]
