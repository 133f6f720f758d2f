"""
Access-control gate.

Protected operations declare the permissions they require in a
``PermissionRegistry`` (operation name -> permission strings). The gate looks
the declaration up, parses it and asks the authorization engine, granting
access when any declared permission holds.

Operations can also declare role names. When they do, the principal's role
name must be one of them, in addition to any declared permission holding.

Permission strings:
    "lead:read"          resource + action
    "lead:update:own"    plus a condition operator keyed on the principal

Usage:
    registry = PermissionRegistry()

    @registry.requires("lead:update", "lead:update:own", operation="leads.update")
    async def update_lead(lead_id, data, principal_id): ...

    @registry.requires_roles("Admin", "Manager", operation="roles.assign")
    async def assign_role(user_id, role_id, principal_id): ...

    gate = AccessGate(rbac_service, registry)
    await gate.enforce("leads.update", principal_id, {"id": lead_id})

FastAPI:
    @router.get("/leads/{id}", dependencies=[Depends(RequirePermissions("lead:read"))])
    @router.post("/roles", dependencies=[Depends(RequireRoles("Admin"))])
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, Iterator, Mapping, Optional, Tuple

from fastapi import Request

from rbac.permission_types import parse_permission_string
from rbac.service import RbacService
from security.api_errors import AuthenticationRequiredError, ForbiddenError

logger = logging.getLogger(__name__)

ResourceLoader = Callable[[Any], Awaitable[Optional[Any]]]


class PermissionRegistry:
    """Explicit tables of operation name -> required permission strings and role names."""

    def __init__(self):
        self._table: Dict[str, Tuple[str, ...]] = {}
        self._roles: Dict[str, Tuple[str, ...]] = {}

    def register(self, operation: str, *permissions: str) -> None:
        """
        Declare the permissions ``operation`` requires (any one suffices).

        Raises:
            ValueError: If a permission string is malformed.
        """
        for permission in permissions:
            parse_permission_string(permission)
        self._table[operation] = tuple(permissions)

    def register_roles(self, operation: str, *role_names: str) -> None:
        """
        Declare the role names allowed to run ``operation`` (any one suffices).

        Raises:
            ValueError: If a role name is empty.
        """
        if any(not name or not name.strip() for name in role_names):
            raise ValueError(f"Empty role name declared for {operation}")
        self._roles[operation] = tuple(role_names)

    def required_for(self, operation: str) -> Tuple[str, ...]:
        return self._table.get(operation, ())

    def roles_for(self, operation: str) -> Tuple[str, ...]:
        return self._roles.get(operation, ())

    def requires(self, *permissions: str, operation: Optional[str] = None):
        """Decorator form of ``register``; the function itself is returned unchanged."""
        def decorator(func):
            self.register(operation or self.operation_name(func), *permissions)
            return func
        return decorator

    def requires_roles(self, *role_names: str, operation: Optional[str] = None):
        """Decorator form of ``register_roles``."""
        def decorator(func):
            self.register_roles(operation or self.operation_name(func), *role_names)
            return func
        return decorator

    @staticmethod
    def operation_name(func: Callable) -> str:
        return f"{func.__module__}.{func.__qualname__}"

    def __contains__(self, operation: str) -> bool:
        return operation in self._table or operation in self._roles

    def __iter__(self) -> Iterator[str]:
        return iter(dict.fromkeys([*self._table, *self._roles]))


class AccessGate:
    """
    Evaluates declared roles and permissions for an operation.

    Args:
        engine: Authorization engine
        registry: Declarations consulted by ``check``/``enforce``
        resource_loader: Optional async lookup ``id -> record``; when given,
            conditioned checks are evaluated against the loaded record instead
            of the bare ``{"id": ...}`` mapping
    """

    def __init__(
        self,
        engine: RbacService,
        registry: Optional[PermissionRegistry] = None,
        resource_loader: Optional[ResourceLoader] = None,
    ):
        self.engine = engine
        self.registry = registry or PermissionRegistry()
        self._resource_loader = resource_loader

    async def check_permissions(
        self,
        permissions: Tuple[str, ...],
        principal_id: Optional[str],
        arguments: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        """OR over ``permissions``; no declarations means pass-through."""
        if not permissions:
            return True
        if not principal_id:
            return False

        resource_data = await self._resource_data(dict(arguments or {}))
        for permission in permissions:
            check = parse_permission_string(permission, principal_id)
            if await self.engine.has_permission(principal_id, check, resource_data):
                return True
        return False

    async def check_roles(self, role_names: Tuple[str, ...], principal_id: Optional[str]) -> bool:
        """Role name membership; no declarations means pass-through."""
        if not role_names:
            return True
        if not principal_id:
            return False
        return await self.engine.has_role(principal_id, role_names)

    async def check(
        self,
        operation: str,
        principal_id: Optional[str],
        arguments: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        if not await self.check_roles(self.registry.roles_for(operation), principal_id):
            return False
        return await self.check_permissions(
            self.registry.required_for(operation), principal_id, arguments
        )

    async def enforce(
        self,
        operation: str,
        principal_id: Optional[str],
        arguments: Optional[Mapping[str, Any]] = None,
    ) -> None:
        """
        Raise unless the principal may run ``operation``.

        Raises:
            AuthenticationRequiredError: Roles or permissions are declared but no principal is known.
            ForbiddenError: The role is not declared, or no declared permission holds.
        """
        roles = self.registry.roles_for(operation)
        required = self.registry.required_for(operation)
        if (roles or required) and not principal_id:
            raise AuthenticationRequiredError()
        if not await self.check_roles(roles, principal_id):
            logger.warning(f"Access denied by role: {principal_id} -> {operation}")
            raise ForbiddenError(f"Role not permitted for {operation}")
        if not await self.check_permissions(required, principal_id, arguments):
            logger.warning(f"Access denied: {principal_id} -> {operation}")
            raise ForbiddenError(f"Insufficient permissions for {operation}")

    async def _resource_data(self, arguments: Dict[str, Any]) -> Any:
        resource_id = arguments.get("id")
        if not resource_id:
            return arguments
        if self._resource_loader is not None:
            record = await self._resource_loader(resource_id)
            if record is not None:
                return record
        return {"id": resource_id}


class RequirePermissions:
    """
    Class-based FastAPI dependency enforcing declared permissions.

    Reads the gate from ``app.state.access_gate`` and the principal from
    ``request.state.principal_id``; path and query parameters are the
    operation arguments.
    """

    def __init__(self, *permissions: str):
        for permission in permissions:
            parse_permission_string(permission)
        self.permissions = tuple(permissions)

    async def __call__(self, request: Request) -> None:
        if not self.permissions:
            return

        gate: Optional[AccessGate] = getattr(request.app.state, "access_gate", None)
        if gate is None:
            raise RuntimeError("app.state.access_gate is not configured")

        principal_id = getattr(request.state, "principal_id", None)
        if not principal_id:
            raise AuthenticationRequiredError()

        arguments: Dict[str, Any] = dict(request.query_params)
        arguments.update(request.path_params)

        if not await gate.check_permissions(self.permissions, principal_id, arguments):
            raise ForbiddenError(f"Required permission: {' or '.join(self.permissions)}")


class RequireRoles:
    """
    Class-based FastAPI dependency restricting a route to role names.

    The principal's role is resolved through the gate's engine, so it shares
    the engine's principal cache.
    """

    def __init__(self, *role_names: str):
        if any(not name or not name.strip() for name in role_names):
            raise ValueError("Role names must be non-empty")
        self.role_names = tuple(role_names)

    async def __call__(self, request: Request) -> None:
        if not self.role_names:
            return

        gate: Optional[AccessGate] = getattr(request.app.state, "access_gate", None)
        if gate is None:
            raise RuntimeError("app.state.access_gate is not configured")

        principal_id = getattr(request.state, "principal_id", None)
        if not principal_id:
            raise AuthenticationRequiredError()

        if not await gate.check_roles(self.role_names, principal_id):
            raise ForbiddenError(f"Required role: {' or '.join(self.role_names)}")
