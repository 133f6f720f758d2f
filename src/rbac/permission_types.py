"""
Permission value types.

A permission is a ``(resource, action, conditions?)`` triple. Grants are
stored per role; checks are built by callers (services, the access gate) and
handed to the authorization engine.

String form:
    resource:action                     e.g. "lead:read"
    resource:action:cond1,cond2         e.g. "lead:read:statusnelost"

The access gate declares requirements with a shorter form where the third
segment is a bare condition operator:
    resource:action:own                 e.g. "deal:update:own"
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Tuple


class ResourceType(str, Enum):
    """Protected entity categories."""
    USER = "user"
    ROLE = "role"
    PERMISSION = "permission"
    CONTACT = "contact"
    COMPANY = "company"
    LEAD = "lead"
    DEAL = "deal"
    ACTIVITY = "activity"
    NOTE = "note"
    CLIENT = "client"
    PROJECT = "project"
    EMPLOYEE = "employee"
    ATTENDANCE = "attendance"
    INVOICE = "invoice"
    DASHBOARD = "dashboard"
    REPORT = "report"


class ActionType(str, Enum):
    """Operations that can be performed on a resource."""
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    MANAGE = "manage"  # wildcard: satisfies every action on the resource
    ASSIGN = "assign"
    UNASSIGN = "unassign"
    EXPORT = "export"
    IMPORT = "import"
    BULK_EDIT = "bulk_edit"
    BULK_DELETE = "bulk_delete"


class ConditionOperator(str, Enum):
    """Predicate operators usable in a permission condition."""
    EQ = "eq"
    NE = "ne"
    IN = "in"
    NIN = "nin"
    OWN = "own"
    TEAM = "team"
    DEPARTMENT = "department"


class PermissionScope(str, Enum):
    """
    Visibility scope of a granted permission.

    Drives list/read query filtering in ``RbacService.get_permission_filters``.
    """
    NONE = "none"
    OWN = "own"
    TEAM = "team"
    DEPARTMENT = "department"

    @classmethod
    def from_description(cls, description: Optional[str]) -> "PermissionScope":
        """
        Derive a scope from a free-text permission description.

        Used once, when a permission row is created without an explicit
        scope, so that legacy descriptions such as "Read own deals" keep
        their meaning.
        """
        text = (description or "").lower()
        if "own" in text:
            return cls.OWN
        if "team" in text:
            return cls.TEAM
        if "department" in text:
            return cls.DEPARTMENT
        return cls.NONE


@dataclass(frozen=True)
class PermissionCondition:
    """
    Predicate narrowing a grant to specific record attributes.

    Attributes:
        field: Dotted path into the resource data (e.g. "owner.id")
        operator: One of ``ConditionOperator``
        value: Comparison value; a tuple for ``in``/``nin``
    """
    field: str
    operator: ConditionOperator
    value: Any = None

    def __post_init__(self):
        if not isinstance(self.operator, ConditionOperator):
            object.__setattr__(self, "operator", ConditionOperator(self.operator))
        if isinstance(self.value, list):
            object.__setattr__(self, "value", tuple(self.value))

    def __str__(self) -> str:
        return f"{self.field}{self.operator.value}{self.value}"


@dataclass(frozen=True)
class Permission:
    """
    Immutable ``(resource, action, conditions)`` triple.

    Equality and hashing are structural.
    """
    resource: ResourceType
    action: ActionType
    conditions: Tuple[PermissionCondition, ...] = field(default_factory=tuple)

    def __post_init__(self):
        if not isinstance(self.resource, ResourceType):
            object.__setattr__(self, "resource", ResourceType(self.resource))
        if not isinstance(self.action, ActionType):
            object.__setattr__(self, "action", ActionType(self.action))
        if not isinstance(self.conditions, tuple):
            object.__setattr__(self, "conditions", tuple(self.conditions or ()))

    @classmethod
    def create(
        cls,
        resource: ResourceType,
        action: ActionType,
        conditions: Optional[Tuple[PermissionCondition, ...]] = None,
    ) -> "Permission":
        return cls(resource, action, tuple(conditions or ()))

    def __str__(self) -> str:
        condition_str = ""
        if self.conditions:
            condition_str = ":" + ",".join(str(c) for c in self.conditions)
        return f"{self.resource.value}:{self.action.value}{condition_str}"


# A check has the same shape as a permission; the alias documents intent at
# call sites ("what is required" vs "what is granted").
PermissionCheck = Permission


def parse_permission_string(
    permission: str,
    principal_id: Optional[str] = None,
) -> PermissionCheck:
    """
    Parse a declared requirement such as ``"lead:read"`` or ``"lead:read:own"``.

    A third segment is a condition operator; it becomes a condition keyed on
    the acting principal (``field="ownership"``, ``value=principal_id``).

    Raises:
        ValueError: On malformed strings or unknown resource/action/operator.
    """
    parts = [p.strip() for p in permission.split(":")]
    if len(parts) < 2 or len(parts) > 3 or not all(parts):
        raise ValueError(f"Invalid permission string: {permission!r}")

    resource = ResourceType(parts[0])
    action = ActionType(parts[1])
    conditions: Tuple[PermissionCondition, ...] = ()
    if len(parts) == 3:
        conditions = (
            PermissionCondition(
                field="ownership",
                operator=ConditionOperator(parts[2]),
                value=principal_id,
            ),
        )
    return Permission(resource, action, conditions)
