"""
SQLAlchemy ORM Models for the access core.

This module defines the principal/role/permission schema consulted by the
authorization engine, plus the reference CRM entities (leads and deals)
managed through the generic lifecycle services.

Architecture:
- Primary Keys: UUID strings for all tables (portable across SQLite/PostgreSQL)
- Grants: roles hold permissions through the role_permissions join table
- Scope: typed visibility scope on every permission row
- Lifecycle: every managed entity carries created/updated/deleted timestamps
  and the id of its creator
"""

from datetime import datetime
from enum import Enum as PyEnum
from uuid import uuid4

from sqlalchemy import (
    Column, String, Integer, Numeric, Boolean, DateTime,
    Text, ForeignKey, Index, UniqueConstraint, event,
)
from sqlalchemy.orm import declarative_base, relationship

from rbac.permission_types import PermissionScope


Base = declarative_base()


def _new_id() -> str:
    return str(uuid4())


# =============================================================================
# ENUMERATIONS
# =============================================================================

class Priority(str, PyEnum):
    """Priority level shared by leads and deals."""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    URGENT = "URGENT"


class LeadStatus(str, PyEnum):
    """Lead pipeline status."""
    NEW = "NEW"
    CONTACTED = "CONTACTED"
    QUALIFIED = "QUALIFIED"
    UNQUALIFIED = "UNQUALIFIED"
    CONVERTED = "CONVERTED"
    LOST = "LOST"


class DealStage(str, PyEnum):
    """Deal pipeline stage."""
    PROSPECTING = "PROSPECTING"
    QUALIFICATION = "QUALIFICATION"
    PROPOSAL = "PROPOSAL"
    NEGOTIATION = "NEGOTIATION"
    CLOSED_WON = "CLOSED_WON"
    CLOSED_LOST = "CLOSED_LOST"


# =============================================================================
# PRINCIPALS, ROLES AND PERMISSIONS
# =============================================================================

class Team(Base):
    """Group of principals sharing team-scoped visibility."""
    __tablename__ = "teams"

    id = Column(String(36), primary_key=True, default=_new_id)
    name = Column(String(100), nullable=False, unique=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    members = relationship("User", back_populates="team")

    def __repr__(self):
        return f"<Team {self.name}>"


class Role(Base):
    """Named bundle of permissions. Super-admin names bypass every check."""
    __tablename__ = "roles"

    id = Column(String(36), primary_key=True, default=_new_id)
    name = Column(String(100), nullable=False, unique=True)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    users = relationship("User", back_populates="role")
    permissions = relationship(
        "RolePermission",
        back_populates="role",
        cascade="all, delete-orphan",
    )

    def __repr__(self):
        return f"<Role {self.name}>"


class Permission(Base):
    """
    A grantable ``(resource, action)`` pair with its visibility scope.

    The same pair may exist once per scope, so roles can hold e.g. an
    unrestricted ``lead:read`` or an own-scoped one.
    """
    __tablename__ = "permissions"

    id = Column(String(36), primary_key=True, default=_new_id)
    resource = Column(String(50), nullable=False, index=True)
    action = Column(String(50), nullable=False)
    description = Column(Text, nullable=True)
    scope = Column(String(20), nullable=False, default=PermissionScope.NONE.value)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    roles = relationship("RolePermission", back_populates="permission")

    __table_args__ = (
        UniqueConstraint("resource", "action", "scope", name="uq_permission_resource_action_scope"),
    )

    def __repr__(self):
        return f"<Permission {self.resource}:{self.action} ({self.scope})>"


@event.listens_for(Permission, "init")
def _default_permission_scope(target, args, kwargs):
    """Derive the scope from the description when none is given explicitly."""
    scope = kwargs.get("scope")
    if scope is None:
        scope = PermissionScope.from_description(kwargs.get("description"))
    kwargs["scope"] = PermissionScope(scope).value


class RolePermission(Base):
    """Join row granting a permission to a role."""
    __tablename__ = "role_permissions"

    id = Column(String(36), primary_key=True, default=_new_id)
    role_id = Column(String(36), ForeignKey("roles.id", ondelete="CASCADE"), nullable=False)
    permission_id = Column(
        String(36), ForeignKey("permissions.id", ondelete="CASCADE"), nullable=False
    )
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    role = relationship("Role", back_populates="permissions")
    permission = relationship("Permission", back_populates="roles")

    __table_args__ = (
        UniqueConstraint("role_id", "permission_id", name="uq_role_permission"),
    )


class User(Base):
    """Acting principal."""
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_new_id)
    email = Column(String(255), nullable=False, unique=True)
    first_name = Column(String(100), nullable=False, default="")
    last_name = Column(String(100), nullable=False, default="")
    is_active = Column(Boolean, default=True, nullable=False)
    department = Column(String(100), nullable=True, index=True)

    role_id = Column(String(36), ForeignKey("roles.id"), nullable=True, index=True)
    team_id = Column(String(36), ForeignKey("teams.id"), nullable=True, index=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    role = relationship("Role", back_populates="users")
    team = relationship("Team", back_populates="members")

    def __repr__(self):
        return f"<User {self.email}>"


# =============================================================================
# REFERENCE ENTITIES
# =============================================================================

class Lead(Base):
    """Sales lead; converts into a deal."""
    __tablename__ = "leads"

    id = Column(String(36), primary_key=True, default=_new_id)
    title = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False, default=LeadStatus.NEW.value, index=True)
    priority = Column(String(20), nullable=True)
    source = Column(String(100), nullable=True)
    value = Column(Numeric(12, 2), nullable=True)
    expected_close_date = Column(DateTime, nullable=True)
    description = Column(Text, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)

    contact_id = Column(String(36), nullable=True)
    company_id = Column(String(36), nullable=True)
    assigned_to_id = Column(String(36), ForeignKey("users.id"), nullable=True, index=True)
    created_by_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    deleted_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_leads_live", "deleted_at", "created_at"),
    )

    def __repr__(self):
        return f"<Lead {self.title} ({self.status})>"


class Deal(Base):
    """Sales opportunity."""
    __tablename__ = "deals"

    id = Column(String(36), primary_key=True, default=_new_id)
    title = Column(String(255), nullable=False)
    stage = Column(String(20), nullable=False, default=DealStage.PROSPECTING.value, index=True)
    probability = Column(Integer, nullable=False, default=0)
    value = Column(Numeric(12, 2), nullable=False, default=0)
    priority = Column(String(20), nullable=True)
    expected_close_date = Column(DateTime, nullable=True)
    description = Column(Text, nullable=True)

    lead_id = Column(String(36), ForeignKey("leads.id"), nullable=True, index=True)
    contact_id = Column(String(36), nullable=True)
    company_id = Column(String(36), nullable=True)
    assigned_to_id = Column(String(36), ForeignKey("users.id"), nullable=True, index=True)
    created_by_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    deleted_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_deals_live", "deleted_at", "created_at"),
    )

    def __repr__(self):
        return f"<Deal {self.title} ({self.stage})>"
