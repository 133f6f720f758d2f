"""
Database Layer for the access core.

This module provides:
- SQLAlchemy ORM models for principals, roles, permissions and CRM entities
- Async database engine and session factories
- Transaction management
"""

from .models import (
    Base,
    Team,
    Role,
    Permission,
    RolePermission,
    User,
    Lead,
    Deal,
    Priority,
    LeadStatus,
    DealStage,
)
from .async_engine import (
    create_engine,
    get_session_factory,
    get_async_engine,
    get_async_session_factory,
    get_async_session,
    check_database_connection,
    init_database,
    close_database,
)
from .transaction import TransactionManager, transaction

__all__ = [
    # Models
    "Base",
    "Team",
    "Role",
    "Permission",
    "RolePermission",
    "User",
    "Lead",
    "Deal",
    "Priority",
    "LeadStatus",
    "DealStage",
    # Engine
    "create_engine",
    "get_session_factory",
    "get_async_engine",
    "get_async_session_factory",
    "get_async_session",
    "check_database_connection",
    "init_database",
    "close_database",
    # Transactions
    "TransactionManager",
    "transaction",
]
