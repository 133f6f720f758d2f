"""
Entity store: the seven persistence primitives behind ``BaseService``.

``EntityStore`` is storage-agnostic and speaks ``QueryFilter`` / ``OrderBy``.
``SqlAlchemyEntityStore`` implements it for any ORM model carrying the
lifecycle columns (``id``, ``created_at``, ``updated_at``, ``deleted_at``,
``created_by_id``).
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Generic, List, Mapping, Optional, Type, TypeVar

from sqlalchemy import and_, delete, false, func, inspect, or_, select, true, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rbac.filters import FieldFilter, FilterOp, OrderBy, QueryFilter
from security.api_errors import APIError, ConflictError, ErrorCode, NotFoundError

logger = logging.getLogger(__name__)

T = TypeVar("T")

IMMUTABLE_FIELDS = ("id", "created_by_id", "created_at", "deleted_at")


class EntityStore(ABC, Generic[T]):
    """
    Persistence primitives for one entity type.

    ``find_unique`` and ``update`` only see live rows; soft-deleted rows are
    invisible to every primitive except ``hard_delete``.
    """

    @abstractmethod
    async def create(self, data: Mapping[str, Any], principal_id: str) -> T:
        """Insert a row stamped with ``created_by_id = principal_id``."""

    @abstractmethod
    async def find_many(
        self,
        where: QueryFilter,
        order_by: OrderBy,
        skip: int,
        take: int,
    ) -> List[T]:
        """Rows matching ``where`` in ``order_by`` order, windowed."""

    @abstractmethod
    async def find_unique(self, entity_id: str) -> Optional[T]:
        """The live row with ``entity_id``, or None."""

    @abstractmethod
    async def update(self, entity_id: str, data: Mapping[str, Any], principal_id: str) -> T:
        """Apply ``data`` to the live row; raises ``NotFoundError`` if absent."""

    @abstractmethod
    async def soft_delete(self, entity_id: str, principal_id: str) -> None:
        """Set ``deleted_at``; raises ``NotFoundError`` if absent or already deleted."""

    @abstractmethod
    async def hard_delete(self, entity_id: str) -> None:
        """Physically remove the row; raises ``NotFoundError`` if absent."""

    @abstractmethod
    async def count(self, where: QueryFilter) -> int:
        """Number of rows matching ``where``."""


# =============================================================================
# FILTER COMPILATION
# =============================================================================

def _naive_utc(value: Any) -> Any:
    if isinstance(value, datetime) and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _compile_field(model: Type[Any], node: FieldFilter):
    column = inspect(model).columns.get(node.field)
    if column is None:
        logger.warning(f"Filter on unknown column {model.__name__}.{node.field} matches nothing")
        return false()

    value = _naive_utc(node.value)
    op = node.op
    if op == FilterOp.EQ:
        return column.is_(None) if value is None else column == value
    if op == FilterOp.NE:
        return column.is_not(None) if value is None else or_(column != value, column.is_(None))
    if op == FilterOp.IN:
        return column.in_(list(value or ()))
    if op == FilterOp.NIN:
        return or_(column.not_in(list(value or ())), column.is_(None))
    if op == FilterOp.CONTAINS:
        return column.ilike(f"%{_escape_like(str(value))}%", escape="\\")
    if op == FilterOp.GTE:
        return column >= value
    if op == FilterOp.LTE:
        return column <= value
    if op == FilterOp.IS_NULL:
        return column.is_(None) if value else column.is_not(None)
    return false()


def compile_filter(model: Type[Any], query_filter: QueryFilter):
    """Translate a ``QueryFilter`` tree into a SQLAlchemy boolean clause for ``model``."""
    if query_filter.match_nothing:
        return false()

    def compile_node(node):
        if isinstance(node, QueryFilter):
            return compile_filter(model, node)
        return _compile_field(model, node)

    clauses = [compile_node(node) for node in query_filter.all_of]
    if query_filter.any_of:
        clauses.append(or_(*[compile_node(node) for node in query_filter.any_of]))
    if not clauses:
        return true()
    return and_(*clauses)


def compile_order_by(model: Type[Any], order_by: OrderBy):
    columns = inspect(model).columns
    column = columns.get(order_by.field)
    if column is None:
        logger.warning(f"Unknown sort field {model.__name__}.{order_by.field}, using created_at")
        column = columns["created_at"]
    primary = column.asc() if order_by.direction == "asc" else column.desc()
    return [primary, columns["id"].asc()]


# =============================================================================
# SQLALCHEMY IMPLEMENTATION
# =============================================================================

class SqlAlchemyEntityStore(EntityStore[T]):
    """
    ``EntityStore`` over a SQLAlchemy ORM model.

    Each primitive opens and commits its own session. ``bound_to(session)``
    returns a view that works inside a caller-owned transaction instead
    (flushing, never committing).
    """

    def __init__(
        self,
        model: Type[T],
        session_factory: async_sessionmaker[AsyncSession],
        resource_name: Optional[str] = None,
        session: Optional[AsyncSession] = None,
    ):
        self.model = model
        self.resource_name = resource_name or model.__name__.lower()
        self._session_factory = session_factory
        self._session = session

    def bound_to(self, session: AsyncSession) -> "SqlAlchemyEntityStore[T]":
        return type(self)(self.model, self._session_factory, self.resource_name, session)

    @asynccontextmanager
    async def _session_scope(self) -> AsyncGenerator[AsyncSession, None]:
        if self._session is not None:
            try:
                yield self._session
                await self._session.flush()
            except IntegrityError as e:
                raise ConflictError(self.resource_name) from e
            return

        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                logger.warning(f"Integrity error on {self.resource_name}: {e.orig}")
                raise ConflictError(self.resource_name) from e
            except Exception:
                await session.rollback()
                raise

    def _live(self, entity_id: str):
        return and_(self.model.id == entity_id, self.model.deleted_at.is_(None))

    async def create(self, data: Mapping[str, Any], principal_id: str) -> T:
        entity = self.model(**{**dict(data), "created_by_id": principal_id})
        async with self._session_scope() as session:
            session.add(entity)
        return entity

    async def find_many(
        self,
        where: QueryFilter,
        order_by: OrderBy,
        skip: int,
        take: int,
    ) -> List[T]:
        stmt = (
            select(self.model)
            .where(compile_filter(self.model, where))
            .order_by(*compile_order_by(self.model, order_by))
            .offset(skip)
            .limit(take)
        )
        async with self._session_scope() as session:
            return list((await session.execute(stmt)).scalars())

    async def find_unique(self, entity_id: str) -> Optional[T]:
        async with self._session_scope() as session:
            return (
                await session.execute(select(self.model).where(self._live(entity_id)))
            ).scalar_one_or_none()

    def _column_values(self, data: Mapping[str, Any]) -> dict:
        """
        ``data`` restricted to writable model columns.

        Raises:
            APIError: If ``data`` names a field the model has no column for.
        """
        columns = inspect(self.model).columns
        unknown = sorted(key for key in data if columns.get(key) is None)
        if unknown:
            raise APIError(
                ErrorCode.VALIDATION_ERROR,
                f"Unknown {self.resource_name} fields: {', '.join(unknown)}",
                details={"fields": unknown},
            )
        return {key: value for key, value in data.items() if key not in IMMUTABLE_FIELDS}

    async def update(self, entity_id: str, data: Mapping[str, Any], principal_id: str) -> T:
        values = self._column_values(data)
        async with self._session_scope() as session:
            entity = (
                await session.execute(select(self.model).where(self._live(entity_id)))
            ).scalar_one_or_none()
            if entity is None:
                raise NotFoundError(self.resource_name, entity_id)
            for key, value in values.items():
                setattr(entity, key, value)
            entity.updated_at = datetime.utcnow()
        return entity

    async def update_where(
        self,
        entity_id: str,
        condition: QueryFilter,
        data: Mapping[str, Any],
        principal_id: str,
    ) -> Optional[T]:
        """
        Apply ``data`` in one UPDATE, only if the live row also matches ``condition``.

        Returns the updated row, or None when no row qualified. Callers racing
        on the same condition see exactly one success.
        """
        values = {**self._column_values(data), "updated_at": datetime.utcnow()}
        stmt = (
            update(self.model)
            .where(self._live(entity_id), compile_filter(self.model, condition))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        async with self._session_scope() as session:
            result = await session.execute(stmt)
            if result.rowcount == 0:
                return None
            return (
                await session.execute(
                    select(self.model)
                    .where(self.model.id == entity_id)
                    .execution_options(populate_existing=True)
                )
            ).scalar_one()

    async def soft_delete(self, entity_id: str, principal_id: str) -> None:
        now = datetime.utcnow()
        stmt = (
            update(self.model)
            .where(self._live(entity_id))
            .values(deleted_at=now, updated_at=now)
        )
        async with self._session_scope() as session:
            result = await session.execute(stmt)
        if result.rowcount == 0:
            raise NotFoundError(self.resource_name, entity_id)

    async def hard_delete(self, entity_id: str) -> None:
        stmt = delete(self.model).where(self.model.id == entity_id)
        async with self._session_scope() as session:
            result = await session.execute(stmt)
        if result.rowcount == 0:
            raise NotFoundError(self.resource_name, entity_id)

    async def count(self, where: QueryFilter) -> int:
        stmt = select(func.count()).select_from(self.model).where(compile_filter(self.model, where))
        async with self._session_scope() as session:
            return int((await session.execute(stmt)).scalar_one())
