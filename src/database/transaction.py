"""Transaction management for async database operations.

Entity operations that compose several writes (lead to deal conversion) run
inside one ``TransactionManager`` so that either every write commits or none
does.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.async_engine import get_async_session_factory

logger = logging.getLogger(__name__)


class TransactionManager:
    """
    Manages one database transaction with automatic commit/rollback.

    Usage:
        async with TransactionManager(session_factory) as session:
            session.add(...)
            # Auto-commits on success, auto-rollbacks on exception

        # Or with explicit transaction control:
        tm = TransactionManager(session_factory)
        session = await tm.begin()
        try:
            ...
            await tm.commit()
        except Exception:
            await tm.rollback()
            raise
        finally:
            await tm.close()
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        session: Optional[AsyncSession] = None,
    ):
        """
        Args:
            session_factory: Factory used to open a session; defaults to the
                global factory from ``database.async_engine``.
            session: Optional existing session to join instead.
        """
        self._session_factory = session_factory
        self._session: Optional[AsyncSession] = session
        self._owns_session: bool = session is None
        self._is_active: bool = False

    async def begin(self) -> AsyncSession:
        """Begin the transaction and return its session."""
        if self._is_active:
            raise RuntimeError("Transaction already active")

        if self._session is None:
            factory = self._session_factory or get_async_session_factory()
            self._session = factory()
            self._owns_session = True

        self._is_active = True
        logger.debug("Transaction started")
        return self._session

    async def commit(self) -> None:
        """Commit the current transaction."""
        if not self._is_active:
            raise RuntimeError("No active transaction to commit")

        await self._session.commit()
        logger.debug("Transaction committed")

    async def rollback(self) -> None:
        """Rollback the current transaction (no-op when inactive)."""
        if not self._is_active:
            return

        await self._session.rollback()
        logger.debug("Transaction rolled back")

    async def close(self) -> None:
        """Close the session if we own it."""
        self._is_active = False

        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    @property
    def session(self) -> Optional[AsyncSession]:
        return self._session

    @property
    def is_active(self) -> bool:
        return self._is_active

    async def __aenter__(self) -> AsyncSession:
        return await self.begin()

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        try:
            if exc_type is not None:
                await self.rollback()
                logger.debug(f"Transaction rolled back due to: {exc_type.__name__}")
            else:
                await self.commit()
        finally:
            await self.close()

        return False


@asynccontextmanager
async def transaction(
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> AsyncGenerator[AsyncSession, None]:
    """
    Context manager for a one-off transaction.

    Usage:
        async with transaction(session_factory) as session:
            session.add(...)
    """
    async with TransactionManager(session_factory) as session:
        yield session
