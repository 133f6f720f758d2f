"""Tests for the async engine helpers and transaction management."""

from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.pool import NullPool

from config.database import DatabaseSettings
from database.async_engine import check_database_connection, create_engine
from database.models import Team
from database.transaction import TransactionManager, transaction


async def team_count(session_factory) -> int:
    async with session_factory() as session:
        return (await session.execute(select(func.count()).select_from(Team))).scalar_one()


class TestCreateEngine:
    """Tests for create_engine."""

    def test_sqlite_uses_null_pool(self, tmp_path):
        """SQLite should use NullPool and turn on its pragmas."""
        with patch("database.async_engine.create_async_engine") as mock_create, \
                patch("database.async_engine._enable_sqlite_pragmas") as mock_pragmas:
            mock_create.return_value = MagicMock()
            engine = create_engine(DatabaseSettings(sqlite_path=tmp_path / "x.db"))

        assert engine is mock_create.return_value
        assert mock_create.call_args[1]["poolclass"] is NullPool
        mock_pragmas.assert_called_once_with(engine)

    def test_postgres_uses_pool_settings(self):
        with patch("database.async_engine.create_async_engine") as mock_create:
            create_engine(DatabaseSettings(driver="postgresql+asyncpg", pool_size=5, max_overflow=2))

        call_kwargs = mock_create.call_args[1]
        assert "poolclass" not in call_kwargs
        assert call_kwargs["pool_size"] == 5
        assert call_kwargs["max_overflow"] == 2
        assert mock_create.call_args[0][0].startswith("postgresql+asyncpg://")

    @pytest.mark.asyncio
    async def test_connection_check(self, db_engine):
        assert await check_database_connection(db_engine) is True


class TestTransactionManager:
    """Tests for TransactionManager."""

    def test_init_with_session(self):
        mock_session = MagicMock(spec=AsyncSession)
        tm = TransactionManager(session=mock_session)
        assert tm.session is mock_session
        assert tm.is_active is False

    @pytest.mark.asyncio
    async def test_begin_raises_if_already_active(self, session_factory):
        tm = TransactionManager(session_factory)
        await tm.begin()
        with pytest.raises(RuntimeError, match="Transaction already active"):
            await tm.begin()
        await tm.close()

    @pytest.mark.asyncio
    async def test_commit_raises_if_not_active(self, session_factory):
        with pytest.raises(RuntimeError, match="No active transaction"):
            await TransactionManager(session_factory).commit()

    @pytest.mark.asyncio
    async def test_rollback_safe_if_not_active(self, session_factory):
        await TransactionManager(session_factory).rollback()

    @pytest.mark.asyncio
    async def test_commits_on_success(self, session_factory):
        async with TransactionManager(session_factory) as session:
            session.add(Team(name="North"))
        assert await team_count(session_factory) == 1

    @pytest.mark.asyncio
    async def test_rolls_back_on_error(self, session_factory):
        """Should discard every write when the block raises."""
        with pytest.raises(ValueError):
            async with TransactionManager(session_factory) as session:
                session.add(Team(name="South"))
                await session.flush()
                raise ValueError("Test error")
        assert await team_count(session_factory) == 0

    @pytest.mark.asyncio
    async def test_close_releases_owned_session(self, session_factory):
        tm = TransactionManager(session_factory)
        await tm.begin()
        await tm.close()
        assert tm.session is None
        assert tm.is_active is False

    @pytest.mark.asyncio
    async def test_joined_session_left_open(self, session_factory):
        async with session_factory() as session:
            tm = TransactionManager(session=session)
            async with tm:
                session.add(Team(name="West"))
            assert tm.session is session
        assert await team_count(session_factory) == 1

    @pytest.mark.asyncio
    async def test_transaction_helper(self, session_factory):
        async with transaction(session_factory) as session:
            session.add(Team(name="East"))
        assert await team_count(session_factory) == 1
