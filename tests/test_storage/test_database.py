"""Tests for the pooled Database wrapper with a mocked asyncpg pool."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from src.storage.database import Database


def _mock_pool(conn):
    pool = MagicMock()
    acquire_ctx = MagicMock()
    acquire_ctx.__aenter__ = AsyncMock(return_value=conn)
    acquire_ctx.__aexit__ = AsyncMock(return_value=False)
    pool.acquire.return_value = acquire_ctx
    pool.close = AsyncMock()
    return pool


class TestDatabase:
    @pytest.mark.asyncio
    async def test_connect_registers_json_codecs(self):
        pool = _mock_pool(AsyncMock())

        with patch("src.storage.database.asyncpg.create_pool", new=AsyncMock(return_value=pool)) as create:
            db = Database(database_url="postgresql://u:p@localhost/test", min_size=1, max_size=2)
            await db.connect()

        kwargs = create.await_args.kwargs
        assert kwargs["min_size"] == 1
        assert kwargs["max_size"] == 2
        assert kwargs["init"] is not None
        assert db.pool is pool

    def test_pool_before_connect_raises(self):
        with pytest.raises(RuntimeError, match="not connected"):
            Database().pool

    @pytest.mark.asyncio
    async def test_fetchrow_uses_pooled_connection(self):
        conn = AsyncMock()
        conn.fetchrow.return_value = {"code": "X"}
        db = Database()
        db._pool = _mock_pool(conn)

        row = await db.fetchrow("SELECT * FROM alerts WHERE code = $1", "X")

        assert row == {"code": "X"}
        conn.fetchrow.assert_awaited_once_with("SELECT * FROM alerts WHERE code = $1", "X")

    @pytest.mark.asyncio
    async def test_health_check(self):
        conn = AsyncMock()
        conn.fetchval.return_value = 1
        db = Database()
        db._pool = _mock_pool(conn)

        assert await db.health_check() is True

        conn.fetchval.side_effect = OSError("down")
        assert await db.health_check() is False

    @pytest.mark.asyncio
    async def test_close(self):
        pool = _mock_pool(AsyncMock())
        db = Database()
        db._pool = pool

        await db.close()

        pool.close.assert_awaited_once()
        assert db._pool is None
