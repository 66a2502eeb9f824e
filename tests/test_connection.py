from unittest.mock import AsyncMock, patch

import pytest

from database.connection import DatabaseConfig, DatabaseManager, init_database


class TestDatabaseConfig:
    def test_url_from_parts(self):
        config = DatabaseConfig(host="db", port=5433, database="crm", username="rag", password="secret")
        assert config.async_url == "postgresql+asyncpg://rag:secret@db:5433/crm"

    @pytest.mark.parametrize("url", [
        "postgres://rag:secret@db/crm",
        "postgresql://rag:secret@db/crm",
        "postgresql+asyncpg://rag:secret@db/crm",
    ])
    def test_database_url_is_forced_onto_asyncpg(self, url):
        config = DatabaseConfig(url_override=url)
        assert config.async_url == "postgresql+asyncpg://rag:secret@db/crm"

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("DB_HOST", "pg.internal")
        monkeypatch.setenv("DB_POOL_SIZE", "3")
        monkeypatch.setenv("DB_ECHO", "TRUE")
        monkeypatch.delenv("DATABASE_URL", raising=False)

        config = DatabaseConfig.from_env()

        assert config.host == "pg.internal"
        assert config.pool_size == 3
        assert config.echo is True
        assert config.url_override is None

    def test_connect_args_carry_server_settings(self):
        config = DatabaseConfig(statement_timeout_ms=5000, server_settings={'search_path': 'rag'})
        settings = config.connect_args()['server_settings']
        assert settings == {
            'application_name': 'crm-knowledge-rag',
            'statement_timeout': '5000',
            'search_path': 'rag',
        }


class TestDatabaseManager:
    @pytest.mark.asyncio
    async def test_health_check_skips_pgvector_when_unreachable(self):
        manager = DatabaseManager(DatabaseConfig())
        manager.test_connection = AsyncMock(return_value=False)
        manager.check_pgvector_extension = AsyncMock(return_value=True)

        health = await manager.health_check()

        assert health['connected'] is False
        assert health['pgvector'] is False
        manager.check_pgvector_extension.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_close_without_engine_is_a_no_op(self):
        manager = DatabaseManager(DatabaseConfig())
        await manager.close()
        assert manager._engine is None


class TestInitDatabase:
    @pytest.mark.asyncio
    async def test_fails_when_migrations_fail(self):
        manager = DatabaseManager(DatabaseConfig())
        manager.health_check = AsyncMock()
        with patch("database.migration_manager.MigrationManager.run_migrations", AsyncMock(return_value=False)):
            assert await init_database(manager) is False
        manager.health_check.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_requires_pgvector(self):
        manager = DatabaseManager(DatabaseConfig())
        manager.health_check = AsyncMock(return_value={'connected': True, 'pgvector': False, 'latency_ms': 1})
        with patch("database.migration_manager.MigrationManager.run_migrations", AsyncMock(return_value=True)):
            assert await init_database(manager) is False

    @pytest.mark.asyncio
    async def test_succeeds_when_healthy(self):
        manager = DatabaseManager(DatabaseConfig())
        manager.health_check = AsyncMock(return_value={'connected': True, 'pgvector': True, 'latency_ms': 1})
        with patch("database.migration_manager.MigrationManager.run_migrations", AsyncMock(return_value=True)):
            assert await init_database(manager) is True
