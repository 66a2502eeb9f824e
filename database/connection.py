"""
Async engine and session management for the knowledge store (PostgreSQL + pgvector)
"""

import os
import time
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator, Dict, Optional
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base

load_dotenv()

logger = logging.getLogger(__name__)

Base = declarative_base()

ASYNC_DRIVER_PREFIX = "postgresql+asyncpg://"


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


@dataclass
class DatabaseConfig:
    """Connection settings; DATABASE_URL wins over the individual DB_* variables"""
    host: str = 'localhost'
    port: int = 5432
    database: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    url_override: Optional[str] = None
    pool_size: int = 10
    max_overflow: int = 20
    pool_timeout: int = 30
    pool_recycle: int = 3600
    statement_timeout_ms: int = 30000
    application_name: str = 'crm-knowledge-rag'
    echo: bool = False
    server_settings: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_env(cls) -> "DatabaseConfig":
        return cls(
            host=os.getenv('DB_HOST', 'localhost'),
            port=_env_int('DB_PORT', 5432),
            database=os.getenv('DB_NAME'),
            username=os.getenv('DB_USER'),
            password=os.getenv('DB_PASSWORD'),
            url_override=os.getenv('DATABASE_URL'),
            pool_size=_env_int('DB_POOL_SIZE', 10),
            max_overflow=_env_int('DB_MAX_OVERFLOW', 20),
            pool_timeout=_env_int('DB_POOL_TIMEOUT', 30),
            pool_recycle=_env_int('DB_POOL_RECYCLE', 3600),
            statement_timeout_ms=_env_int('DB_STATEMENT_TIMEOUT_MS', 30000),
            application_name=os.getenv('DB_APPLICATION_NAME', 'crm-knowledge-rag'),
            echo=os.getenv('DB_ECHO', 'false').lower() == 'true',
        )

    @property
    def async_url(self) -> str:
        """Connection URL forced onto the asyncpg driver"""
        if self.url_override:
            url = self.url_override
            for prefix in ("postgresql+asyncpg://", "postgresql://", "postgres://"):
                if url.startswith(prefix):
                    return ASYNC_DRIVER_PREFIX + url[len(prefix):]
            return url
        return f"{ASYNC_DRIVER_PREFIX}{self.username}:{self.password}@{self.host}:{self.port}/{self.database}"

    def connect_args(self) -> Dict[str, Any]:
        settings = {
            'application_name': self.application_name,
            'statement_timeout': str(self.statement_timeout_ms),
        }
        settings.update(self.server_settings)
        return {'server_settings': settings}


class DatabaseManager:
    """Owns the async engine and hands out transactional sessions"""

    def __init__(self, config: Optional[DatabaseConfig] = None):
        self.config = config or DatabaseConfig.from_env()
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker] = None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            self._engine = create_async_engine(
                self.config.async_url,
                pool_size=self.config.pool_size,
                max_overflow=self.config.max_overflow,
                pool_timeout=self.config.pool_timeout,
                pool_recycle=self.config.pool_recycle,
                pool_pre_ping=True,
                echo=self.config.echo,
                connect_args=self.config.connect_args(),
            )
            logger.info(f"Created async engine for {self.config.host}:{self.config.port}/{self.config.database}")
        return self._engine

    @property
    def session_factory(self) -> async_sessionmaker:
        if self._session_factory is None:
            self._session_factory = async_sessionmaker(
                bind=self.engine,
                class_=AsyncSession,
                autoflush=False,
                expire_on_commit=False,
            )
        return self._session_factory

    @asynccontextmanager
    async def get_async_session(self) -> AsyncGenerator[AsyncSession, None]:
        """Yield a session that commits on success and rolls back on any error"""
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception as e:
                await session.rollback()
                logger.error(f"Rolled back knowledge store session: {e}")
                raise

    async def _scalar(self, sql: str) -> Any:
        async with self.get_async_session() as session:
            result = await session.execute(text(sql))
            return result.scalar()

    async def test_connection(self) -> bool:
        try:
            return await self._scalar("SELECT 1") == 1
        except Exception as e:
            logger.error(f"Database connection test failed: {e}")
            return False

    async def check_pgvector_extension(self) -> bool:
        try:
            return bool(await self._scalar(
                "SELECT EXISTS(SELECT 1 FROM pg_extension WHERE extname = 'vector')"
            ))
        except Exception as e:
            logger.error(f"pgvector extension check failed: {e}")
            return False

    async def health_check(self) -> Dict[str, Any]:
        """Connectivity, pgvector availability and round-trip latency"""
        started = time.perf_counter()
        connected = await self.test_connection()
        latency_ms = int((time.perf_counter() - started) * 1000)
        return {
            'connected': connected,
            'pgvector': connected and await self.check_pgvector_extension(),
            'latency_ms': latency_ms,
        }

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            logger.info("Disposed async engine")
        self._engine = None
        self._session_factory = None


async def init_database(manager: DatabaseManager) -> bool:
    """
    Startup hook: apply pending migrations, then verify connectivity and pgvector.
    Returns False instead of raising so the caller decides whether to abort.
    """
    from database.migration_manager import MigrationManager

    try:
        if not await MigrationManager(manager).run_migrations():
            logger.error("Knowledge store migrations failed")
            return False

        health = await manager.health_check()
        if not health['connected']:
            logger.error("Database unreachable after migrations")
            return False
        if not health['pgvector']:
            logger.error("pgvector extension is not installed")
            return False

        logger.info(f"Knowledge store ready ({health['latency_ms']}ms round trip)")
        return True
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        return False
