import threading
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.ext.asyncio import create_async_engine

from sandcraft.configs.app_configs import DATABASE_URL
from sandcraft.configs.app_configs import DB_ECHO
from sandcraft.configs.app_configs import DB_MAX_OVERFLOW
from sandcraft.configs.app_configs import DB_POOL_SIZE
from sandcraft.utils.logger import setup_logger

logger = setup_logger()


class SqlEngine:
    """Process-wide holder for the async engine and its session factory."""

    _engine: AsyncEngine | None = None
    _session_factory: async_sessionmaker[AsyncSession] | None = None
    _lock: threading.Lock = threading.Lock()

    @classmethod
    def init_engine(
        cls,
        db_url: str = DATABASE_URL,
        **engine_kwargs: Any,
    ) -> AsyncEngine:
        with cls._lock:
            if cls._engine is not None:
                return cls._engine

            if not db_url.startswith("sqlite"):
                engine_kwargs.setdefault("pool_size", DB_POOL_SIZE)
                engine_kwargs.setdefault("max_overflow", DB_MAX_OVERFLOW)
                engine_kwargs.setdefault("pool_pre_ping", True)
                engine_kwargs.setdefault("pool_recycle", 3600)

            cls._engine = create_async_engine(db_url, echo=DB_ECHO, **engine_kwargs)
            cls._session_factory = async_sessionmaker(
                bind=cls._engine, expire_on_commit=False
            )
            logger.notice(f"Initialized SQL engine for {cls._engine.url.drivername}")
            return cls._engine

    @classmethod
    def set_engine(cls, engine: AsyncEngine) -> None:
        """Install an externally built engine, e.g. an in-memory one for tests."""
        with cls._lock:
            cls._engine = engine
            cls._session_factory = async_sessionmaker(
                bind=engine, expire_on_commit=False
            )

    @classmethod
    def get_engine(cls) -> AsyncEngine:
        if cls._engine is None:
            raise RuntimeError("SQL engine is not initialized")
        return cls._engine

    @classmethod
    def get_session_factory(cls) -> async_sessionmaker[AsyncSession]:
        if cls._session_factory is None:
            raise RuntimeError("SQL engine is not initialized")
        return cls._session_factory

    @classmethod
    async def reset_engine(cls) -> None:
        engine = cls._engine
        with cls._lock:
            cls._engine = None
            cls._session_factory = None
        if engine is not None:
            await engine.dispose()


async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding one session per request."""
    async with SqlEngine.get_session_factory()() as session:
        yield session


@asynccontextmanager
async def get_async_session_context_manager() -> AsyncGenerator[AsyncSession, None]:
    async with SqlEngine.get_session_factory()() as session:
        yield session
