from contextlib import asynccontextmanager
from typing import AsyncGenerator, AsyncContextManager, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker

from bazaar.common.config import get_settings
from bazaar.common.db.models import Base

# Callable returning a transactional scope; services take one of these so
# tests can point them at a throwaway database.
SessionScope = Callable[[], AsyncContextManager[AsyncSession]]

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def configure_database(url: Optional[str] = None, **engine_kwargs) -> AsyncEngine:
    """(Re)bind the module-level engine. Defaults to DATABASE_URL."""
    global _engine, _session_factory
    url = url or get_settings().database_url

    if url.startswith("postgresql"):
        engine_kwargs.setdefault("pool_pre_ping", True)
        engine_kwargs.setdefault("pool_size", 10)
        engine_kwargs.setdefault("max_overflow", 20)

    _engine = create_async_engine(
        url,
        echo=False,  # Set to True for SQL query logging
        **engine_kwargs,
    )
    _session_factory = async_sessionmaker(
        _engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,  # We want explicit flushes usually
    )
    return _engine


def get_engine() -> AsyncEngine:
    if _engine is None:
        configure_database()
    return _engine


async def create_schema(engine: Optional[AsyncEngine] = None) -> None:
    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@asynccontextmanager
async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Provide a transactional scope around a series of operations.
    """
    if _session_factory is None:
        configure_database()
    async with _session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
