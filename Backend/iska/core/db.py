from typing import AsyncIterator, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from .config import get_settings


class Base(DeclarativeBase):
    pass


_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def init_engine(database_url: Optional[str] = None) -> AsyncEngine:
    """Create the process-wide engine and session factory from configuration."""
    global _engine, _session_factory

    url = database_url or get_settings().database_url
    options = {"echo": False, "future": True, "pool_pre_ping": True}
    if not url.startswith("sqlite"):
        options.update(
            pool_recycle=3600,  # Recycle connections after 1 hour
            pool_size=10,
            max_overflow=20,
        )
    _engine = create_async_engine(url, **options)
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False, class_=AsyncSession)
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        init_engine()
    return _session_factory


async def get_session() -> AsyncIterator[AsyncSession]:
    async with get_session_factory()() as session:
        yield session
