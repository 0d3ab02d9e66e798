"""Engine and session lifecycle for the gamification store.

PostgreSQL (asyncpg) in production. SQLite (aiosqlite) backs tests and local
runs; concurrent SQLite writers queue on the database lock for up to
``SQLITE_LOCK_TIMEOUT`` seconds instead of failing immediately.
"""

from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

SQLITE_LOCK_TIMEOUT = 30

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


async def init_db(url: str) -> None:
    """Create the process-wide engine and session factory for ``url``."""
    global _engine, _session_factory  # noqa: PLW0603
    if url.startswith("sqlite"):
        _engine = create_async_engine(url, connect_args={"timeout": SQLITE_LOCK_TIMEOUT})
    else:
        _engine = create_async_engine(url, pool_size=20, max_overflow=10, pool_pre_ping=True)
    # Services keep using ORM rows after committing unlocks and awards
    _session_factory = async_sessionmaker(_engine, class_=AsyncSession, expire_on_commit=False)


async def close_db() -> None:
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


def get_engine() -> AsyncEngine:
    if _engine is None:
        msg = "init_db() has not been called"
        raise RuntimeError(msg)
    return _engine


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """One session per request or job; FastAPI dependency."""
    if _session_factory is None:
        msg = "init_db() has not been called"
        raise RuntimeError(msg)
    async with _session_factory() as session:
        yield session
