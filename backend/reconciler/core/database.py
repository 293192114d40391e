"""Async engine and sessions for the subscription ledger.

The engine is built on first use so models and Alembic can import ``Base``
without a database. Ledger writes rely on row counts from conditional
UPDATEs, so sessions never autoflush behind the guard's back.
"""

from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import NullPool

Base = declarative_base()

engine = None
AsyncSessionLocal = None


def get_engine():
    """Ledger engine; NullPool under tests so each session gets its own connection."""
    global engine
    if engine is None:
        from reconciler.core.config import settings

        engine = create_async_engine(
            settings.DATABASE_URL,
            echo=settings.ENVIRONMENT == "development",
            future=True,
            pool_pre_ping=settings.ENVIRONMENT != "test",
            poolclass=NullPool if settings.ENVIRONMENT == "test" else None,
        )
    return engine


def get_session_factory():
    """Session factory shared by the API and the renewal worker."""
    global AsyncSessionLocal
    if AsyncSessionLocal is None:
        AsyncSessionLocal = sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autocommit=False,
            autoflush=False,
        )
    return AsyncSessionLocal


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: one session per request.

    Commits when the route returns and rolls back if it raises, so a failed
    reconcile never leaves half-written repair state behind.
    """
    session_factory = get_session_factory()
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def close_db() -> None:
    """Dispose the engine on shutdown; a no-op if it was never created."""
    global engine, AsyncSessionLocal
    if engine is not None:
        await engine.dispose()
    engine = None
    AsyncSessionLocal = None
