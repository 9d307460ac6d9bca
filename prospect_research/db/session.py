"""
Database session and engine configuration.

Sets up the async database connection using SQLAlchemy + asyncpg. The engine
and session factory are built from an explicit database URL so the API app
and the worker each own their own instance.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create the async engine (echo=True prints SQL, useful when debugging)."""
    return create_async_engine(database_url, echo=echo, future=True, pool_pre_ping=True)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,  # Keeps data accessible after commit
    )


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """
    Get a database session bound to the application's session factory.

    Usage in a FastAPI endpoint:
        @router.get("/health")
        async def health(db: AsyncSession = Depends(get_db)):
            ...
    """
    session_factory: async_sessionmaker[AsyncSession] = request.app.state.session_factory
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


@asynccontextmanager
async def get_async_session_context(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Context manager helper for one unit of work (used by repositories and scripts)."""
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()
