"""Database connection and session management."""
from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from src.config import settings
from src.core.dispatcher import dispatcher

engine = create_async_engine(
    settings.database.url,
    echo=settings.database.echo,
)

async_session = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)

# Alias for workflows and scheduled jobs that open their own sessions
async_session_factory = async_session


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency for getting database sessions.

    Workflows queued on the session through the dispatcher only start once
    the commit below has succeeded.
    """
    async with async_session() as session:
        try:
            yield session
            await session.commit()
            await dispatcher.release(session)
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    """Initialize database tables."""
    from src.db.models import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Close database connections."""
    await engine.dispose()
