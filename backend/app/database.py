"""
Database connection and session management.

Key concepts:
- We use SQLAlchemy 2.0's async API (asyncpg in production, aiosqlite locally)
- AsyncSession gives us non-blocking database calls, which matters because
  store change notifications and uploads share the same event loop
- The document store is the only caller; it opens one short session per
  read or write
"""

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker
from sqlalchemy.pool import NullPool

from app.config import settings


def _engine_options() -> dict:
    """Pool options for the configured backend.

    SQLite connections are opened per checkout (NullPool). aiosqlite binds
    each connection to the loop that opened it, and tests drive the app from
    more than one loop.
    """
    if settings.is_sqlite:
        return {"poolclass": NullPool}
    return {"pool_size": 5, "max_overflow": 10}


engine = create_async_engine(
    settings.DATABASE_URL,
    echo=False,
    **_engine_options(),
)

# Session factory: creates new database sessions
# - expire_on_commit=False means objects stay usable after commit
#   (without this, accessing an attribute after commit triggers a lazy load,
#    which fails with async)
AsyncSessionLocal = sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


async def init_db():
    """Create all tables defined by our models.

    Called once at startup.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
