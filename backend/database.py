"""
Database engine and session management for the Storefront Payments API.

The ledger and orders live in SQLite through aiosqlite. Two properties of the
connection matter for reconciliation:

    * foreign keys are enforced, so a payment can never point at a missing
      order or user;
    * writers wait on a locked database instead of failing immediately, so
      conditional UPDATEs from separate sessions or worker processes queue up
      and the loser sees a zero row count rather than "database is locked".

Tables are created on startup via init_db().
"""
import logging
from typing import AsyncGenerator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from config import settings

logger = logging.getLogger(__name__)

SQLITE_BUSY_TIMEOUT_MS = 5000


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""
    pass


def to_async_url(url: str) -> str:
    """Map a sync SQLite URL onto the aiosqlite driver; other URLs pass through."""
    if url.startswith("sqlite:///"):
        return "sqlite+aiosqlite:///" + url[len("sqlite:///"):]
    if url == "sqlite://":
        return "sqlite+aiosqlite://"
    return url


def _apply_sqlite_pragmas(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}")
    cursor.close()


def build_engine(url: str, **kwargs) -> AsyncEngine:
    """
    Create an async engine for ``url``.

    SQLite connections get the pragmas above on every new DBAPI connection.
    Extra keyword arguments go straight to create_async_engine (tests pass
    poolclass=StaticPool for in-memory databases).
    """
    new_engine = create_async_engine(to_async_url(url), echo=False, **kwargs)
    if new_engine.dialect.name == "sqlite":
        event.listen(new_engine.sync_engine, "connect", _apply_sqlite_pragmas)
    return new_engine


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Services read attributes after commit; keep them loaded.
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


engine = build_engine(settings.database_url)
async_session = build_session_factory(engine)


async def init_db(bind: AsyncEngine | None = None) -> None:
    """Create all tables. Called once on server startup."""
    # Import models so Base.metadata knows about them
    import db_models  # noqa: F401

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("Database tables created (or already exist)")


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency: one session per request.

    An exception escaping the handler rolls back whatever the request left
    uncommitted before the session is closed.
    """
    async with async_session() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
