"""Async database engine setup for Docflow.

A single SQLite database (via aiosqlite) holds all pipeline state so that a
batch's classifications, proposals, status updates and watermark advance
commit in one transaction.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING

from sqlalchemy import event
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from docflow.core.errors import TransientIOError

if TYPE_CHECKING:
    from docflow.config import Settings

# Lazy engine initialization - engine created on first use
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _enable_foreign_keys(dbapi_conn: object, connection_record: object) -> None:
    """Enable foreign key constraints for SQLite connections."""
    cursor = dbapi_conn.cursor()  # type: ignore[union-attr]
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_engine_for_db(db_path: Path) -> AsyncEngine:
    """Create an async SQLite engine with proper configuration."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{db_path}",
        echo=False,
        pool_pre_ping=True,
    )
    event.listen(engine.sync_engine, "connect", _enable_foreign_keys)
    return engine


def get_engine(settings: "Settings | None" = None) -> AsyncEngine:
    """Get or create the database engine."""
    global _engine
    if _engine is None:
        if settings is None:
            from docflow.config import get_settings

            settings = get_settings()
        settings.ensure_storage_dir()
        _engine = create_engine_for_db(settings.db_path)
    return _engine


def get_session_factory(settings: "Settings | None" = None) -> async_sessionmaker[AsyncSession]:
    """Get or create the session factory."""
    global _session_factory
    if _session_factory is None:
        engine = get_engine(settings)
        _session_factory = async_sessionmaker(bind=engine, expire_on_commit=False)
    return _session_factory


@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Yield a session that commits on success and rolls back on error.

    SQLite lock and I/O failures surface as TransientIOError.
    """
    session = factory()
    try:
        yield session
        await session.commit()
    except OperationalError as exc:
        await session.rollback()
        msg = f"Database operation failed: {exc.orig}"
        raise TransientIOError(msg) from exc
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


@asynccontextmanager
async def get_session(settings: "Settings | None" = None) -> AsyncGenerator[AsyncSession, None]:
    """Yield a transactional session from the global factory."""
    async with session_scope(get_session_factory(settings)) as session:
        yield session


async def init_database(settings: "Settings | None" = None) -> None:
    """Create all tables and the documentation FTS index."""
    from docflow.db.models import Base, init_fts

    engine = get_engine(settings)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        await conn.run_sync(init_fts)


async def reset_engine() -> None:
    """Dispose the engine and clear caches (useful for testing)."""
    global _engine, _session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
    _session_factory = None
