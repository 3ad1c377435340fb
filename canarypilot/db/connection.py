"""
Database Connection Manager
===========================

Handles the async connection to the SQLite release archive.
"""

from pathlib import Path
from typing import Optional, Union

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from canarypilot.db.models import Base

DEFAULT_DB_PATH = Path(".canarypilot") / "archive.db"

# Global session maker
_async_session_maker: Optional[async_sessionmaker[AsyncSession]] = None
_engine: Optional[AsyncEngine] = None


async def init_db(db_path: Union[str, Path] = DEFAULT_DB_PATH) -> async_sessionmaker[AsyncSession]:
    """
    Initialize the database connection and create tables if they don't exist.
    The parent directory of db_path is created when missing.
    """
    global _async_session_maker, _engine

    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    db_url = f"sqlite+aiosqlite:///{db_path}"

    if _engine is not None:
        await _engine.dispose()
    _engine = create_async_engine(db_url, echo=False)

    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    _async_session_maker = async_sessionmaker(_engine, expire_on_commit=False)
    return _async_session_maker


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    """Get the configured session maker."""
    if _async_session_maker is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _async_session_maker


async def close_db() -> None:
    """Dispose of the engine; init_db() must be called again before reuse."""
    global _async_session_maker, _engine

    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _async_session_maker = None
