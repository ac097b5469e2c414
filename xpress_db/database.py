# This project was developed with assistance from AI tools.
"""Async SQLAlchemy engine, session factory, and FastAPI session dependency."""

import logging
from collections.abc import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from .config import db_settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


class DatabaseService:
    """Owns the async engine and hands out sessions.

    The engine is created lazily so importing this module never opens a
    connection (tests and the log-only audit backend never touch it).
    """

    def __init__(self, url: str | None = None, echo: bool | None = None):
        self._url = url or db_settings.DATABASE_URL
        self._echo = db_settings.SQL_ECHO if echo is None else echo
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            self._engine = create_async_engine(self._url, echo=self._echo, pool_pre_ping=True)
        return self._engine

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            self._session_factory = async_sessionmaker(self.engine, expire_on_commit=False)
        return self._session_factory

    async def dispose(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
            logger.info("Database engine disposed")


_db_service: DatabaseService | None = None


def get_db_service() -> DatabaseService:
    """Return the process-wide DatabaseService singleton."""
    global _db_service  # noqa: PLW0603
    if _db_service is None:
        _db_service = DatabaseService()
    return _db_service


async def get_db() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency: yield a session, commit on success, roll back on error."""
    async with get_db_service().session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
