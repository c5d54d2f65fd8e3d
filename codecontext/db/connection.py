"""
Database Connection Manager
===========================

Handles the async connection to the project-specific SQLite database.

Each project owns exactly one datastore file, by default
``<project>/.codecontext/memory.db``. A ``MemoryDatabase`` instance holds the
engine and session maker for that file; there is no module-level global, so
several projects can be open in one process.
"""

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from codecontext.db.models import Base
from codecontext.errors import NotInitialized, StorageFailure

logger = logging.getLogger(__name__)


class MemoryDatabase:
    """Async engine and session factory for one project's datastore file."""

    def __init__(self, db_path: Path, echo: bool = False):
        self.db_path = Path(db_path)
        self.echo = echo
        self._engine: Optional[AsyncEngine] = None
        self._session_maker: Optional[async_sessionmaker[AsyncSession]] = None

    @property
    def is_initialized(self) -> bool:
        return self._session_maker is not None

    async def initialize(self) -> async_sessionmaker[AsyncSession]:
        """
        Create the datastore file (if absent) and all tables.

        Safe to call repeatedly; subsequent calls reuse the open engine.
        """
        if self._session_maker is not None:
            return self._session_maker

        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            engine = create_async_engine(f"sqlite+aiosqlite:///{self.db_path}", echo=self.echo)
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except (SQLAlchemyError, OSError) as e:
            raise StorageFailure("initialize", e) from e

        self._engine = engine
        self._session_maker = async_sessionmaker(engine, expire_on_commit=False)
        logger.debug("Opened memory database at %s", self.db_path)
        return self._session_maker

    def get_session_maker(self) -> async_sessionmaker[AsyncSession]:
        """Get the configured session maker."""
        if self._session_maker is None:
            raise NotInitialized()
        return self._session_maker

    @asynccontextmanager
    async def session(self, operation: str) -> AsyncIterator[AsyncSession]:
        """
        Open a session, translating persistence errors into StorageFailure.

        The session is rolled back if the body raises, so a composite write
        either commits fully or leaves no rows behind.
        """
        maker = self.get_session_maker()
        async with maker() as session:
            try:
                yield session
            except (SQLAlchemyError, OSError) as e:
                await session.rollback()
                logger.warning("Storage failure during %s: %s", operation, e)
                raise StorageFailure(operation, e) from e

    def size_bytes(self) -> int:
        """On-disk size of the datastore file."""
        try:
            return self.db_path.stat().st_size
        except FileNotFoundError:
            return 0
        except OSError as e:
            raise StorageFailure("size_bytes", e) from e

    async def dispose(self) -> None:
        """Close database connections."""
        if self._engine is not None:
            await self._engine.dispose()
        self._engine = None
        self._session_maker = None
