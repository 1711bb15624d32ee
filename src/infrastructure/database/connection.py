# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Ledger database connection management using SQLAlchemy async.

The operation ledger is the single point of coordination between
lifecycle operations, so its connection is an explicit handle that is
built at startup and passed to the ledger, never a module-level global.

Uses SQLAlchemy 2.0 async API with the asyncpg driver in production and
aiosqlite for local runs and tests.

Example:
    from src.infrastructure.database.connection import LedgerDatabase

    database = LedgerDatabase.from_settings(settings)
    await database.init()
    await database.create_schema()

    async with database.session() as session:
        result = await session.execute(select(LifecycleOperationRecord))

    await database.close()
"""

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, AsyncIterator, Optional

from sqlalchemy import event, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from src.infrastructure.database.models import Base

if TYPE_CHECKING:
    from src.core.config.settings import Settings

# Seconds a SQLite connection waits for a competing writer
SQLITE_BUSY_TIMEOUT = 30


class DatabaseError(Exception):
    """Base exception for database operations.

    Attributes:
        message: Human-readable error description.
        original_error: The underlying SQLAlchemy or database error.
    """

    def __init__(self, message: str, original_error: Optional[Exception] = None) -> None:
        """Initialize the database error.

        Args:
            message: Human-readable error description.
            original_error: The underlying exception that caused this error.
        """
        super().__init__(message)
        self.message = message
        self.original_error = original_error

    def __str__(self) -> str:
        """Return string representation of the error."""
        if self.original_error:
            return f"{self.message}: {self.original_error}"
        return self.message


class LedgerDatabase:
    """Async engine and session factory for the ledger database.

    Attributes:
        url: SQLAlchemy database URL.
    """

    def __init__(
        self,
        url: str,
        pool_size: int = 5,
        max_overflow: int = 10,
        echo: bool = False,
    ) -> None:
        self.url = url
        self._pool_size = pool_size
        self._max_overflow = max_overflow
        self._echo = echo
        self._engine: AsyncEngine | None = None
        self._sessionmaker: async_sessionmaker[AsyncSession] | None = None

    @classmethod
    def from_settings(cls, settings: "Settings") -> "LedgerDatabase":
        """Build a handle from application settings."""
        return cls(
            url=settings.ledger_db.url,
            pool_size=settings.ledger_db.pool_size,
            max_overflow=settings.ledger_db.max_overflow,
            echo=settings.debug and not settings.ledger_db.is_sqlite,
        )

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")

    async def init(self) -> None:
        """Create the connection pool.

        Raises:
            DatabaseError: If connection pool creation fails.
        """
        engine_kwargs: dict[str, Any] = {"echo": self._echo}
        if self.is_sqlite:
            engine_kwargs["connect_args"] = {"timeout": SQLITE_BUSY_TIMEOUT}
        else:
            engine_kwargs.update(
                pool_size=self._pool_size,
                max_overflow=self._max_overflow,
                pool_pre_ping=True,
                pool_recycle=1800,
            )

        try:
            self._engine = create_async_engine(self.url, **engine_kwargs)
        except SQLAlchemyError as e:
            raise DatabaseError("Failed to initialize ledger database connection", e) from e

        if self.is_sqlite:
            event.listen(self._engine.sync_engine, "connect", _enable_sqlite_foreign_keys)

        self._sessionmaker = async_sessionmaker(
            bind=self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    async def close(self) -> None:
        """Dispose of the connection pool."""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._sessionmaker = None

    @property
    def engine(self) -> AsyncEngine:
        """Get the async engine.

        Raises:
            DatabaseError: If the database has not been initialized.
        """
        if self._engine is None:
            raise DatabaseError("Ledger database not initialized. Call init() first.")
        return self._engine

    async def create_schema(self) -> None:
        """Create ledger tables that do not exist yet."""
        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except SQLAlchemyError as e:
            raise DatabaseError("Failed to create ledger schema", e) from e

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Get an async session for the ledger database.

        The session is committed on success and rolled back on exception.

        Yields:
            AsyncSession for database operations.

        Raises:
            DatabaseError: If the database has not been initialized or
                if a database operation fails.
        """
        if self._sessionmaker is None:
            raise DatabaseError("Ledger database not initialized. Call init() first.")

        async with self._sessionmaker() as session:
            try:
                yield session
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                raise DatabaseError("Ledger database operation failed", e) from e
            except Exception:
                await session.rollback()
                raise

    async def check_connection(self) -> bool:
        """Check if the ledger database is reachable.

        Returns:
            True if the database is reachable, False otherwise.
        """
        if self._engine is None:
            return False

        try:
            async with self._engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError:
            return False


def _enable_sqlite_foreign_keys(dbapi_connection: Any, connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()
