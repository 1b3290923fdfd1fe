# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Ledger database connection management using SQLAlchemy async.

The ledger is a small local database (SQLite by default, any SQLAlchemy
async URL works) holding the whitelist and the provisioning records.
Engines and sessionmakers are created here and handed to the ledger
explicitly; nothing is kept in module globals.

Example:
    from dormdb.infrastructure.database.connection import (
        create_ledger_engine,
        create_ledger_sessionmaker,
    )

    engine = create_ledger_engine(settings)
    sessionmaker = create_ledger_sessionmaker(engine)
    async with sessionmaker() as session:
        result = await session.execute(select(ProvisioningRecord))
"""

import logging
from typing import TYPE_CHECKING, Optional

from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from dormdb.infrastructure.database.models import Base

if TYPE_CHECKING:
    from dormdb.core.config.settings import Settings

logger = logging.getLogger(__name__)

# Seconds SQLite waits on a locked database before failing a write
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


def create_ledger_engine(settings: "Settings") -> AsyncEngine:
    """Create the async engine for the ledger database.

    Args:
        settings: Application settings containing the ledger URL.

    Returns:
        AsyncEngine bound to the ledger database.

    Raises:
        DatabaseError: If the engine cannot be created.
    """
    url = make_url(settings.ledger_db.url)
    kwargs: dict = {"echo": settings.ledger_db.echo}

    if url.get_backend_name() == "sqlite":
        kwargs["connect_args"] = {"timeout": SQLITE_BUSY_TIMEOUT}
    else:
        kwargs.update(pool_pre_ping=True, pool_recycle=1800)

    try:
        engine = create_async_engine(url, **kwargs)
    except (SQLAlchemyError, ImportError) as e:
        raise DatabaseError("Failed to initialize ledger database connection", e) from e

    logger.info("Ledger database engine created: %s", url.render_as_string(hide_password=True))
    return engine


def create_ledger_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create the sessionmaker used by the ledger.

    Args:
        engine: Ledger database engine.

    Returns:
        async_sessionmaker producing sessions that keep loaded attributes
        after commit.
    """
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def create_ledger_schema(engine: AsyncEngine) -> None:
    """Create all ledger tables that do not exist yet.

    Intended for tests and throwaway databases; deployed ledgers are
    managed by the migration runner.

    Args:
        engine: Ledger database engine.

    Raises:
        DatabaseError: If table creation fails.
    """
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    except SQLAlchemyError as e:
        raise DatabaseError("Failed to create ledger schema", e) from e


async def check_database_connection(engine: AsyncEngine) -> bool:
    """Check if a database is reachable.

    Args:
        engine: Engine to check.

    Returns:
        True if the database is reachable, False otherwise.
    """
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except SQLAlchemyError:
        logger.warning("Database connection check failed", exc_info=True)
        return False
