# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Ledger migration runner.

Applies the ledger migrations programmatically, without the alembic CLI.
The applied revision is tracked in an ``alembic_version`` table so the
alembic tooling can take over a ledger later.

Example:
    from dormdb.infrastructure.database.migrations.runner import run_ledger_migrations

    # Run all pending migrations
    await run_ledger_migrations("sqlite+aiosqlite:///./dormdb_state.db")
"""

import importlib
import logging
from typing import Any, Callable

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

logger = logging.getLogger(__name__)

MIGRATIONS_PACKAGE = "dormdb.infrastructure.database.migrations.ledger"

# Migration files in order (must be maintained manually)
LEDGER_MIGRATIONS = [
    "001_initial_schema",
]


class MigrationError(Exception):
    """Raised when a migration cannot be loaded or applied."""

    pass


async def run_ledger_migrations(
    db_url: str,
    target_revision: str | None = None,
) -> list[str]:
    """Run pending migrations for the ledger database.

    Args:
        db_url: Async SQLAlchemy URL of the ledger database.
        target_revision: Optional revision to stop at. If None, runs all
            pending migrations.

    Returns:
        List of applied revision IDs.

    Raises:
        MigrationError: If a migration cannot be loaded.
        SQLAlchemyError: If a migration fails.
    """
    engine = create_async_engine(db_url, echo=False)

    try:
        await _ensure_version_table(engine)

        current_version = await _get_current_version(engine)
        logger.info("Current ledger migration version: %s", current_version or "None")

        migrations_to_apply = _get_pending_migrations(current_version, target_revision)
        if not migrations_to_apply:
            logger.info("No pending ledger migrations")
            return []

        logger.info(
            "Applying %d ledger migrations: %s",
            len(migrations_to_apply),
            ", ".join(migrations_to_apply),
        )

        applied = []
        for revision in migrations_to_apply:
            await _apply_migration(engine, revision)
            applied.append(revision)
            logger.info("Applied ledger migration: %s", revision)

        return applied

    finally:
        await engine.dispose()


async def _ensure_version_table(engine: AsyncEngine) -> None:
    """Create alembic_version table if not exists."""
    async with engine.begin() as conn:
        await conn.execute(
            text("""
                CREATE TABLE IF NOT EXISTS alembic_version (
                    version_num VARCHAR(128) NOT NULL,
                    CONSTRAINT alembic_version_pkc PRIMARY KEY (version_num)
                )
            """)
        )


async def _get_current_version(engine: AsyncEngine) -> str | None:
    """Get current migration version from database."""
    async with engine.connect() as conn:
        result = await conn.execute(
            text("SELECT version_num FROM alembic_version LIMIT 1")
        )
        row = result.fetchone()
        return row[0] if row else None


def _get_pending_migrations(
    current_version: str | None,
    target_revision: str | None = None,
) -> list[str]:
    """Get list of migrations to apply.

    Args:
        current_version: Current database version.
        target_revision: Target revision to migrate to.

    Returns:
        List of revision IDs to apply in order.
    """
    if current_version is None:
        start_idx = 0
    else:
        try:
            start_idx = LEDGER_MIGRATIONS.index(current_version) + 1
        except ValueError:
            logger.warning(
                "Current version %s not in known migrations list", current_version
            )
            return []

    if target_revision:
        try:
            end_idx = LEDGER_MIGRATIONS.index(target_revision) + 1
        except ValueError:
            logger.warning("Target revision %s not found", target_revision)
            return []
    else:
        end_idx = len(LEDGER_MIGRATIONS)

    return LEDGER_MIGRATIONS[start_idx:end_idx]


async def _apply_migration(engine: AsyncEngine, revision: str) -> None:
    """Apply a single migration and record its revision.

    Raises:
        MigrationError: If the migration module cannot be loaded.
    """
    try:
        module = importlib.import_module(f"{MIGRATIONS_PACKAGE}.{revision}")
    except ImportError as e:
        raise MigrationError(f"Cannot import migration {revision}: {e}") from e

    upgrade_fn: Callable[[], None] | None = getattr(module, "upgrade", None)
    if upgrade_fn is None:
        raise MigrationError(f"Migration {revision} has no upgrade() function")

    async with engine.begin() as conn:
        await conn.run_sync(_run_upgrade_sync, upgrade_fn)

        await conn.execute(text("DELETE FROM alembic_version"))
        await conn.execute(
            text("INSERT INTO alembic_version (version_num) VALUES (:version)"),
            {"version": revision},
        )


def _run_upgrade_sync(connection, upgrade_fn: Callable[[], None]) -> None:
    """Run an upgrade function with alembic operations bound to the connection."""
    from alembic.operations import Operations
    from alembic.runtime.migration import MigrationContext

    context = MigrationContext.configure(connection)

    with context.begin_transaction():
        with Operations.context(context):
            upgrade_fn()


async def get_migration_status(db_url: str) -> dict[str, Any]:
    """Get migration status for the ledger database.

    Args:
        db_url: Async SQLAlchemy URL of the ledger database.

    Returns:
        Dict with current version, pending migrations, and all migrations.
    """
    engine = create_async_engine(db_url, echo=False)

    try:
        await _ensure_version_table(engine)
        current_version = await _get_current_version(engine)
        pending = _get_pending_migrations(current_version)

        return {
            "current_version": current_version,
            "latest_version": LEDGER_MIGRATIONS[-1] if LEDGER_MIGRATIONS else None,
            "pending_count": len(pending),
            "pending_migrations": pending,
            "all_migrations": LEDGER_MIGRATIONS,
            "is_up_to_date": len(pending) == 0,
        }
    finally:
        await engine.dispose()
