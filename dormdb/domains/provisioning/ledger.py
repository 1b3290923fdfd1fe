# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Identity ledger: whitelist lookups and provisioning records.

The ledger is the single source of truth for which identities own
backend resources. Duplicate prevention relies on the storage-level
unique constraint on identity_key: record() raises DuplicateRecordError
when the insert violates it, regardless of any earlier exists() check.

The engine and auditor depend on the IdentityLedger protocol only, so
tests and alternative stores can supply their own implementation.

Example:
    >>> ledger = SQLIdentityLedger(sessionmaker)
    >>> if await ledger.is_whitelisted("2023010101"):
    ...     await ledger.record("2023010101", "db_2023010101", "user_2023010101")
"""

import logging
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Protocol

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dormdb.domains.provisioning.naming import is_valid_identity_key
from dormdb.infrastructure.database.connection import DatabaseError
from dormdb.infrastructure.database.models import ProvisioningRecord, WhitelistEntry
from dormdb.models.provisioning import (
    ProvisioningRecordInfo,
    WhitelistEntryCreate,
    WhitelistImportResult,
    WhitelistStats,
)
from dormdb.utils.datetime import ensure_utc

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 500


class LedgerError(DatabaseError):
    """Raised when the ledger store fails."""

    pass


class DuplicateRecordError(LedgerError):
    """Raised when an insert violates a ledger unique constraint."""

    pass


class IdentityLedger(Protocol):
    """Storage interface consumed by the engine and the auditor."""

    async def is_whitelisted(self, identity_key: str) -> bool: ...

    async def exists(self, identity_key: str) -> bool: ...

    async def get(self, identity_key: str) -> ProvisioningRecordInfo | None: ...

    async def record(
        self, identity_key: str, database_name: str, account_name: str
    ) -> ProvisioningRecordInfo: ...

    async def remove(self, identity_key: str) -> bool: ...

    async def list_records(
        self,
        limit: int = 100,
        offset: int = 0,
        identity_prefix: str | None = None,
    ) -> list[ProvisioningRecordInfo]: ...

    def iter_records(
        self, page_size: int = 100, start_offset: int = 0
    ) -> AsyncIterator[ProvisioningRecordInfo]: ...

    async def count_records(self, since: datetime | None = None) -> int: ...

    async def check_connection(self) -> bool: ...


def _to_info(row: ProvisioningRecord) -> ProvisioningRecordInfo:
    return ProvisioningRecordInfo(
        identity_key=row.identity_key,
        database_name=row.database_name,
        account_name=row.account_name,
        created_at=ensure_utc(row.created_at),
    )


class SQLIdentityLedger:
    """IdentityLedger backed by a SQLAlchemy async database.

    Every call runs in its own short session that commits on success and
    rolls back on error, so no transaction is held open across backend
    calls made by the engine.

    Attributes:
        _sessionmaker: Factory for ledger sessions.
    """

    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]) -> None:
        """Initialize the ledger.

        Args:
            sessionmaker: Sessionmaker bound to the ledger database.
        """
        self._sessionmaker = sessionmaker

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        async with self._sessionmaker() as session:
            try:
                yield session
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise DuplicateRecordError("Ledger unique constraint violated", e) from e
            except SQLAlchemyError as e:
                await session.rollback()
                raise LedgerError("Ledger operation failed", e) from e
            except Exception:
                await session.rollback()
                raise

    # =========================================================================
    # Whitelist
    # =========================================================================

    async def is_whitelisted(self, identity_key: str) -> bool:
        """Check whether the identity key is on the whitelist."""
        async with self._session() as session:
            result = await session.execute(
                select(WhitelistEntry.id).where(WhitelistEntry.identity_key == identity_key)
            )
            return result.scalar_one_or_none() is not None

    async def add_whitelist_entry(self, entry: WhitelistEntryCreate) -> None:
        """Add one identity to the whitelist.

        Raises:
            ValueError: If the identity key format is invalid.
            DuplicateRecordError: If the key is already whitelisted.
        """
        if not is_valid_identity_key(entry.identity_key):
            raise ValueError(f"Invalid identity key: {entry.identity_key!r}")
        async with self._session() as session:
            session.add(
                WhitelistEntry(
                    identity_key=entry.identity_key,
                    display_name=entry.display_name,
                    group_tag=entry.group_tag,
                )
            )

    async def remove_whitelist_entry(self, identity_key: str) -> bool:
        """Remove an identity from the whitelist.

        Existing provisioning records are not touched.

        Returns:
            True if an entry was removed.
        """
        async with self._session() as session:
            result = await session.execute(
                delete(WhitelistEntry).where(WhitelistEntry.identity_key == identity_key)
            )
            return result.rowcount > 0

    async def update_whitelist_entry(
        self,
        identity_key: str,
        display_name: str | None = None,
        group_tag: str | None = None,
    ) -> bool:
        """Replace the display name and group of a whitelisted identity.

        Both fields are overwritten, so passing None clears them.

        Returns:
            True if the entry exists and was updated.
        """
        async with self._session() as session:
            existing = (
                await session.execute(
                    select(WhitelistEntry).where(WhitelistEntry.identity_key == identity_key)
                )
            ).scalar_one_or_none()
            if existing is None:
                return False
            existing.display_name = display_name
            existing.group_tag = group_tag
            return True

    async def whitelist_stats(self) -> WhitelistStats:
        """Count whitelisted identities and how many of them have applied.

        An identity counts as applied while it has a provisioning record;
        records whose key has since left the whitelist are not counted.
        """
        applied_stmt = select(func.count(WhitelistEntry.id)).join(
            ProvisioningRecord,
            ProvisioningRecord.identity_key == WhitelistEntry.identity_key,
        )
        async with self._session() as session:
            total = (await session.execute(select(func.count(WhitelistEntry.id)))).scalar() or 0
            applied = (await session.execute(applied_stmt)).scalar() or 0
        return WhitelistStats(
            total_count=total,
            applied_count=applied,
            not_applied_count=total - applied,
        )

    async def import_whitelist(
        self,
        entries: Iterable[WhitelistEntryCreate],
        overwrite_existing: bool = False,
    ) -> WhitelistImportResult:
        """Insert (and optionally update) whitelist entries in one transaction.

        Invalid or already present keys are reported in the result rather
        than aborting the import.

        Args:
            entries: Entries to import.
            overwrite_existing: Update name and group of keys already present.

        Returns:
            WhitelistImportResult with counts and per-entry errors.
        """
        result = WhitelistImportResult()
        seen: set[str] = set()

        async with self._session() as session:
            for entry in entries:
                key = entry.identity_key
                if not is_valid_identity_key(key):
                    result.errors.append(f"Invalid identity key format: {key!r}")
                    continue
                if key in seen:
                    result.errors.append(f"Duplicate identity key in import: {key!r}")
                    continue
                seen.add(key)

                existing = (
                    await session.execute(
                        select(WhitelistEntry).where(WhitelistEntry.identity_key == key)
                    )
                ).scalar_one_or_none()

                if existing is None:
                    session.add(
                        WhitelistEntry(
                            identity_key=key,
                            display_name=entry.display_name,
                            group_tag=entry.group_tag,
                        )
                    )
                    result.imported_count += 1
                elif overwrite_existing:
                    existing.display_name = entry.display_name
                    existing.group_tag = entry.group_tag
                    result.updated_count += 1
                else:
                    result.errors.append(f"Identity key already whitelisted: {key!r}")

        logger.info(
            "Whitelist import: %d imported, %d updated, %d errors",
            result.imported_count,
            result.updated_count,
            len(result.errors),
        )
        return result

    # =========================================================================
    # Provisioning records
    # =========================================================================

    async def exists(self, identity_key: str) -> bool:
        """Check whether a provisioning record exists for the key."""
        async with self._session() as session:
            result = await session.execute(
                select(ProvisioningRecord.id).where(
                    ProvisioningRecord.identity_key == identity_key
                )
            )
            return result.scalar_one_or_none() is not None

    async def get(self, identity_key: str) -> ProvisioningRecordInfo | None:
        """Get the provisioning record for the key, if any."""
        async with self._session() as session:
            result = await session.execute(
                select(ProvisioningRecord).where(
                    ProvisioningRecord.identity_key == identity_key
                )
            )
            row = result.scalar_one_or_none()
            return _to_info(row) if row is not None else None

    async def record(
        self, identity_key: str, database_name: str, account_name: str
    ) -> ProvisioningRecordInfo:
        """Insert the provisioning record for a completed provisioning.

        Returns:
            The stored record.

        Raises:
            DuplicateRecordError: If a record for the key (or its names)
                already exists.
            LedgerError: On any other storage failure.
        """
        row = ProvisioningRecord(
            identity_key=identity_key,
            database_name=database_name,
            account_name=account_name,
        )
        async with self._session() as session:
            session.add(row)
            await session.flush()
        return _to_info(row)

    async def remove(self, identity_key: str) -> bool:
        """Delete the provisioning record for the key.

        Returns:
            True if a record was deleted.
        """
        async with self._session() as session:
            result = await session.execute(
                delete(ProvisioningRecord).where(
                    ProvisioningRecord.identity_key == identity_key
                )
            )
            return result.rowcount > 0

    async def list_records(
        self,
        limit: int = 100,
        offset: int = 0,
        identity_prefix: str | None = None,
    ) -> list[ProvisioningRecordInfo]:
        """List provisioning records, newest first.

        Args:
            limit: Page size, clamped to 1..MAX_PAGE_SIZE.
            offset: Number of records to skip.
            identity_prefix: Only keys starting with this prefix.

        Returns:
            One page of records.
        """
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        offset = max(0, offset)

        stmt = select(ProvisioningRecord)
        if identity_prefix:
            stmt = stmt.where(
                ProvisioningRecord.identity_key.startswith(identity_prefix, autoescape=True)
            )
        stmt = (
            stmt.order_by(ProvisioningRecord.created_at.desc(), ProvisioningRecord.id.desc())
            .limit(limit)
            .offset(offset)
        )

        async with self._session() as session:
            result = await session.execute(stmt)
            return [_to_info(row) for row in result.scalars().all()]

    async def iter_records(
        self, page_size: int = 100, start_offset: int = 0
    ) -> AsyncIterator[ProvisioningRecordInfo]:
        """Iterate over every record in insertion order, one page at a time.

        Each page is read in its own session. Iteration can be resumed by
        passing the number of records already consumed as start_offset.

        Args:
            page_size: Records per page, clamped to 1..MAX_PAGE_SIZE.
            start_offset: Number of records to skip.

        Yields:
            ProvisioningRecordInfo in ascending insertion order.
        """
        page_size = max(1, min(page_size, MAX_PAGE_SIZE))
        offset = max(0, start_offset)

        while True:
            async with self._session() as session:
                result = await session.execute(
                    select(ProvisioningRecord)
                    .order_by(ProvisioningRecord.id)
                    .limit(page_size)
                    .offset(offset)
                )
                page = [_to_info(row) for row in result.scalars().all()]

            for info in page:
                yield info

            if len(page) < page_size:
                return
            offset += page_size

    async def count_records(self, since: datetime | None = None) -> int:
        """Count provisioning records, optionally created at or after a time."""
        stmt = select(func.count(ProvisioningRecord.id))
        if since is not None:
            stmt = stmt.where(ProvisioningRecord.created_at >= since)
        async with self._session() as session:
            result = await session.execute(stmt)
            return result.scalar() or 0

    async def check_connection(self) -> bool:
        """Check that the ledger database answers a trivial query."""
        try:
            async with self._session() as session:
                await session.execute(select(1))
            return True
        except LedgerError:
            logger.warning("Ledger connection check failed", exc_info=True)
            return False
