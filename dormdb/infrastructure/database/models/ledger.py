# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Ledger models.

- whitelist_entries: identities allowed to apply, maintained by admins
- provisioning_records: one row per identity whose resources exist

identity_key, database_name and account_name are each unique in
provisioning_records. The unique constraint on identity_key is what
decides which of two concurrent requests for the same key wins.
"""

from datetime import datetime

from sqlalchemy import DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from dormdb.infrastructure.database.models.base import Base, TimestampMixin
from dormdb.utils.datetime import utc_now


class ProvisioningRecord(Base):
    """A completed provisioning: the identity and the names issued to it.

    Rows are inserted once and never updated. The account secret is never
    stored.
    """

    __tablename__ = "provisioning_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    identity_key: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    database_name: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    account_name: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        nullable=False,
        index=True,
    )

    def __repr__(self) -> str:
        return f"<ProvisioningRecord {self.identity_key} -> {self.database_name}>"


class WhitelistEntry(Base, TimestampMixin):
    """An identity key allowed to apply for a database."""

    __tablename__ = "whitelist_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    identity_key: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    group_tag: Mapped[str | None] = mapped_column(String(255), nullable=True)

    def __repr__(self) -> str:
        return f"<WhitelistEntry {self.identity_key}>"
