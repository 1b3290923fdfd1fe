# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""SQLAlchemy models for the ledger database."""

from dormdb.infrastructure.database.models.base import Base, TimestampMixin
from dormdb.infrastructure.database.models.ledger import ProvisioningRecord, WhitelistEntry

__all__ = [
    "Base",
    "TimestampMixin",
    "ProvisioningRecord",
    "WhitelistEntry",
]
