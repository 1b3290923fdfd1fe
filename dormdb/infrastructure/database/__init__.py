# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Database infrastructure.

Two databases are involved:
- Ledger database: whitelist and provisioning records (SQLite by default)
- Backing MySQL server: where per-identity databases and accounts live

Example:
    from dormdb.infrastructure.database import (
        MySQLResourceProvisioner,
        create_ledger_engine,
        create_ledger_sessionmaker,
    )

    engine = create_ledger_engine(settings)
    sessionmaker = create_ledger_sessionmaker(engine)
    provisioner = MySQLResourceProvisioner(settings)
"""

from dormdb.infrastructure.database.connection import (
    DatabaseError,
    check_database_connection,
    create_ledger_engine,
    create_ledger_schema,
    create_ledger_sessionmaker,
)
from dormdb.infrastructure.database.mysql_provisioner import MySQLResourceProvisioner

__all__ = [
    # Ledger database
    "DatabaseError",
    "check_database_connection",
    "create_ledger_engine",
    "create_ledger_schema",
    "create_ledger_sessionmaker",
    # Backing server
    "MySQLResourceProvisioner",
]
