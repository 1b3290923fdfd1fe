# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""MySQL resource provisioner.

Creates, inspects and drops per-identity databases and accounts on a
shared MySQL server through one admin connection pool (aiomysql driver).

Identifiers are only ever placed into statements after they passed the
naming pattern; the account secret is always a bound parameter, so no
logged statement contains it.

Example:
    from dormdb.infrastructure.database import MySQLResourceProvisioner

    provisioner = MySQLResourceProvisioner(settings)
    await provisioner.provision("db_2023010101", "user_2023010101", secret)

    # Cleanup on shutdown
    await provisioner.close()
"""

import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, InterfaceError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from dormdb.domains.provisioning.exceptions import (
    ConnectionFailedError,
    PermissionDeniedError,
    ProvisionError,
    ResourceAlreadyExistsError,
)
from dormdb.domains.provisioning.provisioner import MINIMAL_PRIVILEGES, SagaProvisioner

if TYPE_CHECKING:
    from dormdb.core.config.settings import Settings

logger = logging.getLogger(__name__)

# MySQL server and client error numbers
PERMISSION_DENIED_CODES = frozenset({1044, 1045, 1142, 1227})
CONNECTION_FAILED_CODES = frozenset({2002, 2003, 2006, 2013})
ALREADY_EXISTS_CODES = frozenset({1007, 1396})


def mysql_error_code(error: BaseException) -> int | None:
    """Extract the MySQL error number from a wrapped driver error.

    Args:
        error: SQLAlchemy DBAPIError or raw driver error.

    Returns:
        The numeric error code, or None if there is none.
    """
    orig = getattr(error, "orig", error)
    args = getattr(orig, "args", ())
    if args and isinstance(args[0], int):
        return args[0]
    return None


def translate_error(error: Exception, message: str) -> ProvisionError:
    """Map a SQLAlchemy/driver error onto the provisioning error taxonomy.

    Args:
        error: The caught exception.
        message: Description of the failed operation.

    Returns:
        A ProvisionError subclass instance wrapping the error.
    """
    code = mysql_error_code(error)
    if code in PERMISSION_DENIED_CODES:
        return PermissionDeniedError(message, original_error=error)
    if code in CONNECTION_FAILED_CODES or isinstance(error, InterfaceError):
        return ConnectionFailedError(message, original_error=error)
    if code in ALREADY_EXISTS_CODES:
        return ResourceAlreadyExistsError(message, original_error=error)
    return ProvisionError(message, original_error=error)


def grant_scope(database_name: str) -> str:
    """Database part of a GRANT target with LIKE wildcards escaped.

    ``_`` matches any character in a database-level grant, so
    ``db_x`` would also cover ``dbAx``. The escaped form covers
    exactly one database.
    """
    return database_name.replace("_", r"\_")


class MySQLResourceProvisioner(SagaProvisioner):
    """Resource provisioner for a shared MySQL 8 server.

    Accounts are created at the configured allowed host. Statements run on
    an AUTOCOMMIT connection; MySQL commits DDL and account statements
    implicitly anyway.

    Attributes:
        allowed_host: Host part of every provisioned account.
    """

    def __init__(
        self,
        settings: "Settings",
        engine: AsyncEngine | None = None,
    ) -> None:
        """Initialize the provisioner.

        Args:
            settings: Application settings containing backend configuration.
            engine: Optional admin engine. If not provided, creates one
                from settings.backend_db.
        """
        backend = settings.backend_db
        self.allowed_host = backend.allowed_host
        self._engine = engine or create_async_engine(
            backend.url,
            pool_size=backend.pool_size,
            max_overflow=10,
            pool_pre_ping=True,
            pool_recycle=1800,
            echo=settings.debug,
            isolation_level="AUTOCOMMIT",
            connect_args={"connect_timeout": backend.connect_timeout},
        )

    def _account(self, account_name: str) -> str:
        return f"'{account_name}'@'{self.allowed_host}'"

    async def _execute(
        self, statement: str, params: dict[str, Any] | None = None
    ) -> None:
        logger.debug("Executing: %s", statement)
        try:
            async with self._engine.connect() as conn:
                await conn.execute(text(statement), params or {})
        except DBAPIError as e:
            raise translate_error(e, f"Statement failed: {statement}") from e
        except SQLAlchemyError as e:
            raise ProvisionError(f"Statement failed: {statement}", original_error=e) from e

    async def _fetch_column(
        self, statement: str, params: dict[str, Any] | None = None
    ) -> list[Any]:
        try:
            async with self._engine.connect() as conn:
                result = await conn.execute(text(statement), params or {})
                return [row[0] for row in result.all()]
        except DBAPIError as e:
            raise translate_error(e, f"Query failed: {statement}") from e
        except SQLAlchemyError as e:
            raise ProvisionError(f"Query failed: {statement}", original_error=e) from e

    # =========================================================================
    # Primitives
    # =========================================================================

    async def _create_database(self, database_name: str) -> None:
        await self._execute(
            f"CREATE DATABASE `{database_name}` "
            "CHARACTER SET utf8mb4 COLLATE utf8mb4_unicode_ci"
        )
        logger.info("Created database %s", database_name)

    async def _drop_database(self, database_name: str) -> None:
        await self._execute(f"DROP DATABASE IF EXISTS `{database_name}`")
        logger.info("Dropped database %s", database_name)

    async def _create_account(self, account_name: str, secret: str) -> None:
        await self._execute(
            f"CREATE USER {self._account(account_name)} IDENTIFIED BY :secret",
            {"secret": secret},
        )
        logger.info("Created account %s", self._account(account_name))

    async def _set_account_secret(self, account_name: str, secret: str) -> None:
        await self._execute(
            f"ALTER USER {self._account(account_name)} IDENTIFIED BY :secret",
            {"secret": secret},
        )
        logger.info("Reset secret of account %s", self._account(account_name))

    async def _drop_account(self, account_name: str) -> None:
        await self._execute(f"DROP USER IF EXISTS {self._account(account_name)}")
        logger.info("Dropped account %s", self._account(account_name))

    async def _grant_minimal(self, database_name: str, account_name: str) -> None:
        privileges = ", ".join(sorted(MINIMAL_PRIVILEGES))
        await self._execute(
            f"GRANT {privileges} ON `{grant_scope(database_name)}`.* "
            f"TO {self._account(account_name)}"
        )
        logger.info("Granted minimal privileges on %s to %s", database_name, account_name)

    async def _revoke_all(self, account_name: str) -> None:
        await self._execute(
            f"REVOKE ALL PRIVILEGES, GRANT OPTION FROM {self._account(account_name)}"
        )

    async def _database_exists(self, database_name: str) -> bool:
        rows = await self._fetch_column(
            "SELECT SCHEMA_NAME FROM INFORMATION_SCHEMA.SCHEMATA "
            "WHERE SCHEMA_NAME = :name",
            {"name": database_name},
        )
        return bool(rows)

    async def _account_exists(self, account_name: str) -> bool:
        rows = await self._fetch_column(
            "SELECT User FROM mysql.user WHERE User = :user AND Host = :host",
            {"user": account_name, "host": self.allowed_host},
        )
        return bool(rows)

    async def _granted_privileges(
        self, database_name: str, account_name: str
    ) -> frozenset[str]:
        rows = await self._fetch_column(
            "SELECT PRIVILEGE_TYPE FROM INFORMATION_SCHEMA.SCHEMA_PRIVILEGES "
            "WHERE GRANTEE = :grantee AND TABLE_SCHEMA IN (:name, :scope)",
            {
                "grantee": self._account(account_name),
                "name": database_name,
                "scope": grant_scope(database_name),
            },
        )
        return frozenset(str(p).upper() for p in rows)

    async def _extra_privileges(
        self, database_name: str, account_name: str
    ) -> frozenset[str]:
        grantee = self._account(account_name)
        global_rows = await self._fetch_column(
            "SELECT PRIVILEGE_TYPE FROM INFORMATION_SCHEMA.USER_PRIVILEGES "
            "WHERE GRANTEE = :grantee AND PRIVILEGE_TYPE <> 'USAGE'",
            {"grantee": grantee},
        )
        schema_rows = await self._fetch_column(
            "SELECT CONCAT(PRIVILEGE_TYPE, ' ON ', TABLE_SCHEMA) "
            "FROM INFORMATION_SCHEMA.SCHEMA_PRIVILEGES "
            "WHERE GRANTEE = :grantee AND TABLE_SCHEMA NOT IN (:name, :scope)",
            {
                "grantee": grantee,
                "name": database_name,
                "scope": grant_scope(database_name),
            },
        )
        extra = {f"{p} ON *.*" for p in global_rows}
        extra.update(str(p) for p in schema_rows)
        return frozenset(extra)

    async def _list_databases(self) -> list[str]:
        return [
            str(name)
            for name in await self._fetch_column(
                "SELECT SCHEMA_NAME FROM INFORMATION_SCHEMA.SCHEMATA"
            )
        ]

    async def _list_accounts(self) -> list[str]:
        return [
            str(name)
            for name in await self._fetch_column(
                "SELECT User FROM mysql.user WHERE Host = :host",
                {"host": self.allowed_host},
            )
        ]

    async def check_connection(self) -> bool:
        """Check if the backend server is reachable.

        Returns:
            True if the server answers, False otherwise.
        """
        try:
            await self._fetch_column("SELECT 1")
            return True
        except ProvisionError:
            logger.warning("Backend connection check failed", exc_info=True)
            return False

    async def close(self) -> None:
        """Dispose the admin connection pool."""
        await self._engine.dispose()
        logger.info("Closed backend connection pool")

