# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Pytest configuration and shared fixtures.

This module provides fixtures used across all test types:
- A real SQLite ledger in a temporary directory (aiosqlite)
- An in-memory backing server driven through the production saga code,
  with fault injection per primitive statement
- A ProvisioningEngine wired to both
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Iterator
from dataclasses import dataclass, field
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine

from dormdb.core.config.settings import LedgerDatabaseSettings, Settings
from dormdb.domains.provisioning.exceptions import (
    ConnectionFailedError,
    ProvisionError,
    ResourceAlreadyExistsError,
)
from dormdb.domains.provisioning.ledger import SQLIdentityLedger
from dormdb.domains.provisioning.provisioner import MINIMAL_PRIVILEGES, SagaProvisioner
from dormdb.domains.provisioning.service import ProvisioningEngine
from dormdb.infrastructure.database.connection import (
    create_ledger_engine,
    create_ledger_schema,
    create_ledger_sessionmaker,
)
from dormdb.models.provisioning import WhitelistEntryCreate

WHITELISTED_KEYS = ["2023010101", "2023010102", "2023010103", "2023010104"]


# =============================================================================
# In-memory backing server
# =============================================================================


@dataclass
class InMemoryBackend:
    """State of a fake MySQL server."""

    databases: set[str] = field(default_factory=set)
    accounts: dict[str, str] = field(default_factory=dict)
    grants: dict[str, dict[str, set[str]]] = field(default_factory=dict)
    global_grants: dict[str, set[str]] = field(default_factory=dict)

    def resource_count(self) -> int:
        return len(self.databases) + len(self.accounts)


class InMemoryProvisioner(SagaProvisioner):
    """SagaProvisioner over InMemoryBackend.

    Every primitive yields to the event loop before touching state so
    concurrent requests interleave. Failures are injected per primitive
    name with fail().
    """

    def __init__(self, backend: InMemoryBackend) -> None:
        self.backend = backend
        self.calls: list[str] = []
        self.available = True
        self._failures: dict[str, ProvisionError] = {}

    def fail(self, primitive: str, error: ProvisionError | None = None) -> None:
        """Make every call of a primitive raise until heal() is called."""
        self._failures[primitive] = error or ProvisionError(f"{primitive} failed")

    def heal(self, primitive: str | None = None) -> None:
        if primitive is None:
            self._failures.clear()
        else:
            self._failures.pop(primitive, None)

    async def _enter(self, primitive: str) -> None:
        self.calls.append(primitive)
        await asyncio.sleep(0)
        if not self.available:
            raise ConnectionFailedError("Backend unreachable")
        if primitive in self._failures:
            raise self._failures[primitive]

    async def _create_database(self, database_name: str) -> None:
        await self._enter("create_database")
        if database_name in self.backend.databases:
            raise ResourceAlreadyExistsError(f"Database {database_name} exists")
        self.backend.databases.add(database_name)

    async def _drop_database(self, database_name: str) -> None:
        await self._enter("drop_database")
        self.backend.databases.discard(database_name)
        for grants in self.backend.grants.values():
            grants.pop(database_name, None)

    async def _create_account(self, account_name: str, secret: str) -> None:
        await self._enter("create_account")
        if account_name in self.backend.accounts:
            raise ResourceAlreadyExistsError(f"Account {account_name} exists")
        self.backend.accounts[account_name] = secret
        self.backend.grants[account_name] = {}

    async def _set_account_secret(self, account_name: str, secret: str) -> None:
        await self._enter("set_account_secret")
        if account_name not in self.backend.accounts:
            raise ProvisionError(f"Account {account_name} does not exist")
        self.backend.accounts[account_name] = secret

    async def _drop_account(self, account_name: str) -> None:
        await self._enter("drop_account")
        self.backend.accounts.pop(account_name, None)
        self.backend.grants.pop(account_name, None)
        self.backend.global_grants.pop(account_name, None)

    async def _grant_minimal(self, database_name: str, account_name: str) -> None:
        await self._enter("grant_minimal")
        if account_name not in self.backend.accounts:
            raise ProvisionError(f"Account {account_name} does not exist")
        self.backend.grants[account_name].setdefault(database_name, set()).update(
            MINIMAL_PRIVILEGES
        )

    async def _revoke_all(self, account_name: str) -> None:
        await self._enter("revoke_all")
        if account_name not in self.backend.accounts:
            raise ProvisionError(f"Account {account_name} does not exist")
        self.backend.grants[account_name] = {}
        self.backend.global_grants.pop(account_name, None)

    async def _database_exists(self, database_name: str) -> bool:
        await self._enter("database_exists")
        return database_name in self.backend.databases

    async def _account_exists(self, account_name: str) -> bool:
        await self._enter("account_exists")
        return account_name in self.backend.accounts

    async def _granted_privileges(
        self, database_name: str, account_name: str
    ) -> frozenset[str]:
        await self._enter("granted_privileges")
        return frozenset(self.backend.grants.get(account_name, {}).get(database_name, ()))

    async def _extra_privileges(
        self, database_name: str, account_name: str
    ) -> frozenset[str]:
        await self._enter("extra_privileges")
        extra = {f"{p} ON *.*" for p in self.backend.global_grants.get(account_name, ())}
        for schema, privileges in self.backend.grants.get(account_name, {}).items():
            if schema != database_name:
                extra.update(f"{p} ON {schema}" for p in privileges)
        return frozenset(extra)

    async def _list_databases(self) -> list[str]:
        await self._enter("list_databases")
        return list(self.backend.databases) + ["mysql", "information_schema"]

    async def _list_accounts(self) -> list[str]:
        await self._enter("list_accounts")
        return list(self.backend.accounts) + ["root"]

    async def check_connection(self) -> bool:
        return self.available


# =============================================================================
# Settings Fixtures
# =============================================================================


@pytest.fixture
def ledger_url(tmp_path: Path) -> str:
    """Provide a SQLite ledger URL in a temporary directory."""
    return f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}"


@pytest.fixture
def settings(ledger_url: str) -> Settings:
    """Provide development settings pointing at a temporary ledger."""
    return Settings(
        environment="development",
        ledger_db=LedgerDatabaseSettings(url=ledger_url),
    )


@pytest.fixture(autouse=True)
def detach_log_handler() -> Iterator[None]:
    """Drop the console handler installed by setup_logging after each test.

    The handler writes to whatever sys.stdout was when it was created,
    which is a per-test capture stream.
    """
    yield
    root = logging.getLogger()
    for handler in list(root.handlers):
        if handler.get_name() == "dormdb":
            root.removeHandler(handler)


# =============================================================================
# Ledger Fixtures
# =============================================================================


@pytest_asyncio.fixture
async def ledger_engine(settings: Settings) -> AsyncIterator[AsyncEngine]:
    """Provide a ledger engine with the schema created."""
    engine = create_ledger_engine(settings)
    await create_ledger_schema(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def ledger(ledger_engine: AsyncEngine) -> SQLIdentityLedger:
    """Provide an empty SQLite-backed ledger."""
    return SQLIdentityLedger(create_ledger_sessionmaker(ledger_engine))


@pytest_asyncio.fixture
async def whitelisted_ledger(ledger: SQLIdentityLedger) -> SQLIdentityLedger:
    """Provide a ledger whose whitelist contains WHITELISTED_KEYS."""
    await ledger.import_whitelist(
        [WhitelistEntryCreate(identity_key=key) for key in WHITELISTED_KEYS]
    )
    return ledger


# =============================================================================
# Backend Fixtures
# =============================================================================


@pytest.fixture
def backend() -> InMemoryBackend:
    """Provide an empty in-memory backing server."""
    return InMemoryBackend()


@pytest.fixture
def provisioner(backend: InMemoryBackend) -> InMemoryProvisioner:
    """Provide a provisioner over the in-memory backing server."""
    return InMemoryProvisioner(backend)


@pytest.fixture
def engine(
    whitelisted_ledger: SQLIdentityLedger, provisioner: InMemoryProvisioner
) -> ProvisioningEngine:
    """Provide a ProvisioningEngine over the fakes."""
    return ProvisioningEngine(
        whitelisted_ledger,
        provisioner,
        host="db.example.edu",
        port=3306,
    )


# =============================================================================
# Marker Configuration
# =============================================================================


def pytest_configure(config: pytest.Config) -> None:
    """Configure custom pytest markers."""
    config.addinivalue_line(
        "markers", "unit: mark test as a unit test"
    )
    config.addinivalue_line(
        "markers", "integration: mark test as an integration test (requires services)"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )
