# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Resource provisioner interface and compensating-step executor.

The backing server cannot create a database, an account and a grant in
one transaction. Provisioning is therefore run as an ordered list of
steps, each paired with an inverse. Progress is tracked by step index;
when step k fails, the inverses of the completed steps k-1..1 run in
reverse order before the error is raised.

Concrete backends subclass SagaProvisioner and implement the primitive
statements (_create_database, _drop_account, ...). The engine and the
auditor only see the ResourceProvisioner protocol.

Example:
    >>> provisioner = MySQLResourceProvisioner(settings)
    >>> await provisioner.provision("db_2023010101", "user_2023010101", secret)
    >>> state = await provisioner.introspect("db_2023010101", "user_2023010101")
    >>> state.complete
    True
"""

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Protocol

from dormdb.domains.provisioning.exceptions import (
    CompensationFailedError,
    ProvisionError,
)
from dormdb.domains.provisioning.naming import (
    ensure_account_name,
    ensure_database_name,
    identity_from_account_name,
    identity_from_database_name,
)
from dormdb.utils.logging import get_logger

logger = get_logger(__name__)

# Read, insert, update, delete, index and table-lock on one database.
MINIMAL_PRIVILEGES: frozenset[str] = frozenset(
    {"SELECT", "INSERT", "UPDATE", "DELETE", "INDEX", "LOCK TABLES"}
)


@dataclass(frozen=True)
class ProvisionedResourceSet:
    """What actually exists on the backend for one name pair.

    Derived by introspection, never stored.

    Attributes:
        database_name: Expected database name.
        account_name: Expected account name.
        database_exists: Whether the database exists.
        account_exists: Whether the account exists at the allowed host.
        privileges: Privileges the account holds on the database.
        extra_privileges: Privileges the account holds anywhere else
            (global or on other databases).
    """

    database_name: str
    account_name: str
    database_exists: bool
    account_exists: bool
    privileges: frozenset[str] = frozenset()
    extra_privileges: frozenset[str] = frozenset()

    @property
    def complete(self) -> bool:
        return self.database_exists and self.account_exists

    @property
    def has_minimal_grant(self) -> bool:
        """True when the grant is exactly the minimal set and nothing else."""
        return self.privileges == MINIMAL_PRIVILEGES and not self.extra_privileges


@dataclass(frozen=True)
class DiscoveredResources:
    """Backend resources whose names match the naming pattern."""

    database_names: list[str] = field(default_factory=list)
    account_names: list[str] = field(default_factory=list)

    def identity_keys(self) -> set[str]:
        """Identity keys owning at least one discovered resource."""
        keys = {identity_from_database_name(n) for n in self.database_names}
        keys |= {identity_from_account_name(n) for n in self.account_names}
        keys.discard(None)
        return keys  # type: ignore[return-value]


class ResourceProvisioner(Protocol):
    """Capability interface for a backing server."""

    async def provision(
        self,
        database_name: str,
        account_name: str,
        secret: str,
        *,
        adopt_existing: bool = False,
    ) -> None: ...

    async def deprovision(self, database_name: str, account_name: str) -> None: ...

    async def introspect(
        self, database_name: str, account_name: str
    ) -> ProvisionedResourceSet | None: ...

    async def discover(self) -> DiscoveredResources: ...

    async def regrant(self, database_name: str, account_name: str) -> None: ...

    async def check_connection(self) -> bool: ...


@dataclass
class SagaStep:
    """One forward action and the action that undoes it.

    Attributes:
        name: Step name used in errors and logs.
        forward: Coroutine function performing the step.
        inverse: Coroutine function undoing the step, or None when the
            step changed nothing that must be undone.
    """

    name: str
    forward: Callable[[], Awaitable[None]]
    inverse: Callable[[], Awaitable[None]] | None = None


async def run_saga(steps: list[SagaStep]) -> None:
    """Run steps in order, compensating completed steps on failure.

    Args:
        steps: Steps to run.

    Raises:
        ProvisionError: The failing step's error, with ``compensated`` set
            when completed steps were undone.
        CompensationFailedError: If any inverse failed. Remaining inverses
            are still attempted.
    """
    completed = 0
    failure: ProvisionError | None = None

    while completed < len(steps):
        step = steps[completed]
        try:
            await step.forward()
        except ProvisionError as e:
            if e.step is None:
                e.step = step.name
            failure = e
            break
        completed += 1

    if failure is None:
        return

    logger.warning(
        "provision_step_failed",
        step=failure.step,
        kind=failure.kind.value,
        completed_steps=completed,
    )

    compensation_errors: dict[str, Exception] = {}
    undone = 0
    for index in range(completed - 1, -1, -1):
        step = steps[index]
        if step.inverse is None:
            continue
        try:
            await step.inverse()
            undone += 1
        except ProvisionError as e:
            compensation_errors[step.name] = e

    if compensation_errors:
        leftover = [s.name for s in steps[:completed] if s.name in compensation_errors]
        logger.critical(
            "provision_compensation_failed",
            step=failure.step,
            leftover_steps=leftover,
        )
        raise CompensationFailedError(
            f"Step {failure.step} failed and {len(compensation_errors)} undo step(s) failed",
            cause=failure,
            compensation_errors=compensation_errors,
            leftover_steps=leftover,
        ) from failure

    if undone:
        failure.compensated = True
        logger.info(
            "provision_compensated",
            step=failure.step,
            outcome=failure.outcome.value,
            undone_steps=undone,
        )
    raise failure


class SagaProvisioner(ABC):
    """Base class implementing provisioning on top of primitive statements.

    Subclasses implement the primitives against a concrete server. Every
    primitive raises ProvisionError (or a subclass) on failure.

    In normal mode the database and the account are created with strict
    statements, so a second concurrent attempt for the same names fails at
    its first step without creating anything. In adopt mode, used for
    repairs, resources that already exist are reused: the account secret is
    reset and the grant re-issued, and adopted resources are never dropped
    by compensation.
    """

    # =========================================================================
    # Primitives
    # =========================================================================

    @abstractmethod
    async def _create_database(self, database_name: str) -> None:
        """Create the database; ResourceAlreadyExistsError if present."""

    @abstractmethod
    async def _drop_database(self, database_name: str) -> None:
        """Drop the database; absent is not an error."""

    @abstractmethod
    async def _create_account(self, account_name: str, secret: str) -> None:
        """Create the account; ResourceAlreadyExistsError if present."""

    @abstractmethod
    async def _set_account_secret(self, account_name: str, secret: str) -> None:
        """Replace the secret of an existing account."""

    @abstractmethod
    async def _drop_account(self, account_name: str) -> None:
        """Drop the account; absent is not an error."""

    @abstractmethod
    async def _grant_minimal(self, database_name: str, account_name: str) -> None:
        """Grant MINIMAL_PRIVILEGES on the database to the account."""

    @abstractmethod
    async def _revoke_all(self, account_name: str) -> None:
        """Revoke every privilege, including GRANT OPTION, from the account."""

    @abstractmethod
    async def _database_exists(self, database_name: str) -> bool: ...

    @abstractmethod
    async def _account_exists(self, account_name: str) -> bool: ...

    @abstractmethod
    async def _granted_privileges(
        self, database_name: str, account_name: str
    ) -> frozenset[str]: ...

    @abstractmethod
    async def _extra_privileges(
        self, database_name: str, account_name: str
    ) -> frozenset[str]: ...

    @abstractmethod
    async def _list_databases(self) -> list[str]: ...

    @abstractmethod
    async def _list_accounts(self) -> list[str]: ...

    @abstractmethod
    async def check_connection(self) -> bool:
        """Check that the backend answers a trivial query."""

    # =========================================================================
    # Operations
    # =========================================================================

    async def provision(
        self,
        database_name: str,
        account_name: str,
        secret: str,
        *,
        adopt_existing: bool = False,
    ) -> None:
        """Create database, account and minimal grant as one unit.

        Args:
            database_name: Database to create.
            account_name: Account to create at the allowed host.
            secret: Account secret. Never logged.
            adopt_existing: Reuse resources that already exist.

        Raises:
            ProvisionError: If a step failed. Nothing this call created is
                left behind.
            CompensationFailedError: If a step failed and undoing the
                completed steps also failed.
        """
        ensure_database_name(database_name)
        ensure_account_name(account_name)

        if adopt_existing:
            steps = await self._adopt_plan(database_name, account_name, secret)
        else:
            steps = [
                SagaStep(
                    "create_database",
                    lambda: self._create_database(database_name),
                    lambda: self._drop_database(database_name),
                ),
                SagaStep(
                    "create_account",
                    lambda: self._create_account(account_name, secret),
                    lambda: self._drop_account(account_name),
                ),
                SagaStep(
                    "grant_privileges",
                    lambda: self._grant_minimal(database_name, account_name),
                    lambda: self._revoke_all(account_name),
                ),
            ]

        await run_saga(steps)
        logger.debug(
            "resources_provisioned",
            database_name=database_name,
            account_name=account_name,
            adopted=adopt_existing,
        )

    async def _adopt_plan(
        self, database_name: str, account_name: str, secret: str
    ) -> list[SagaStep]:
        steps: list[SagaStep] = []

        if await self._database_exists(database_name):
            steps.append(SagaStep("adopt_database", _noop))
        else:
            steps.append(
                SagaStep(
                    "create_database",
                    lambda: self._create_database(database_name),
                    lambda: self._drop_database(database_name),
                )
            )

        if await self._account_exists(account_name):
            steps.append(
                SagaStep(
                    "reset_account_secret",
                    lambda: self._set_account_secret(account_name, secret),
                )
            )
        else:
            steps.append(
                SagaStep(
                    "create_account",
                    lambda: self._create_account(account_name, secret),
                    lambda: self._drop_account(account_name),
                )
            )

        steps.append(
            SagaStep(
                "regrant_privileges",
                lambda: self.regrant(database_name, account_name),
            )
        )
        return steps

    async def deprovision(self, database_name: str, account_name: str) -> None:
        """Drop the account, then the database.

        Already-absent resources count as success.

        Raises:
            ProvisionError: On the first statement that fails.
        """
        ensure_database_name(database_name)
        ensure_account_name(account_name)

        await self._drop_account(account_name)
        await self._drop_database(database_name)
        logger.debug(
            "resources_deprovisioned",
            database_name=database_name,
            account_name=account_name,
        )

    async def introspect(
        self, database_name: str, account_name: str
    ) -> ProvisionedResourceSet | None:
        """Report what exists on the backend for a name pair.

        Returns:
            None if neither resource exists, otherwise the observed state.
        """
        ensure_database_name(database_name)
        ensure_account_name(account_name)

        database_exists = await self._database_exists(database_name)
        account_exists = await self._account_exists(account_name)
        if not database_exists and not account_exists:
            return None

        privileges: frozenset[str] = frozenset()
        extra: frozenset[str] = frozenset()
        if account_exists:
            privileges = await self._granted_privileges(database_name, account_name)
            extra = await self._extra_privileges(database_name, account_name)

        return ProvisionedResourceSet(
            database_name=database_name,
            account_name=account_name,
            database_exists=database_exists,
            account_exists=account_exists,
            privileges=privileges,
            extra_privileges=extra,
        )

    async def discover(self) -> DiscoveredResources:
        """List backend resources that match the naming pattern."""
        databases = [
            name for name in await self._list_databases()
            if identity_from_database_name(name) is not None
        ]
        accounts = [
            name for name in await self._list_accounts()
            if identity_from_account_name(name) is not None
        ]
        return DiscoveredResources(
            database_names=sorted(databases),
            account_names=sorted(accounts),
        )

    async def regrant(self, database_name: str, account_name: str) -> None:
        """Revoke everything from the account, then grant the minimal set."""
        ensure_database_name(database_name)
        ensure_account_name(account_name)

        await self._revoke_all(account_name)
        await self._grant_minimal(database_name, account_name)


async def _noop() -> None:
    return None
