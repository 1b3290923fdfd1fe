# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Tests for the compensating-step executor and SagaProvisioner.

Uses the in-memory provisioner from conftest, which runs the production
saga code against a fake server state.
"""

import pytest

from dormdb.domains.provisioning.exceptions import (
    CompensationFailedError,
    PermissionDeniedError,
    ProvisionError,
    ProvisionErrorKind,
    ResourceAlreadyExistsError,
)
from dormdb.domains.provisioning.naming import UnsafeIdentifierError
from dormdb.domains.provisioning.provisioner import (
    MINIMAL_PRIVILEGES,
    ProvisionedResourceSet,
    SagaStep,
    run_saga,
)

DB = "db_2023010101"
ACCOUNT = "user_2023010101"
SECRET = "Abcdefgh1234!@#$"


class TestRunSaga:
    """Tests for run_saga."""

    @pytest.mark.asyncio
    async def test_runs_steps_in_order(self) -> None:
        log: list[str] = []

        async def record(name: str) -> None:
            log.append(name)

        await run_saga(
            [
                SagaStep("a", lambda: record("a"), lambda: record("undo a")),
                SagaStep("b", lambda: record("b"), lambda: record("undo b")),
            ]
        )

        assert log == ["a", "b"]

    @pytest.mark.asyncio
    async def test_failure_undoes_completed_steps_in_reverse(self) -> None:
        log: list[str] = []

        async def record(name: str) -> None:
            log.append(name)

        async def boom() -> None:
            raise ProvisionError("boom")

        with pytest.raises(ProvisionError) as exc_info:
            await run_saga(
                [
                    SagaStep("a", lambda: record("a"), lambda: record("undo a")),
                    SagaStep("b", lambda: record("b"), lambda: record("undo b")),
                    SagaStep("c", boom, lambda: record("undo c")),
                ]
            )

        assert log == ["a", "b", "undo b", "undo a"]
        assert exc_info.value.step == "c"
        assert exc_info.value.compensated is True
        assert exc_info.value.outcome == ProvisionErrorKind.PARTIAL_FAILURE_RECOVERED
        assert exc_info.value.kind == ProvisionErrorKind.STATEMENT_FAILED

    @pytest.mark.asyncio
    async def test_first_step_failure_is_not_compensated(self) -> None:
        async def boom() -> None:
            raise ProvisionError("boom")

        with pytest.raises(ProvisionError) as exc_info:
            await run_saga([SagaStep("a", boom)])

        assert exc_info.value.compensated is False
        assert exc_info.value.outcome == ProvisionErrorKind.STATEMENT_FAILED

    @pytest.mark.asyncio
    async def test_failed_inverse_raises_compensation_failed(self) -> None:
        log: list[str] = []

        async def record(name: str) -> None:
            log.append(name)

        async def boom() -> None:
            raise ProvisionError("boom")

        async def undo_fails() -> None:
            raise ProvisionError("cannot undo")

        with pytest.raises(CompensationFailedError) as exc_info:
            await run_saga(
                [
                    SagaStep("a", lambda: record("a"), lambda: record("undo a")),
                    SagaStep("b", lambda: record("b"), undo_fails),
                    SagaStep("c", boom),
                ]
            )

        error = exc_info.value
        assert error.kind == ProvisionErrorKind.PARTIAL_FAILURE_UNRECOVERED
        assert error.outcome == ProvisionErrorKind.PARTIAL_FAILURE_UNRECOVERED
        assert error.leftover_steps == ["b"]
        assert set(error.compensation_errors) == {"b"}
        assert error.cause.step == "c"
        # Remaining inverses still run
        assert log == ["a", "b", "undo a"]


class TestProvision:
    """Tests for SagaProvisioner.provision."""

    @pytest.mark.asyncio
    async def test_creates_complete_resource_set(self, provisioner, backend) -> None:
        await provisioner.provision(DB, ACCOUNT, SECRET)

        assert DB in backend.databases
        assert backend.accounts[ACCOUNT] == SECRET
        assert backend.grants[ACCOUNT][DB] == set(MINIMAL_PRIVILEGES)

    @pytest.mark.asyncio
    async def test_grant_failure_leaves_nothing(self, provisioner, backend) -> None:
        """Test a failing grant removes the database and the account."""
        provisioner.fail("grant_minimal")

        with pytest.raises(ProvisionError) as exc_info:
            await provisioner.provision(DB, ACCOUNT, SECRET)

        assert exc_info.value.step == "grant_privileges"
        assert exc_info.value.compensated is True
        provisioner.heal()
        assert await provisioner.introspect(DB, ACCOUNT) is None

    @pytest.mark.asyncio
    async def test_account_failure_drops_database(self, provisioner, backend) -> None:
        provisioner.fail("create_account", PermissionDeniedError("no CREATE USER"))

        with pytest.raises(PermissionDeniedError) as exc_info:
            await provisioner.provision(DB, ACCOUNT, SECRET)

        assert exc_info.value.compensated is True
        assert backend.resource_count() == 0
        assert exc_info.value.kind == ProvisionErrorKind.PERMISSION_DENIED
        assert exc_info.value.outcome == ProvisionErrorKind.PARTIAL_FAILURE_RECOVERED

    @pytest.mark.asyncio
    async def test_failed_compensation_is_distinguishable(self, provisioner, backend) -> None:
        provisioner.fail("grant_minimal")
        provisioner.fail("drop_account")

        with pytest.raises(CompensationFailedError) as exc_info:
            await provisioner.provision(DB, ACCOUNT, SECRET)

        assert exc_info.value.leftover_steps == ["create_account"]
        # The database inverse still ran
        assert DB not in backend.databases
        assert ACCOUNT in backend.accounts

    @pytest.mark.asyncio
    async def test_existing_database_fails_without_side_effects(
        self, provisioner, backend
    ) -> None:
        """Test strict creation never touches a pre-existing database."""
        backend.databases.add(DB)

        with pytest.raises(ResourceAlreadyExistsError) as exc_info:
            await provisioner.provision(DB, ACCOUNT, SECRET)

        assert exc_info.value.step == "create_database"
        assert exc_info.value.compensated is False
        assert DB in backend.databases
        assert ACCOUNT not in backend.accounts

    @pytest.mark.asyncio
    async def test_rejects_unsafe_names(self, provisioner, backend) -> None:
        with pytest.raises(UnsafeIdentifierError):
            await provisioner.provision("mysql", ACCOUNT, SECRET)
        with pytest.raises(UnsafeIdentifierError):
            await provisioner.provision(DB, "root", SECRET)

        assert provisioner.calls == []


class TestAdoptExisting:
    """Tests for provision(adopt_existing=True)."""

    @pytest.mark.asyncio
    async def test_adopts_surviving_database(self, provisioner, backend) -> None:
        backend.databases.add(DB)

        await provisioner.provision(DB, ACCOUNT, SECRET, adopt_existing=True)

        assert backend.accounts[ACCOUNT] == SECRET
        assert backend.grants[ACCOUNT][DB] == set(MINIMAL_PRIVILEGES)

    @pytest.mark.asyncio
    async def test_resets_secret_of_surviving_account(self, provisioner, backend) -> None:
        await provisioner.provision(DB, ACCOUNT, "Old-secret-1234!")
        backend.databases.discard(DB)

        await provisioner.provision(DB, ACCOUNT, SECRET, adopt_existing=True)

        assert DB in backend.databases
        assert backend.accounts[ACCOUNT] == SECRET

    @pytest.mark.asyncio
    async def test_adopted_resources_survive_compensation(self, provisioner, backend) -> None:
        backend.databases.add(DB)
        provisioner.fail("grant_minimal")

        with pytest.raises(ProvisionError):
            await provisioner.provision(DB, ACCOUNT, SECRET, adopt_existing=True)

        assert DB in backend.databases
        assert ACCOUNT not in backend.accounts


class TestDeprovision:
    """Tests for SagaProvisioner.deprovision."""

    @pytest.mark.asyncio
    async def test_drops_account_then_database(self, provisioner, backend) -> None:
        await provisioner.provision(DB, ACCOUNT, SECRET)
        provisioner.calls.clear()

        await provisioner.deprovision(DB, ACCOUNT)

        assert provisioner.calls == ["drop_account", "drop_database"]
        assert backend.resource_count() == 0

    @pytest.mark.asyncio
    async def test_is_idempotent(self, provisioner, backend) -> None:
        await provisioner.deprovision(DB, ACCOUNT)
        await provisioner.deprovision(DB, ACCOUNT)

        assert backend.resource_count() == 0

    @pytest.mark.asyncio
    async def test_raises_on_first_failure(self, provisioner, backend) -> None:
        await provisioner.provision(DB, ACCOUNT, SECRET)
        provisioner.fail("drop_account")

        with pytest.raises(ProvisionError):
            await provisioner.deprovision(DB, ACCOUNT)

        assert DB in backend.databases


class TestIntrospect:
    """Tests for introspect, discover and regrant."""

    @pytest.mark.asyncio
    async def test_none_when_absent(self, provisioner) -> None:
        assert await provisioner.introspect(DB, ACCOUNT) is None

    @pytest.mark.asyncio
    async def test_complete_resource_set(self, provisioner) -> None:
        await provisioner.provision(DB, ACCOUNT, SECRET)

        state = await provisioner.introspect(DB, ACCOUNT)

        assert state == ProvisionedResourceSet(
            database_name=DB,
            account_name=ACCOUNT,
            database_exists=True,
            account_exists=True,
            privileges=MINIMAL_PRIVILEGES,
        )
        assert state.complete
        assert state.has_minimal_grant

    @pytest.mark.asyncio
    async def test_partial_resource_set(self, provisioner, backend) -> None:
        backend.databases.add(DB)

        state = await provisioner.introspect(DB, ACCOUNT)

        assert state is not None
        assert state.database_exists and not state.account_exists
        assert not state.complete

    @pytest.mark.asyncio
    async def test_extra_privileges_are_drift(self, provisioner, backend) -> None:
        await provisioner.provision(DB, ACCOUNT, SECRET)
        backend.global_grants[ACCOUNT] = {"SUPER"}

        state = await provisioner.introspect(DB, ACCOUNT)

        assert state.privileges == MINIMAL_PRIVILEGES
        assert state.extra_privileges == frozenset({"SUPER ON *.*"})
        assert not state.has_minimal_grant

    @pytest.mark.asyncio
    async def test_regrant_restores_minimal_set(self, provisioner, backend) -> None:
        await provisioner.provision(DB, ACCOUNT, SECRET)
        backend.grants[ACCOUNT][DB] = {"SELECT", "DROP"}
        backend.grants[ACCOUNT]["db_other"] = {"SELECT"}

        await provisioner.regrant(DB, ACCOUNT)

        state = await provisioner.introspect(DB, ACCOUNT)
        assert state.has_minimal_grant

    @pytest.mark.asyncio
    async def test_discover_filters_by_naming_pattern(self, provisioner, backend) -> None:
        backend.databases.update({"db_orphan001", "shop", "db_2023010101"})
        backend.accounts.update({"user_orphan002": "x", "app": "y"})

        discovered = await provisioner.discover()

        assert discovered.database_names == ["db_2023010101", "db_orphan001"]
        assert discovered.account_names == ["user_orphan002"]
        assert discovered.identity_keys() == {"2023010101", "orphan001", "orphan002"}
