# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Provisioning engine.

Turns an application for an identity key into a database, an account and
a minimal grant on the backing server, and records the result in the
ledger. The ledger record is written only after the backend resources are
complete; the secret is returned once and never stored.

The provisioning flow:
1. Received -> Validated: format check, whitelist check
2. Validated -> AllocatingNames: derive names, ledger fast-path check
3. AllocatingNames -> Provisioning: generate secret, create resources
4. Provisioning -> Committing: insert ledger record
5. Committing -> Succeeded: return credentials

The ledger's unique constraint decides which of two concurrent requests
wins. A request that created resources but lost the commit removes its
resources again before reporting the duplicate.

Example:
    >>> engine = ProvisioningEngine(ledger, provisioner, host="db.example.edu", port=3306)
    >>> credentials = await engine.submit_application("2023010101")
    >>> credentials.database_name
    'db_2023010101'
"""

from collections.abc import Awaitable, Callable
from enum import Enum

from dormdb.domains.provisioning.auditor import ConsistencyAuditor
from dormdb.domains.provisioning.exceptions import (
    BackendUnavailableError,
    CommitFailedError,
    CompensationFailedError,
    DuplicateIdentityError,
    EngineError,
    InvalidInputError,
    LedgerUnavailableError,
    PartialFailureUnrecoveredError,
    ProvisionError,
    ProvisionErrorKind,
    ProvisioningFailedError,
    ResourceConflictError,
)
from dormdb.domains.provisioning.ledger import (
    DuplicateRecordError,
    IdentityLedger,
    LedgerError,
)
from dormdb.domains.provisioning.naming import (
    MIN_SECRET_LENGTH,
    ResourceNames,
    derive,
    generate_secret,
    is_valid_identity_key,
    mask_identity_key,
)
from dormdb.domains.provisioning.provisioner import ResourceProvisioner
from dormdb.models.provisioning import (
    ApplicationStats,
    Credentials,
    ProvisioningRecordInfo,
    PublicApplicationRecord,
    RepairReport,
    SystemHealth,
)
from dormdb.utils.datetime import utc_days_ago_start, utc_month_start, utc_today_start
from dormdb.utils.logging import bind_context, clear_context, get_logger

logger = get_logger(__name__)

EscalationHook = Callable[[PartialFailureUnrecoveredError], Awaitable[None]]


class ProvisioningState(str, Enum):
    """States of one provisioning request."""

    RECEIVED = "received"
    VALIDATED = "validated"
    ALLOCATING_NAMES = "allocating_names"
    PROVISIONING = "provisioning"
    COMMITTING = "committing"
    SUCCEEDED = "succeeded"
    REJECTED_INVALID = "rejected_invalid"
    REJECTED_DUPLICATE = "rejected_duplicate"
    PROVISIONING_FAILED = "provisioning_failed"
    COMMIT_FAILED = "commit_failed"


_BACKEND_UNAVAILABLE_KINDS = (
    ProvisionErrorKind.CONNECTION_FAILED,
    ProvisionErrorKind.PERMISSION_DENIED,
)


class ProvisioningEngine:
    """Orchestrates validation, resource creation and ledger commit.

    The engine holds no lock and no per-request state; concurrent calls
    are independent and rely on the ledger's unique constraint and on
    strict resource creation on the backend.

    Attributes:
        _ledger: Identity ledger.
        _provisioner: Backend resource provisioner.
        _auditor: Consistency auditor sharing both stores.
    """

    def __init__(
        self,
        ledger: IdentityLedger,
        provisioner: ResourceProvisioner,
        *,
        host: str,
        port: int,
        secret_length: int = MIN_SECRET_LENGTH,
        escalation_hook: EscalationHook | None = None,
        auditor: ConsistencyAuditor | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            ledger: Identity ledger.
            provisioner: Backend resource provisioner.
            host: Host reported in credentials.
            port: Port reported in credentials.
            secret_length: Length of generated secrets.
            escalation_hook: Awaited with every PartialFailureUnrecoveredError
                before it is raised. Defaults to logging only.
            auditor: Auditor used by run_audit(). If not provided, creates
                one over the same ledger and provisioner.
        """
        self._ledger = ledger
        self._provisioner = provisioner
        self._host = host
        self._port = port
        self._secret_length = secret_length
        self._escalation_hook = escalation_hook
        self._auditor = auditor or ConsistencyAuditor(
            ledger,
            provisioner,
            host=host,
            port=port,
            secret_length=secret_length,
        )

    # =========================================================================
    # Applications
    # =========================================================================

    async def submit_application(self, identity_key: str) -> Credentials:
        """Provision resources for an identity and return its credentials.

        Args:
            identity_key: Whitelisted identity key.

        Returns:
            Credentials including the secret. This is the only time the
            secret is available.

        Raises:
            InvalidInputError: Malformed or non-whitelisted key.
            DuplicateIdentityError: Key already provisioned.
            ResourceConflictError: Backend resources for the key already
                exist without a ledger record.
            BackendUnavailableError: Backend unreachable or admin
                privileges missing.
            ProvisioningFailedError: A provisioning statement failed;
                nothing was left behind.
            PartialFailureUnrecoveredError: Resources may be left behind.
            CommitFailedError: Ledger write failed; resources removed.
            LedgerUnavailableError: Ledger could not be read.
        """
        if not isinstance(identity_key, str):
            raise InvalidInputError("", "Identity key must be a string")

        bind_context(identity_key=identity_key)
        try:
            return await self._run_application(identity_key)
        finally:
            clear_context()

    async def _run_application(self, identity_key: str) -> Credentials:
        state = ProvisioningState.RECEIVED

        if not is_valid_identity_key(identity_key):
            self._transition(state, ProvisioningState.REJECTED_INVALID, reason="format")
            raise InvalidInputError(identity_key, "Identity key has an invalid format")

        if not await self._ledger_read(identity_key, self._ledger.is_whitelisted):
            self._transition(state, ProvisioningState.REJECTED_INVALID, reason="not_whitelisted")
            raise InvalidInputError(identity_key, "Identity key is not whitelisted")
        state = self._transition(state, ProvisioningState.VALIDATED)

        names = derive(identity_key)
        if await self._ledger_read(identity_key, self._ledger.exists):
            self._transition(state, ProvisioningState.REJECTED_DUPLICATE)
            raise DuplicateIdentityError(identity_key, "Identity key has already applied")
        state = self._transition(state, ProvisioningState.ALLOCATING_NAMES)

        secret = generate_secret(self._secret_length)
        state = self._transition(state, ProvisioningState.PROVISIONING)
        try:
            await self._provisioner.provision(names.database_name, names.account_name, secret)
        except ProvisionError as e:
            self._transition(
                state,
                ProvisioningState.PROVISIONING_FAILED,
                kind=e.kind.value,
                outcome=e.outcome.value,
            )
            raise await self._provisioning_error(names, e) from e

        state = self._transition(state, ProvisioningState.COMMITTING)
        try:
            await self._ledger.record(identity_key, names.database_name, names.account_name)
        except DuplicateRecordError as e:
            self._transition(state, ProvisioningState.REJECTED_DUPLICATE, reason="commit_race")
            await self._undo_after_commit_failure(names, e)
            raise DuplicateIdentityError(
                identity_key, "Identity key has already applied"
            ) from e
        except LedgerError as e:
            self._transition(state, ProvisioningState.COMMIT_FAILED)
            await self._undo_after_commit_failure(names, e)
            raise CommitFailedError(
                identity_key, "Could not record provisioning; resources removed"
            ) from e

        self._transition(state, ProvisioningState.SUCCEEDED)
        return Credentials(
            host=self._host,
            port=self._port,
            database_name=names.database_name,
            account_name=names.account_name,
            secret=secret,
        )

    async def _provisioning_error(
        self, names: ResourceNames, error: ProvisionError
    ) -> EngineError:
        key = names.identity_key

        if isinstance(error, CompensationFailedError):
            unrecovered = PartialFailureUnrecoveredError(
                key,
                f"Provisioning failed at {error.step} and cleanup failed",
                names.database_name,
                names.account_name,
            )
            await self._escalate(unrecovered, error)
            return unrecovered

        if error.kind == ProvisionErrorKind.RESOURCE_ALREADY_EXISTS:
            return ResourceConflictError(
                key, "Resources for this identity already exist on the backend"
            )

        if error.kind in _BACKEND_UNAVAILABLE_KINDS:
            return BackendUnavailableError(key, str(error), error.kind)

        return ProvisioningFailedError(key, str(error), error.kind)

    async def _undo_after_commit_failure(
        self, names: ResourceNames, cause: Exception
    ) -> None:
        """Remove resources created by a request whose ledger commit failed.

        Raises:
            PartialFailureUnrecoveredError: If the resources could not be
                removed.
        """
        try:
            await self._provisioner.deprovision(names.database_name, names.account_name)
        except ProvisionError as e:
            unrecovered = PartialFailureUnrecoveredError(
                names.identity_key,
                "Ledger commit failed and created resources could not be removed",
                names.database_name,
                names.account_name,
            )
            await self._escalate(unrecovered, e)
            raise unrecovered from cause
        logger.info("uncommitted_resources_removed", reason=type(cause).__name__)

    async def _escalate(
        self, error: PartialFailureUnrecoveredError, cause: Exception
    ) -> None:
        logger.critical(
            "partial_failure_unrecovered",
            database_name=error.database_name,
            account_name=error.account_name,
            error=str(cause),
        )
        if self._escalation_hook is None:
            return
        try:
            await self._escalation_hook(error)
        except Exception:
            logger.exception("escalation_hook_failed")

    def _transition(
        self,
        current: ProvisioningState,
        target: ProvisioningState,
        **fields: object,
    ) -> ProvisioningState:
        logger.debug("state_transition", from_state=current.value, to_state=target.value, **fields)
        if target in (
            ProvisioningState.REJECTED_INVALID,
            ProvisioningState.REJECTED_DUPLICATE,
        ):
            logger.info("application_rejected", state=target.value, **fields)
        elif target in (
            ProvisioningState.PROVISIONING_FAILED,
            ProvisioningState.COMMIT_FAILED,
        ):
            logger.error("application_failed", state=target.value, **fields)
        elif target == ProvisioningState.SUCCEEDED:
            logger.info("application_succeeded")
        return target

    async def _ledger_read(
        self, identity_key: str, read: Callable[[str], Awaitable[bool]]
    ) -> bool:
        try:
            return await read(identity_key)
        except LedgerError as e:
            logger.error("ledger_unavailable", error=str(e))
            raise LedgerUnavailableError(identity_key, "Ledger is unavailable") from e

    # =========================================================================
    # Revocation
    # =========================================================================

    async def revoke(self, identity_key: str) -> ProvisioningRecordInfo:
        """Remove an identity's backend resources and its ledger record.

        Backend resources are dropped first. If that fails the record is
        kept, so the revoke can simply be retried.

        Args:
            identity_key: Provisioned identity key.

        Returns:
            The removed record.

        Raises:
            InvalidInputError: Malformed key or no record for it.
            BackendUnavailableError: Backend unreachable or admin
                privileges missing.
            ProvisioningFailedError: A drop statement failed.
            LedgerUnavailableError: Ledger could not be read or written.
        """
        if not is_valid_identity_key(identity_key):
            raise InvalidInputError(str(identity_key), "Identity key has an invalid format")

        bind_context(identity_key=identity_key)
        try:
            try:
                record = await self._ledger.get(identity_key)
            except LedgerError as e:
                raise LedgerUnavailableError(identity_key, "Ledger is unavailable") from e
            if record is None:
                raise InvalidInputError(identity_key, "Identity key has not applied")

            try:
                await self._provisioner.deprovision(record.database_name, record.account_name)
            except ProvisionError as e:
                logger.error("revoke_deprovision_failed", kind=e.kind.value, error=str(e))
                if e.kind in _BACKEND_UNAVAILABLE_KINDS:
                    raise BackendUnavailableError(identity_key, str(e), e.kind) from e
                raise ProvisioningFailedError(identity_key, str(e), e.kind) from e

            try:
                await self._ledger.remove(identity_key)
            except LedgerError as e:
                logger.error("revoke_ledger_remove_failed", error=str(e))
                raise LedgerUnavailableError(
                    identity_key, "Resources dropped but ledger record not removed"
                ) from e

            logger.info("application_revoked")
            return record
        finally:
            clear_context()

    # =========================================================================
    # Queries
    # =========================================================================

    async def list_records(
        self,
        limit: int = 100,
        offset: int = 0,
        identity_prefix: str | None = None,
    ) -> list[ProvisioningRecordInfo]:
        """List ledger records, newest first. Never includes secrets."""
        try:
            return await self._ledger.list_records(
                limit=limit, offset=offset, identity_prefix=identity_prefix
            )
        except LedgerError as e:
            raise LedgerUnavailableError("", "Ledger is unavailable") from e

    async def stats(self, recent_limit: int = 10) -> ApplicationStats:
        """Application counts and a masked list of recent applications.

        Args:
            recent_limit: Number of recent applications to include.

        Returns:
            ApplicationStats safe for public display.
        """
        try:
            total = await self._ledger.count_records()
            today = await self._ledger.count_records(since=utc_today_start())
            week = await self._ledger.count_records(since=utc_days_ago_start(7))
            month = await self._ledger.count_records(since=utc_month_start())
            recent = await self._ledger.list_records(limit=recent_limit)
        except LedgerError as e:
            raise LedgerUnavailableError("", "Ledger is unavailable") from e

        return ApplicationStats(
            total_count=total,
            today_count=today,
            week_count=week,
            month_count=month,
            recent_applications=[
                PublicApplicationRecord(
                    identity_key_masked=mask_identity_key(r.identity_key),
                    created_at=r.created_at,
                )
                for r in recent
            ],
        )

    async def health(self) -> SystemHealth:
        """Report reachability of the ledger and the backend."""
        return SystemHealth(
            ledger_ok=await self._ledger.check_connection(),
            backend_ok=await self._provisioner.check_connection(),
        )

    async def run_audit(self, repair: bool | None = None) -> RepairReport:
        """Run the consistency auditor. Never raises."""
        return await self._auditor.audit(repair=repair)
