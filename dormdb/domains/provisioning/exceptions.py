# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Exceptions for the provisioning domain.

Two families live here:

- ProvisionError and subclasses, raised by resource provisioners while
  talking to the backing server.
- EngineError and subclasses, raised by ProvisioningEngine to its callers.
  Every EngineError carries a stable ErrorCode so callers can decide
  whether to retry, show "already applied", or page an operator.

Auditor repair failures are never raised; they are recorded in the
RepairReport.
"""

from enum import Enum, IntEnum


class ErrorCode(IntEnum):
    """Stable, caller-facing result codes."""

    SUCCESS = 0
    INVALID_INPUT = 40001
    IDENTITY_EXISTS = 40901
    RESOURCE_CONFLICT = 40902
    INTERNAL_ERROR = 50001
    PROVISIONING_FAILED = 50002
    PARTIAL_FAILURE_UNRECOVERED = 50003
    COMMIT_FAILED = 50004
    BACKEND_UNAVAILABLE = 50301


class ProvisionErrorKind(str, Enum):
    """Classification of errors raised by resource provisioners."""

    CONNECTION_FAILED = "connection_failed"
    PERMISSION_DENIED = "permission_denied"
    RESOURCE_ALREADY_EXISTS = "resource_already_exists"
    STATEMENT_FAILED = "statement_failed"
    PARTIAL_FAILURE_RECOVERED = "partial_failure_recovered"
    PARTIAL_FAILURE_UNRECOVERED = "partial_failure_unrecovered"


# =============================================================================
# Provisioner errors
# =============================================================================


class ProvisionError(Exception):
    """Base exception for backing-server provisioning errors.

    Attributes:
        kind: Error classification.
        step: Name of the provisioning step that failed, if any.
        compensated: True when a later step failed and every completed
            step was successfully undone before this error was raised.
        original_error: The underlying driver error.
    """

    kind: ProvisionErrorKind = ProvisionErrorKind.STATEMENT_FAILED

    def __init__(
        self,
        message: str,
        step: str | None = None,
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.step = step
        self.compensated = False
        self.original_error = original_error

    def __str__(self) -> str:
        if self.original_error:
            return f"{self.message}: {self.original_error}"
        return self.message

    @property
    def outcome(self) -> ProvisionErrorKind:
        """Kind as seen by the caller after compensation.

        PARTIAL_FAILURE_RECOVERED once every completed step has been
        undone, the raw kind otherwise.
        """
        if self.compensated:
            return ProvisionErrorKind.PARTIAL_FAILURE_RECOVERED
        return self.kind


class ConnectionFailedError(ProvisionError):
    """Raised when the backing server cannot be reached."""

    kind = ProvisionErrorKind.CONNECTION_FAILED


class PermissionDeniedError(ProvisionError):
    """Raised when the admin credential lacks a required privilege."""

    kind = ProvisionErrorKind.PERMISSION_DENIED


class ResourceAlreadyExistsError(ProvisionError):
    """Raised when a database or account to be created already exists."""

    kind = ProvisionErrorKind.RESOURCE_ALREADY_EXISTS


class CompensationFailedError(ProvisionError):
    """Raised when a step failed and undoing the completed steps also failed.

    The backing server may now hold part of the resource set. Only the
    auditor or an operator can clear this state.

    Attributes:
        cause: The error that triggered compensation.
        compensation_errors: Errors raised by the failing undo steps,
            keyed by step name.
        leftover_steps: Steps that may still be in effect.
    """

    kind = ProvisionErrorKind.PARTIAL_FAILURE_UNRECOVERED

    def __init__(
        self,
        message: str,
        cause: ProvisionError,
        compensation_errors: dict[str, Exception],
        leftover_steps: list[str],
    ) -> None:
        super().__init__(message, step=cause.step, original_error=cause)
        self.cause = cause
        self.compensation_errors = compensation_errors
        self.leftover_steps = leftover_steps


# =============================================================================
# Engine errors
# =============================================================================


class EngineError(Exception):
    """Base exception for errors surfaced by ProvisioningEngine.

    Attributes:
        identity_key: The identity key of the failed request.
        code: Stable result code.
        retryable: Whether the caller may retry after a delay.
    """

    code: ErrorCode = ErrorCode.INTERNAL_ERROR
    retryable: bool = False

    def __init__(self, identity_key: str, message: str) -> None:
        super().__init__(message)
        self.identity_key = identity_key
        self.message = message


class InvalidInputError(EngineError):
    """Raised for malformed or non-whitelisted identity keys."""

    code = ErrorCode.INVALID_INPUT


class DuplicateIdentityError(EngineError):
    """Raised when the identity key has already been provisioned."""

    code = ErrorCode.IDENTITY_EXISTS


class ResourceConflictError(DuplicateIdentityError):
    """Raised when backend resources for the key exist without a ledger record.

    Either a concurrent request for the same key is still provisioning, or
    an earlier attempt left resources behind that the auditor has not yet
    cleaned up.
    """

    code = ErrorCode.RESOURCE_CONFLICT


class LedgerUnavailableError(EngineError):
    """Raised when the ledger store cannot be read or written."""

    code = ErrorCode.INTERNAL_ERROR
    retryable = True


class ProvisioningFailedError(EngineError):
    """Raised when the provisioner failed and left no partial resources.

    Attributes:
        kind: Inner provisioner error kind.
    """

    code = ErrorCode.PROVISIONING_FAILED

    def __init__(
        self, identity_key: str, message: str, kind: ProvisionErrorKind
    ) -> None:
        super().__init__(identity_key, message)
        self.kind = kind


class BackendUnavailableError(ProvisioningFailedError):
    """Raised on connection or authorization failures against the backend.

    Connection failures are retryable; missing admin privileges are not.
    """

    code = ErrorCode.BACKEND_UNAVAILABLE

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return self.kind == ProvisionErrorKind.CONNECTION_FAILED


class PartialFailureUnrecoveredError(EngineError):
    """Raised when resources may be left on the backend after a failure.

    Never a success path. The failure has been escalated and the next
    audit will classify and repair the leftovers.

    Attributes:
        database_name: Database that may be left behind.
        account_name: Account that may be left behind.
    """

    code = ErrorCode.PARTIAL_FAILURE_UNRECOVERED

    def __init__(
        self,
        identity_key: str,
        message: str,
        database_name: str,
        account_name: str,
    ) -> None:
        super().__init__(identity_key, message)
        self.database_name = database_name
        self.account_name = account_name


class CommitFailedError(EngineError):
    """Raised when resources were created but the ledger write failed.

    The created resources have been removed again before this is raised.
    """

    code = ErrorCode.COMMIT_FAILED
    retryable = True
