# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Provisioning domain.

This package provides the ProvisioningEngine, which turns a whitelisted
identity key into a database, an account and a minimal grant on a shared
MySQL server, and the ConsistencyAuditor, which reconciles the ledger
with what really exists on that server.
"""

from dormdb.domains.provisioning.auditor import ConsistencyAuditor
from dormdb.domains.provisioning.exceptions import (
    BackendUnavailableError,
    CommitFailedError,
    DuplicateIdentityError,
    EngineError,
    ErrorCode,
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
    SQLIdentityLedger,
)
from dormdb.domains.provisioning.provisioner import (
    MINIMAL_PRIVILEGES,
    ProvisionedResourceSet,
    ResourceProvisioner,
    SagaProvisioner,
)
from dormdb.domains.provisioning.service import ProvisioningEngine, ProvisioningState
from dormdb.domains.provisioning.whitelist import parse_whitelist_import

__all__ = [
    "BackendUnavailableError",
    "CommitFailedError",
    "ConsistencyAuditor",
    "DuplicateIdentityError",
    "DuplicateRecordError",
    "EngineError",
    "ErrorCode",
    "IdentityLedger",
    "InvalidInputError",
    "LedgerError",
    "LedgerUnavailableError",
    "MINIMAL_PRIVILEGES",
    "PartialFailureUnrecoveredError",
    "ProvisionError",
    "ProvisionErrorKind",
    "ProvisionedResourceSet",
    "ProvisioningEngine",
    "ProvisioningFailedError",
    "ProvisioningState",
    "ResourceConflictError",
    "ResourceProvisioner",
    "SQLIdentityLedger",
    "SagaProvisioner",
    "parse_whitelist_import",
]
