# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Data models for the provisioning domain.

Pydantic models exchanged between the provisioning engine, the auditor
and their callers. None of the ledger-facing models carry a secret; the
secret only ever travels inside Credentials.
"""

from datetime import datetime
from enum import Enum
from urllib.parse import quote

from pydantic import BaseModel, ConfigDict, Field, computed_field

from dormdb.utils.datetime import utc_now

CONNECTION_PARAMS = "allowPublicKeyRetrieval=true&useSSL=false"


class Credentials(BaseModel):
    """Connection credentials issued for a provisioned identity.

    Returned exactly once, when the resources are created (or re-created by
    the auditor). The secret is not stored anywhere.
    """

    host: str
    port: int
    database_name: str
    account_name: str
    secret: str = Field(repr=False)

    @computed_field(repr=False)  # type: ignore[prop-decorator]
    @property
    def connection_string(self) -> str:
        """MySQL URL with the secret URL-encoded."""
        return (
            f"mysql://{self.account_name}:{quote(self.secret, safe='')}"
            f"@{self.host}:{self.port}/{self.database_name}?{CONNECTION_PARAMS}"
        )

    @computed_field(repr=False)  # type: ignore[prop-decorator]
    @property
    def jdbc_url(self) -> str:
        """JDBC URL for Java clients."""
        return (
            f"jdbc:mysql://{self.host}:{self.port}/{self.database_name}"
            f"?{CONNECTION_PARAMS}&user={self.account_name}"
            f"&password={quote(self.secret, safe='')}"
        )


class ProvisioningRecordInfo(BaseModel):
    """A ledger record as exposed to callers (no secret)."""

    model_config = ConfigDict(from_attributes=True)

    identity_key: str
    database_name: str
    account_name: str
    created_at: datetime


class WhitelistEntryCreate(BaseModel):
    """One identity allowed to apply, as produced by an administrative import."""

    identity_key: str = Field(min_length=1, max_length=64)
    display_name: str | None = Field(default=None, max_length=255)
    group_tag: str | None = Field(default=None, max_length=255)


class WhitelistImportResult(BaseModel):
    """Result of a whitelist batch import."""

    imported_count: int = 0
    updated_count: int = 0
    errors: list[str] = Field(default_factory=list)


class WhitelistStats(BaseModel):
    """Whitelist coverage: how many allowed identities have applied."""

    total_count: int
    applied_count: int
    not_applied_count: int


class PublicApplicationRecord(BaseModel):
    """Masked view of a ledger record, safe for public pages."""

    identity_key_masked: str
    created_at: datetime


class ApplicationStats(BaseModel):
    """Ledger statistics.

    Attributes:
        total_count: All provisioning records.
        today_count: Records created since midnight UTC.
        week_count: Records created since midnight UTC seven days ago.
        month_count: Records created since the first of the month, UTC.
        recent_applications: Newest records with masked identity keys.
    """

    total_count: int
    today_count: int
    week_count: int = 0
    month_count: int = 0
    recent_applications: list[PublicApplicationRecord] = Field(default_factory=list)


class SystemHealth(BaseModel):
    """Reachability of the two stores the engine depends on."""

    ledger_ok: bool
    backend_ok: bool

    @property
    def healthy(self) -> bool:
        return self.ledger_ok and self.backend_ok


# =============================================================================
# Audit report
# =============================================================================


class DiscrepancyClass(str, Enum):
    """Classification of one identity during an audit.

    - CONSISTENT: ledger record and backend resources agree
    - MISSING_ON_BACKEND: ledger record exists, some or all resources absent
    - ORPHAN_ON_BACKEND: backend resources match the naming pattern but
      have no ledger record
    - PRIVILEGE_DRIFT: resources exist but grants differ from the minimal set
    - UNVERIFIED: the backend could not be inspected for this identity
    """

    CONSISTENT = "consistent"
    MISSING_ON_BACKEND = "missing_on_backend"
    ORPHAN_ON_BACKEND = "orphan_on_backend"
    PRIVILEGE_DRIFT = "privilege_drift"
    UNVERIFIED = "unverified"


class RepairOutcome(str, Enum):
    """What the auditor did about a discrepancy."""

    REPAIRED = "repaired"
    REPAIR_FAILED = "repair_failed"
    SKIPPED = "skipped"


class RepairEntry(BaseModel):
    """Audit result for one identity key.

    Attributes:
        identity_key: The identity the entry is about.
        discrepancy: What was found.
        outcome: What was done about it.
        reason: Failure or skip reason.
        credentials_reissued: True when repair created a new secret. The
            previous secret is gone; the new one is in reissued_credentials
            and must be handed to the owner by an operator.
        reissued_credentials: Newly issued credentials, if any.
    """

    identity_key: str
    database_name: str
    account_name: str
    discrepancy: DiscrepancyClass
    outcome: RepairOutcome
    reason: str | None = None
    credentials_reissued: bool = False
    reissued_credentials: Credentials | None = None


class RepairReport(BaseModel):
    """Result of one audit run. Failures are data here, never exceptions."""

    started_at: datetime = Field(default_factory=utc_now)
    finished_at: datetime | None = None
    repair_applied: bool = True
    records_checked: int = 0
    entries: list[RepairEntry] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)

    def by_class(self, discrepancy: DiscrepancyClass) -> list[RepairEntry]:
        """Entries with the given discrepancy class."""
        return [e for e in self.entries if e.discrepancy == discrepancy]

    def entry_for(self, identity_key: str) -> RepairEntry | None:
        """Entry for an identity key, if the audit produced one."""
        for entry in self.entries:
            if entry.identity_key == identity_key:
                return entry
        return None

    @property
    def is_consistent(self) -> bool:
        """True when every entry is consistent and no errors occurred."""
        return not self.errors and all(
            e.discrepancy == DiscrepancyClass.CONSISTENT for e in self.entries
        )

    @property
    def repaired_count(self) -> int:
        return sum(1 for e in self.entries if e.outcome == RepairOutcome.REPAIRED)

    @property
    def failed_count(self) -> int:
        return sum(1 for e in self.entries if e.outcome == RepairOutcome.REPAIR_FAILED)

    @property
    def reissued(self) -> list[RepairEntry]:
        """Entries whose repair issued new credentials."""
        return [e for e in self.entries if e.credentials_reissued]
