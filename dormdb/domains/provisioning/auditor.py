# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Consistency auditor.

Reconciles the ledger with what really exists on the backing server.
Every ledger record is checked against introspected backend state, then
the backend is scanned for resources matching the naming pattern that no
record owns.

Classification and repair:
- CONSISTENT: nothing to do
- MISSING_ON_BACKEND: re-provision in adopt mode with a new secret; the
  new credentials are flagged in the report
- ORPHAN_ON_BACKEND: deprovision
- PRIVILEGE_DRIFT: revoke everything, grant the minimal set
- UNVERIFIED: the backend could not be inspected; nothing is changed

audit() never raises. Repair failures, listing errors and unexpected
exceptions from a single check are recorded in the report.
"""

from dormdb.domains.provisioning.exceptions import ProvisionError
from dormdb.domains.provisioning.ledger import IdentityLedger, LedgerError
from dormdb.domains.provisioning.naming import (
    MIN_SECRET_LENGTH,
    ResourceNames,
    UnsafeIdentifierError,
    derive,
    generate_secret,
)
from dormdb.domains.provisioning.provisioner import ResourceProvisioner
from dormdb.models.provisioning import (
    Credentials,
    DiscrepancyClass,
    ProvisioningRecordInfo,
    RepairEntry,
    RepairOutcome,
    RepairReport,
)
from dormdb.utils.datetime import utc_now
from dormdb.utils.logging import get_logger

logger = get_logger(__name__)


class ConsistencyAuditor:
    """Detects and repairs drift between ledger and backend.

    Attributes:
        _ledger: Identity ledger.
        _provisioner: Backend resource provisioner.
    """

    def __init__(
        self,
        ledger: IdentityLedger,
        provisioner: ResourceProvisioner,
        *,
        host: str,
        port: int,
        secret_length: int = MIN_SECRET_LENGTH,
        page_size: int = 100,
        repair_by_default: bool = True,
    ) -> None:
        """Initialize the auditor.

        Args:
            ledger: Identity ledger to read records from.
            provisioner: Provisioner for the backing server.
            host: Host reported in re-issued credentials.
            port: Port reported in re-issued credentials.
            secret_length: Length of re-issued secrets.
            page_size: Ledger page size while iterating records.
            repair_by_default: Apply repairs when audit() is called
                without an explicit repair flag.
        """
        self._ledger = ledger
        self._provisioner = provisioner
        self._host = host
        self._port = port
        self._secret_length = secret_length
        self._page_size = page_size
        self._repair_by_default = repair_by_default

    async def audit(self, repair: bool | None = None) -> RepairReport:
        """Run one reconciliation pass.

        Args:
            repair: Apply repairs. None uses the configured default;
                False classifies only and marks every entry SKIPPED.

        Returns:
            RepairReport with one entry per identity that was examined.
        """
        repair = self._repair_by_default if repair is None else repair
        report = RepairReport(repair_applied=repair)
        logger.info("audit_started", repair=repair)

        recorded_keys: set[str] = set()
        ledger_complete = True
        try:
            async for record in self._ledger.iter_records(page_size=self._page_size):
                recorded_keys.add(record.identity_key)
                report.records_checked += 1
                try:
                    entry = await self._check_record(record, repair)
                except Exception as e:
                    logger.exception(
                        "audit_record_check_crashed", identity_key=record.identity_key
                    )
                    entry = RepairEntry(
                        identity_key=record.identity_key,
                        database_name=record.database_name,
                        account_name=record.account_name,
                        discrepancy=DiscrepancyClass.UNVERIFIED,
                        outcome=RepairOutcome.REPAIR_FAILED,
                        reason=f"Unexpected error: {e!r}",
                    )
                report.entries.append(entry)
        except Exception as e:
            ledger_complete = False
            report.errors.append(f"Ledger listing failed: {e}")
            logger.error("audit_ledger_listing_failed", error=str(e))

        # Without the full set of recorded keys an owned resource could be
        # mistaken for an orphan.
        if ledger_complete:
            try:
                await self._check_orphans(recorded_keys, repair, report)
            except Exception as e:
                report.errors.append(f"Orphan scan failed: {e!r}")
                logger.exception("audit_orphan_scan_crashed")
        else:
            report.errors.append("Orphan scan skipped: ledger listing incomplete")

        report.finished_at = utc_now()
        logger.info(
            "audit_finished",
            records_checked=report.records_checked,
            entries=len(report.entries),
            repaired=report.repaired_count,
            failed=report.failed_count,
            reissued=len(report.reissued),
            errors=len(report.errors),
        )
        return report

    async def _check_record(
        self, record: ProvisioningRecordInfo, repair: bool
    ) -> RepairEntry:
        key = record.identity_key

        def entry(
            discrepancy: DiscrepancyClass,
            outcome: RepairOutcome,
            reason: str | None = None,
        ) -> RepairEntry:
            return RepairEntry(
                identity_key=key,
                database_name=record.database_name,
                account_name=record.account_name,
                discrepancy=discrepancy,
                outcome=outcome,
                reason=reason,
            )

        try:
            names = derive(key)
        except UnsafeIdentifierError as e:
            return entry(DiscrepancyClass.UNVERIFIED, RepairOutcome.REPAIR_FAILED, str(e))

        if (names.database_name, names.account_name) != (
            record.database_name,
            record.account_name,
        ):
            return entry(
                DiscrepancyClass.UNVERIFIED,
                RepairOutcome.REPAIR_FAILED,
                "Stored resource names differ from derived names",
            )

        try:
            state = await self._provisioner.introspect(
                names.database_name, names.account_name
            )
        except ProvisionError as e:
            logger.error("audit_introspect_failed", identity_key=key, error=str(e))
            return entry(
                DiscrepancyClass.UNVERIFIED,
                RepairOutcome.REPAIR_FAILED,
                f"Introspection failed: {e}",
            )

        if state is None or not state.complete:
            if not repair:
                return entry(DiscrepancyClass.MISSING_ON_BACKEND, RepairOutcome.SKIPPED, "dry run")
            return await self._repair_missing(
                names, record, account_existed=state is not None and state.account_exists
            )

        if not state.has_minimal_grant:
            if not repair:
                return entry(DiscrepancyClass.PRIVILEGE_DRIFT, RepairOutcome.SKIPPED, "dry run")
            try:
                await self._provisioner.regrant(names.database_name, names.account_name)
            except ProvisionError as e:
                logger.error("audit_regrant_failed", identity_key=key, error=str(e))
                return entry(DiscrepancyClass.PRIVILEGE_DRIFT, RepairOutcome.REPAIR_FAILED, str(e))
            logger.info("audit_privileges_regranted", identity_key=key)
            return entry(DiscrepancyClass.PRIVILEGE_DRIFT, RepairOutcome.REPAIRED)

        return entry(DiscrepancyClass.CONSISTENT, RepairOutcome.SKIPPED)

    async def _repair_missing(
        self,
        names: ResourceNames,
        record: ProvisioningRecordInfo,
        account_existed: bool,
    ) -> RepairEntry:
        secret = generate_secret(self._secret_length)
        credentials = Credentials(
            host=self._host,
            port=self._port,
            database_name=names.database_name,
            account_name=names.account_name,
            secret=secret,
        )
        try:
            await self._provisioner.provision(
                names.database_name,
                names.account_name,
                secret,
                adopt_existing=True,
            )
        except ProvisionError as e:
            logger.error(
                "audit_reprovision_failed",
                identity_key=names.identity_key,
                step=e.step,
                error=str(e),
            )
            # The secret reset on an existing account is not undone
            secret_reset = account_existed and e.step == "regrant_privileges"
            reason = str(e)
            if secret_reset:
                reason = (
                    f"{e}; account secret was reset before the failure, "
                    "previous secret is no longer valid"
                )
                logger.warning(
                    "audit_credentials_reissued",
                    identity_key=names.identity_key,
                    account_name=names.account_name,
                    privileges_restored=False,
                )
            return RepairEntry(
                identity_key=names.identity_key,
                database_name=record.database_name,
                account_name=record.account_name,
                discrepancy=DiscrepancyClass.MISSING_ON_BACKEND,
                outcome=RepairOutcome.REPAIR_FAILED,
                reason=reason,
                credentials_reissued=secret_reset,
                reissued_credentials=credentials if secret_reset else None,
            )

        logger.warning(
            "audit_credentials_reissued",
            identity_key=names.identity_key,
            database_name=names.database_name,
            account_name=names.account_name,
        )
        return RepairEntry(
            identity_key=names.identity_key,
            database_name=record.database_name,
            account_name=record.account_name,
            discrepancy=DiscrepancyClass.MISSING_ON_BACKEND,
            outcome=RepairOutcome.REPAIRED,
            reason="Resources re-created; previous secret is no longer valid",
            credentials_reissued=True,
            reissued_credentials=credentials,
        )

    async def _check_orphans(
        self, recorded_keys: set[str], repair: bool, report: RepairReport
    ) -> None:
        try:
            discovered = await self._provisioner.discover()
        except Exception as e:
            report.errors.append(f"Backend discovery failed: {e}")
            logger.error("audit_discovery_failed", error=str(e))
            return

        for key in sorted(discovered.identity_keys() - recorded_keys):
            names = derive(key)
            try:
                entry = await self._check_orphan(names, repair)
            except Exception as e:
                logger.exception("audit_orphan_check_crashed", identity_key=key)
                entry = RepairEntry(
                    identity_key=key,
                    database_name=names.database_name,
                    account_name=names.account_name,
                    discrepancy=DiscrepancyClass.ORPHAN_ON_BACKEND,
                    outcome=RepairOutcome.REPAIR_FAILED,
                    reason=f"Unexpected error: {e!r}",
                )
            report.entries.append(entry)

    async def _check_orphan(self, names: ResourceNames, repair: bool) -> RepairEntry:
        key = names.identity_key

        def entry(outcome: RepairOutcome, reason: str | None = None) -> RepairEntry:
            return RepairEntry(
                identity_key=key,
                database_name=names.database_name,
                account_name=names.account_name,
                discrepancy=DiscrepancyClass.ORPHAN_ON_BACKEND,
                outcome=outcome,
                reason=reason,
            )

        if not repair:
            return entry(RepairOutcome.SKIPPED, "dry run")

        # A request may have committed since the ledger was read.
        try:
            recorded_now = await self._ledger.exists(key)
        except LedgerError as e:
            return entry(RepairOutcome.REPAIR_FAILED, f"Ledger re-check failed: {e}")
        if recorded_now:
            return entry(RepairOutcome.SKIPPED, "Recorded in ledger during audit")

        try:
            await self._provisioner.deprovision(names.database_name, names.account_name)
        except ProvisionError as e:
            logger.error("audit_orphan_drop_failed", identity_key=key, error=str(e))
            return entry(RepairOutcome.REPAIR_FAILED, str(e))

        logger.info("audit_orphan_dropped", identity_key=key)
        return entry(RepairOutcome.REPAIRED)
