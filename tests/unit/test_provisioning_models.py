# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Tests for provisioning data models."""

from dormdb.models.provisioning import (
    Credentials,
    DiscrepancyClass,
    RepairEntry,
    RepairOutcome,
    RepairReport,
    SystemHealth,
)


def make_credentials(secret: str = "p@ss/word:1234!#") -> Credentials:
    return Credentials(
        host="db.example.edu",
        port=3306,
        database_name="db_2023010101",
        account_name="user_2023010101",
        secret=secret,
    )


def make_entry(
    key: str,
    discrepancy: DiscrepancyClass,
    outcome: RepairOutcome,
    **kwargs,
) -> RepairEntry:
    return RepairEntry(
        identity_key=key,
        database_name=f"db_{key}",
        account_name=f"user_{key}",
        discrepancy=discrepancy,
        outcome=outcome,
        **kwargs,
    )


class TestCredentials:
    """Tests for Credentials."""

    def test_connection_string_encodes_secret(self) -> None:
        credentials = make_credentials()

        assert credentials.connection_string == (
            "mysql://user_2023010101:p%40ss%2Fword%3A1234%21%23"
            "@db.example.edu:3306/db_2023010101"
            "?allowPublicKeyRetrieval=true&useSSL=false"
        )

    def test_jdbc_url(self) -> None:
        credentials = make_credentials(secret="plainSecret12345")

        assert credentials.jdbc_url == (
            "jdbc:mysql://db.example.edu:3306/db_2023010101"
            "?allowPublicKeyRetrieval=true&useSSL=false"
            "&user=user_2023010101&password=plainSecret12345"
        )

    def test_secret_not_in_repr(self) -> None:
        credentials = make_credentials(secret="TopSecret-987654")

        text = repr(credentials)

        assert "TopSecret-987654" not in text
        assert "connection_string" not in text
        assert "jdbc_url" not in text
        assert "TopSecret-987654" not in str(credentials)

    def test_encoded_secret_not_in_repr(self) -> None:
        credentials = make_credentials(secret="p@ss/word:1234!#")

        assert "p%40ss%2Fword%3A1234%21%23" not in repr(credentials)

    def test_dump_includes_urls(self) -> None:
        data = make_credentials().model_dump()

        assert "connection_string" in data
        assert "jdbc_url" in data


class TestRepairReport:
    """Tests for RepairReport helpers."""

    def test_empty_report_is_consistent(self) -> None:
        report = RepairReport()

        assert report.is_consistent
        assert report.repaired_count == 0
        assert report.entry_for("2023010101") is None

    def test_counts(self) -> None:
        report = RepairReport(
            entries=[
                make_entry("a", DiscrepancyClass.CONSISTENT, RepairOutcome.SKIPPED),
                make_entry(
                    "b",
                    DiscrepancyClass.MISSING_ON_BACKEND,
                    RepairOutcome.REPAIRED,
                    credentials_reissued=True,
                ),
                make_entry("c", DiscrepancyClass.ORPHAN_ON_BACKEND, RepairOutcome.REPAIRED),
                make_entry(
                    "d",
                    DiscrepancyClass.PRIVILEGE_DRIFT,
                    RepairOutcome.REPAIR_FAILED,
                    reason="denied",
                ),
            ]
        )

        assert not report.is_consistent
        assert report.repaired_count == 2
        assert report.failed_count == 1
        assert [e.identity_key for e in report.reissued] == ["b"]
        assert [e.identity_key for e in report.by_class(DiscrepancyClass.ORPHAN_ON_BACKEND)] == ["c"]

    def test_errors_make_report_inconsistent(self) -> None:
        report = RepairReport(errors=["Backend discovery failed"])

        assert not report.is_consistent

    def test_reissued_secret_not_in_repr(self) -> None:
        report = RepairReport(
            entries=[
                make_entry(
                    "2023010101",
                    DiscrepancyClass.MISSING_ON_BACKEND,
                    RepairOutcome.REPAIRED,
                    credentials_reissued=True,
                    reissued_credentials=make_credentials(secret="Reissued-55555"),
                )
            ]
        )

        assert "Reissued-55555" not in repr(report)
        assert "Reissued-55555" not in repr(report.entries[0])
        assert report.entries[0].reissued_credentials.secret == "Reissued-55555"


class TestSystemHealth:
    """Tests for SystemHealth."""

    def test_healthy_requires_both_stores(self) -> None:
        assert SystemHealth(ledger_ok=True, backend_ok=True).healthy
        assert not SystemHealth(ledger_ok=True, backend_ok=False).healthy
        assert not SystemHealth(ledger_ok=False, backend_ok=True).healthy
