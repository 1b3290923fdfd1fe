# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Pydantic data models for DormDB."""

from dormdb.models.provisioning import (
    ApplicationStats,
    Credentials,
    DiscrepancyClass,
    ProvisioningRecordInfo,
    PublicApplicationRecord,
    RepairEntry,
    RepairOutcome,
    RepairReport,
    SystemHealth,
    WhitelistEntryCreate,
    WhitelistImportResult,
)

__all__ = [
    "ApplicationStats",
    "Credentials",
    "DiscrepancyClass",
    "ProvisioningRecordInfo",
    "PublicApplicationRecord",
    "RepairEntry",
    "RepairOutcome",
    "RepairReport",
    "SystemHealth",
    "WhitelistEntryCreate",
    "WhitelistImportResult",
]
