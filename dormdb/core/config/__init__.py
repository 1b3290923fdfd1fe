# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Configuration package for DormDB.

Example:
    >>> from dormdb.core.config import get_settings
    >>> settings = get_settings()
    >>> print(settings.environment)
    'development'
"""

from dormdb.core.config.settings import (
    BackendDatabaseSettings,
    LedgerDatabaseSettings,
    ProvisioningSettings,
    Settings,
    clear_settings_cache,
    get_settings,
    is_valid_account_host,
)

__all__ = [
    "Settings",
    "get_settings",
    "clear_settings_cache",
    # Subsettings
    "LedgerDatabaseSettings",
    "BackendDatabaseSettings",
    "ProvisioningSettings",
    # Validation helpers
    "is_valid_account_host",
]
