# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Utility functions and helpers for DormDB.

This package contains cross-cutting utilities:
- logging: Structured logging with structlog
- datetime: Timezone-aware datetime operations
"""

from dormdb.utils.datetime import ensure_utc, format_iso, utc_now, utc_today_start
from dormdb.utils.logging import bind_context, clear_context, get_logger, setup_logging

__all__ = [
    # Logging
    "setup_logging",
    "get_logger",
    "bind_context",
    "clear_context",
    # Datetime
    "utc_now",
    "ensure_utc",
    "utc_today_start",
    "format_iso",
]
