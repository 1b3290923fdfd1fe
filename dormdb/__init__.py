"""DormDB.

Self-service provisioning of isolated per-identity MySQL databases and
accounts, with a consistency auditor that keeps the local ledger and the
shared server in agreement.

Copyright (C) 2025 Global Digital Labs (gdlabs.io)
SPDX-License-Identifier: LGPL-3.0-or-later
"""

__version__ = "0.1.0"
