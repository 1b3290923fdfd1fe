# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Ledger migrations.

Contains migrations for:
- whitelist_entries: identities allowed to apply
- provisioning_records: issued databases and accounts
"""
