# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Ledger database migrations.

Migrations are plain modules with an ``upgrade()`` function written with
alembic operations, applied in order by the runner.
"""
