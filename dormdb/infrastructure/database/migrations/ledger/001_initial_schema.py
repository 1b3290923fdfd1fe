# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Initial ledger schema.

Revision ID: 001_initial_schema
Revises:
Create Date: 2025-01-15

Creates the whitelist and the provisioning record tables. The three
unique constraints on provisioning_records are independent of each other.
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "001_initial_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create ledger tables."""
    op.create_table(
        "whitelist_entries",
        sa.Column("id", sa.Integer, nullable=False),
        sa.Column("identity_key", sa.String(64), nullable=False),
        sa.Column("display_name", sa.String(255), nullable=True),
        sa.Column("group_tag", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_whitelist_entries"),
        sa.UniqueConstraint("identity_key", name="uq_whitelist_entries_identity_key"),
    )

    op.create_table(
        "provisioning_records",
        sa.Column("id", sa.Integer, nullable=False),
        sa.Column("identity_key", sa.String(64), nullable=False),
        sa.Column("database_name", sa.String(64), nullable=False),
        sa.Column("account_name", sa.String(32), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_provisioning_records"),
        sa.UniqueConstraint("identity_key", name="uq_provisioning_records_identity_key"),
        sa.UniqueConstraint("database_name", name="uq_provisioning_records_database_name"),
        sa.UniqueConstraint("account_name", name="uq_provisioning_records_account_name"),
    )
    op.create_index(
        "ix_provisioning_records_created_at",
        "provisioning_records",
        ["created_at"],
    )


def downgrade() -> None:
    """Drop ledger tables."""
    op.drop_index("ix_provisioning_records_created_at", table_name="provisioning_records")
    op.drop_table("provisioning_records")
    op.drop_table("whitelist_entries")
