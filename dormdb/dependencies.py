# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Component wiring.

Builds the ledger, the MySQL provisioner, the engine and the auditor from
Settings and disposes their connection pools again. The HTTP layer or a
CLI owns one container for the lifetime of the process.

Example:
    from dormdb.dependencies import provisioning_container

    async with provisioning_container() as container:
        credentials = await container.engine.submit_application("2023010101")
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine

from dormdb.core.config import Settings, get_settings
from dormdb.domains.provisioning.auditor import ConsistencyAuditor
from dormdb.domains.provisioning.ledger import SQLIdentityLedger
from dormdb.domains.provisioning.service import EscalationHook, ProvisioningEngine
from dormdb.infrastructure.database.connection import (
    create_ledger_engine,
    create_ledger_sessionmaker,
)
from dormdb.infrastructure.database.migrations.runner import run_ledger_migrations
from dormdb.infrastructure.database.mysql_provisioner import MySQLResourceProvisioner
from dormdb.utils.logging import setup_logging

logger = logging.getLogger(__name__)


@dataclass
class ProvisioningContainer:
    """Long-lived components sharing one ledger and one backend pool."""

    settings: Settings
    ledger_engine: AsyncEngine
    ledger: SQLIdentityLedger
    provisioner: MySQLResourceProvisioner
    auditor: ConsistencyAuditor
    engine: ProvisioningEngine

    async def close(self) -> None:
        """Dispose both connection pools."""
        await self.provisioner.close()
        await self.ledger_engine.dispose()
        logger.info("Provisioning container closed")


async def create_container(
    settings: Settings | None = None,
    *,
    run_migrations: bool = True,
    escalation_hook: EscalationHook | None = None,
) -> ProvisioningContainer:
    """Build all components from settings.

    Args:
        settings: Application settings. Defaults to get_settings().
        run_migrations: Apply pending ledger migrations first.
        escalation_hook: Receives unrecovered partial failures.

    Returns:
        Ready-to-use ProvisioningContainer.
    """
    settings = settings or get_settings()
    setup_logging(settings)

    if run_migrations:
        await run_ledger_migrations(settings.ledger_db.url)

    ledger_engine = create_ledger_engine(settings)
    ledger = SQLIdentityLedger(create_ledger_sessionmaker(ledger_engine))
    provisioner = MySQLResourceProvisioner(settings)

    backend = settings.backend_db
    auditor = ConsistencyAuditor(
        ledger,
        provisioner,
        host=backend.advertised_host,
        port=backend.port,
        secret_length=settings.provisioning.secret_length,
        page_size=settings.provisioning.audit_page_size,
        repair_by_default=settings.provisioning.repair_on_audit,
    )
    engine = ProvisioningEngine(
        ledger,
        provisioner,
        host=backend.advertised_host,
        port=backend.port,
        secret_length=settings.provisioning.secret_length,
        escalation_hook=escalation_hook,
        auditor=auditor,
    )

    logger.info(
        "Provisioning container ready (environment=%s, allowed_host=%s)",
        settings.environment,
        backend.allowed_host,
    )
    return ProvisioningContainer(
        settings=settings,
        ledger_engine=ledger_engine,
        ledger=ledger,
        provisioner=provisioner,
        auditor=auditor,
        engine=engine,
    )


@asynccontextmanager
async def provisioning_container(
    settings: Settings | None = None,
) -> AsyncIterator[ProvisioningContainer]:
    """Create a container and close it on exit."""
    container = await create_container(settings)
    try:
        yield container
    finally:
        await container.close()
