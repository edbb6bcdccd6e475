"""Wiring of the orchestrator stack from loaded configuration.

CLI commands never construct services directly; they open an orchestrator
through open_orchestrator(), which configures the database, opens the
installer and inventory clients, and closes them on exit.
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from update_center.config import UpdateCenterConfig
from update_center.db import connection
from update_center.errors import ValidationError
from update_center.services.batch_orchestrator import BatchOrchestrator
from update_center.services.installer_client import CicdInstallerClient
from update_center.services.package_inventory import TableApiPackageInventory

logger = logging.getLogger(__name__)


def open_database(config: UpdateCenterConfig):
    """Configure the process-wide engine and create tables.

    Returns:
        The session factory.
    """
    factory = connection.configure(config.database.url, echo=config.database.echo)
    connection.init_db()
    return factory


def build_inventory(config: UpdateCenterConfig) -> TableApiPackageInventory:
    """Create the inventory adapter, falling back to installer credentials."""
    inventory = config.inventory
    base_url = inventory.base_url or config.installer.base_url
    username = inventory.username or config.installer.username
    password = inventory.password or config.installer.password
    return TableApiPackageInventory(
        base_url, username, password, timeout=inventory.timeout_seconds
    )


def require_endpoints(config: UpdateCenterConfig) -> None:
    """Fail early when the installer endpoint is not configured.

    Raises:
        ValidationError: If installer.base_url is empty.
    """
    if not config.installer.base_url:
        raise ValidationError(
            "installer.base_url is not configured. Set it in update_center.yaml "
            "or UPDATE_CENTER_INSTALLER_BASE_URL."
        )


@asynccontextmanager
async def open_orchestrator(
    config: UpdateCenterConfig, need_endpoints: bool = True
) -> AsyncIterator[BatchOrchestrator]:
    """Open a fully wired BatchOrchestrator for the duration of a command.

    Args:
        config: Loaded configuration.
        need_endpoints: Whether the command talks to the installer or inventory.
    """
    if need_endpoints:
        require_endpoints(config)
    factory = open_database(config)
    installer = CicdInstallerClient(
        config.installer.base_url,
        config.installer.username,
        config.installer.password,
        timeout=config.installer.timeout_seconds,
    )
    inventory = build_inventory(config)
    try:
        async with installer:
            yield BatchOrchestrator(factory, installer, inventory, config=config)
    finally:
        inventory.close()
