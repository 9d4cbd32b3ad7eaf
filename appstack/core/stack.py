# AppStack - Component Wiring

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from appstack.core.backends import select_backend
from appstack.core.backups import BackupManager
from appstack.core.config import Settings, settings as default_settings
from appstack.core.database import PostgresProvisioner
from appstack.core.installer import Installer
from appstack.core.ports import PortAllocator
from appstack.core.process import ProcessRunner
from appstack.core.registry import Registry
from appstack.core.service_manager import ServiceManager

logger = logging.getLogger("appstack")


@dataclass
class Stack:
    """Every core component, built once and handed to the front-ends."""

    settings: Settings
    registry: Registry
    allocator: PortAllocator
    services: ServiceManager
    installer: Installer
    database: PostgresProvisioner
    backups: BackupManager

    def reload(self) -> None:
        """Rebuild in-memory caches from the registry."""
        self.allocator.reload()

    def recover(self) -> Dict[str, List]:
        """Clean up after installs abandoned by a crash."""
        report = self.installer.recover()
        if report["released_ports"] or report["orphaned_dirs"]:
            logger.warning("Recovery: %s", report)
        return report

    def close(self) -> None:
        self.services.close()


def build_stack(settings: Optional[Settings] = None) -> Stack:
    settings = settings or default_settings
    settings.ensure_directories()

    runner = ProcessRunner()
    registry = Registry(settings.registry_file)
    allocator = PortAllocator(registry, settings)
    services = ServiceManager(select_backend(runner, settings), settings)
    database = PostgresProvisioner(settings, runner)
    installer = Installer(
        settings=settings,
        registry=registry,
        allocator=allocator,
        database=database,
        runner=runner,
    )
    return Stack(
        settings=settings,
        registry=registry,
        allocator=allocator,
        services=services,
        installer=installer,
        database=database,
        backups=BackupManager(settings, registry, database),
    )
