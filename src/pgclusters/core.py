import logging
from typing import List, Optional

from rich.console import Console

from .errors import ClusterError, ClusterMissingInfo
from .lifecycle import ClusterLifecycle
from .models import Cluster, CreateRequest, Settings, UpgradeRequest
from .services.accounts import AccountService
from .services.command_runner import CommandRunner
from .services.config_file import ConfigFileService
from .services.database import DatabaseService
from .services.filesystem import FileSystemService
from .services.hba import HbaService
from .services.hooks import HookService
from .services.ports import PortAllocator
from .services.registry import ClusterRegistry
from .services.server import ServerControl
from .services.upgrade_rules import ConfigMigrationService
from .services.validation import ValidationService
from .upgrade import UpgradeOrchestrator

console = Console()
logger = logging.getLogger("pgclusters")


class ClusterManager:
    """Wires the services together and exposes the cluster operations."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        command_runner=None,
        accounts=None,
        port_allocator=None,
        server=None,
        database=None,
        output_console: Optional[Console] = None,
        output_logger: Optional[logging.Logger] = None,
    ):
        self.settings = settings or Settings.from_sources()
        self.console = output_console or console
        self.logger = output_logger or logger

        self.accounts = accounts or AccountService()
        self.command_runner = command_runner or CommandRunner(logger=self.logger)
        self.filesystem_service = FileSystemService(logger=self.logger, console=self.console)
        self.config_file_service = ConfigFileService(logger=self.logger, filesystem_service=self.filesystem_service)
        self.port_allocator = port_allocator or PortAllocator(logger=self.logger)
        self.registry = ClusterRegistry(
            settings=self.settings,
            logger=self.logger,
            config_file_service=self.config_file_service,
            port_allocator=self.port_allocator,
            accounts=self.accounts,
        )
        self.validation_service = ValidationService(registry=self.registry)
        self.hba_service = HbaService(logger=self.logger, filesystem_service=self.filesystem_service)
        self.server = server or ServerControl(
            logger=self.logger,
            console=self.console,
            registry=self.registry,
            command_runner=self.command_runner,
        )
        self.database_service = database or DatabaseService(
            settings=self.settings,
            logger=self.logger,
            console=self.console,
            registry=self.registry,
            command_runner=self.command_runner,
        )
        self.hook_service = HookService(
            settings=self.settings,
            logger=self.logger,
            console=self.console,
            command_runner=self.command_runner,
        )
        self.migration_service = ConfigMigrationService(
            logger=self.logger, config_file_service=self.config_file_service
        )
        self.lifecycle = ClusterLifecycle(
            settings=self.settings,
            logger=self.logger,
            console=self.console,
            registry=self.registry,
            config_file_service=self.config_file_service,
            filesystem_service=self.filesystem_service,
            hba_service=self.hba_service,
            accounts=self.accounts,
            command_runner=self.command_runner,
            server=self.server,
            validation_service=self.validation_service,
        )
        self.upgrader = UpgradeOrchestrator(
            settings=self.settings,
            logger=self.logger,
            console=self.console,
            registry=self.registry,
            lifecycle=self.lifecycle,
            config_file_service=self.config_file_service,
            filesystem_service=self.filesystem_service,
            database_service=self.database_service,
            server=self.server,
            hook_service=self.hook_service,
            migration_service=self.migration_service,
            hba_service=self.hba_service,
            accounts=self.accounts,
            command_runner=self.command_runner,
            validation_service=self.validation_service,
        )

    def create(self, request: CreateRequest) -> Cluster:
        return self.lifecycle.create(request)

    def drop(self, version: str, name: str, stop: bool = False):
        self.lifecycle.drop(version, name, stop=stop)

    def rename(self, version: str, old_name: str, new_name: str) -> Cluster:
        return self.lifecycle.rename(version, old_name, new_name)

    def upgrade(self, request: UpgradeRequest) -> Cluster:
        return self.upgrader.upgrade(request)

    def list_clusters(self) -> List[Cluster]:
        clusters = []
        for version in self.registry.list_versions():
            for name in self.registry.list_clusters(version):
                try:
                    clusters.append(self.registry.describe(version, name))
                except ClusterMissingInfo as exc:
                    self.logger.warning("Skipping %s/%s: %s", version, name, exc)
                except (ClusterError, OSError) as exc:
                    self.logger.debug("Skipping %s/%s: %s", version, name, exc)
        return clusters

    def owner_name(self, cluster: Cluster) -> str:
        if cluster.owner_uid is None:
            return "<unknown>"
        return self.accounts.user_name(cluster.owner_uid) or str(cluster.owner_uid)
