"""pg_ctl based server control."""

import os
import shlex

from pgclusters.constants import PRIMARY_CONF
from pgclusters.errors import ClusterError, ExternalToolFailure, ValidationError


class ServerControl:
    """Starts and stops clusters as their owner through the version's pg_ctl."""

    def __init__(self, logger, console, registry, command_runner):
        self.logger = logger
        self.console = console
        self.registry = registry
        self.command_runner = command_runner

    def _pg_ctl(self, version: str) -> str:
        path = self.registry.program_path("pg_ctl", version)
        if path is None:
            raise ExternalToolFailure(
                f"pg_ctl for version {version} not found. Is the matching PostgreSQL version installed?",
                tool="pg_ctl",
            )
        return path

    @staticmethod
    def _owner(cluster):
        if cluster.owner_uid is None or cluster.owner_gid is None:
            raise ClusterError(f"Cannot determine the owner of cluster {cluster.key}")
        return cluster.owner_uid, cluster.owner_gid

    def start(self, version: str, name: str, force: bool = False, options: str = ""):
        """Starts the cluster; ``options`` are extra server settings for this start only."""
        cluster = self.registry.describe(version, name)
        if cluster.running:
            self.logger.info("Cluster %s is already running", cluster.key)
            return
        if cluster.start_mode == "disabled" and not force:
            raise ValidationError(
                f"Cluster {cluster.key} is disabled in start.conf; change the start mode to start it"
            )

        server_options = f'-c config_file="{os.path.join(cluster.config_dir, PRIMARY_CONF)}"'
        if options:
            server_options = f"{server_options} {options}"
        extra = self.registry.get_pg_ctl_options(version, name)
        cmd = [self._pg_ctl(version), "start", "-D", cluster.data_dir, "-l", cluster.log_file, "-s", "-w", "-o", server_options]
        cmd.extend(shlex.split(extra))

        self.console.print(f"Starting cluster {cluster.key} ...")
        self.command_runner.run(cmd, owner=self._owner(cluster), env={"LC_ALL": "C"}, cwd="/")

    def stop(self, version: str, name: str, mode: str = "fast"):
        cluster = self.registry.describe(version, name)
        if not cluster.running:
            self.logger.info("Cluster %s is not running", cluster.key)
            return

        self.console.print(f"Stopping cluster {cluster.key} ...")
        self.command_runner.run(
            [self._pg_ctl(version), "stop", "-D", cluster.data_dir, "-s", "-w", "-m", mode],
            owner=self._owner(cluster),
            cwd="/",
        )

    def restart(self, version: str, name: str):
        self.stop(version, name)
        self.start(version, name, force=True)

    def is_running(self, version: str, name: str) -> bool:
        return bool(self.registry.describe(version, name).running)
