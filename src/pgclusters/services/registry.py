"""Filesystem-backed discovery of PostgreSQL versions and clusters.

Nothing is cached: every call re-reads the configuration tree, so results
reflect the state of the host at the time of the call.
"""

import os
import re
import socket
import stat
from typing import Dict, List, Optional, Set

from pgclusters.constants import (
    AUTO_CONF,
    PG_CTL_CONF,
    PG_CTL_CONF_HEADER,
    PRIMARY_CONF,
    START_CONF,
    START_CONF_HEADER,
    START_MODES,
)
from pgclusters.errors import (
    ClusterError,
    ClusterMissingInfo,
    FilesystemError,
    MalformedConfiguration,
    OwnershipMismatch,
    ValidationError,
)
from pgclusters.models import Cluster, Settings
from pgclusters.versions import is_valid_version, parse_version, sort_versions, version_at_least

_START_MODE_LINE_RE = re.compile(r"^\s*(?:auto|manual|disabled)\b(.*)$")


class ClusterRegistry:
    """Enumerates and describes clusters below the configuration root."""

    def __init__(self, settings: Settings, logger, config_file_service, port_allocator, accounts):
        self.settings = settings
        self.logger = logger
        self.config_files = config_file_service
        self.port_allocator = port_allocator
        self.accounts = accounts

    # ------------------------------------------------------------------
    # Paths and configuration files
    # ------------------------------------------------------------------

    def config_dir(self, version: str, cluster: str) -> str:
        return os.path.join(self.settings.conf_root, str(version), cluster)

    def default_log_file(self, version: str, cluster: str) -> str:
        return os.path.join(self.settings.log_root, f"postgresql-{version}-{cluster}.log")

    def cluster_conf_filename(self, version: str, cluster: str, name: str) -> str:
        if name == AUTO_CONF:
            data_dir = self.data_directory(version, cluster)
            return os.path.join(data_dir or self.config_dir(version, cluster), name)
        path = os.path.join(self.config_dir(version, cluster), name)
        if not os.path.exists(path):
            path = os.path.join(self.settings.common_confdir, name)
        return path

    def read_cluster_conf(self, version: str, cluster: str, name: str = PRIMARY_CONF) -> Dict[str, str]:
        settings = self.config_files.read(self.cluster_conf_filename(version, cluster, name))

        if name == PRIMARY_CONF and version_at_least(version, "9.4"):
            data_dir = self.data_directory(version, cluster, settings)
            if data_dir:
                auto_settings = self.config_files.read(os.path.join(data_dir, AUTO_CONF))
                # ALTER SYSTEM cannot change data_directory
                auto_settings.pop("data_directory", None)
                settings.update(auto_settings)

        return settings

    def get_conf_value(self, version: str, cluster: str, name: str, key: str) -> Optional[str]:
        return self.read_cluster_conf(version, cluster, name).get(key)

    def set_conf_value(self, version: str, cluster: str, name: str, key: str, value):
        self.config_files.set_value(self.cluster_conf_filename(version, cluster, name), key, value)

    def data_directory(self, version: str, cluster: str, conf: Optional[Dict[str, str]] = None) -> Optional[str]:
        if conf is None:
            conf = self.config_files.read(self.cluster_conf_filename(version, cluster, PRIMARY_CONF))
        data_dir = conf.get("data_directory")
        config_dir = self.config_dir(version, cluster)

        if not data_dir:
            # pgdata symlink written by earlier releases
            legacy_link = os.path.join(config_dir, "pgdata")
            if os.path.islink(legacy_link):
                data_dir = os.readlink(legacy_link)
        if not data_dir and os.path.isfile(os.path.join(config_dir, "PG_VERSION")):
            data_dir = os.readlink(config_dir) if os.path.islink(config_dir) else config_dir
        return data_dir or None

    # ------------------------------------------------------------------
    # Ports, sockets and running state
    # ------------------------------------------------------------------

    def get_port(self, version: str, cluster: str) -> int:
        port = self.get_conf_value(version, cluster, PRIMARY_CONF, "port")
        try:
            return int(port) if port else self.settings.default_port
        except ValueError as exc:
            raise MalformedConfiguration(f"Invalid port '{port}' for cluster {version}/{cluster}") from exc

    def set_port(self, version: str, cluster: str, port: int):
        self.set_conf_value(version, cluster, PRIMARY_CONF, "port", port)

    @staticmethod
    def socket_dir_setting(version: str) -> str:
        return "unix_socket_directories" if version_at_least(version, "9.3") else "unix_socket_directory"

    def get_socketdir(self, version: str, cluster: str, conf: Optional[Dict[str, str]] = None) -> str:
        if conf is None:
            conf = self.read_cluster_conf(version, cluster)
        configured = conf.get(self.socket_dir_setting(version))
        if configured:
            # only the first of several directories is used
            first = configured.split(",")[0].strip()
            if first:
                return first
        return self.infer_socketdir(self.data_directory(version, cluster, conf))

    def infer_socketdir(self, data_dir: Optional[str]) -> str:
        """Shared socket root if it belongs to the data directory owner, /tmp otherwise.

        This is a heuristic: on hosts where several accounts own clusters it
        picks /tmp for every owner but the one owning the socket root.
        """
        socket_root = self.settings.run_root
        try:
            root_stat = os.stat(socket_root)
        except OSError as exc:
            raise FilesystemError(f"Cannot stat {socket_root}", path=socket_root) from exc

        if not data_dir:
            return socket_root
        try:
            data_stat = os.stat(data_dir)
        except OSError:
            self.logger.debug("%s is not accessible; assuming %s", data_dir, socket_root)
            return socket_root
        if root_stat.st_uid != data_stat.st_uid:
            return "/tmp"
        return socket_root

    @staticmethod
    def port_running(socket_dir: str, port: int) -> bool:
        socket_path = os.path.join(socket_dir, f".s.PGSQL.{port}")
        try:
            if not stat.S_ISSOCK(os.stat(socket_path).st_mode):
                return False
        except OSError:
            return False

        client = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            client.connect(socket_path)
            return True
        except OSError:
            return False
        finally:
            client.close()

    @staticmethod
    def read_pidfile(path: str) -> Optional[int]:
        try:
            with open(path, "r", encoding="utf-8") as file_obj:
                first_line = file_obj.readline()
        except OSError:
            return None
        match = re.match(r"^(\d+)\s*$", first_line)
        return int(match.group(1)) if match else None

    def check_pidfile_running(self, path: str) -> Optional[bool]:
        """False if there is no pid file, None if the owning process cannot be inspected."""
        if not os.path.exists(path):
            return False
        pid = self.read_pidfile(path)
        if pid is None:
            return None
        try:
            with open(os.path.join(self.settings.proc_root, str(pid), "cmdline"), "rb") as file_obj:
                cmdline = file_obj.read().decode("utf-8", errors="replace")
        except FileNotFoundError:
            return False
        except OSError:
            return None
        return re.search(r"\bpostgres\b", cmdline) is not None

    def cluster_supervisor(self, pidfile: str) -> Optional[str]:
        pid = self.read_pidfile(pidfile)
        if pid is None:
            return None
        try:
            with open(os.path.join(self.settings.proc_root, str(pid), "cgroup"), "r", encoding="utf-8") as file_obj:
                cgroup = file_obj.read()
        except OSError:
            return None
        match = re.search(r"\b(pacemaker|patroni)\b", cgroup)
        return match.group(1) if match else None

    # ------------------------------------------------------------------
    # start.conf and pg_ctl.conf
    # ------------------------------------------------------------------

    def get_start_mode(self, version: str, cluster: str) -> str:
        path = os.path.join(self.config_dir(version, cluster), START_CONF)
        try:
            with open(path, "r", encoding="utf-8") as file_obj:
                lines = file_obj.readlines()
        except FileNotFoundError:
            return "auto"
        except OSError as exc:
            raise FilesystemError(f"Could not open {path}: {exc}", path=path) from exc

        for line in lines:
            content = line.split("#", 1)[0].strip()
            if not content:
                continue
            match = re.match(r"^(auto|manual|disabled)", content)
            if match:
                return match.group(1)
            raise MalformedConfiguration(
                f"Invalid mode in {path}, must be one of {', '.join(START_MODES)}"
            )
        return "auto"

    def set_start_mode(self, version: str, cluster: str, mode: str, comment: Optional[str] = None):
        if mode not in START_MODES:
            raise ValidationError(f"Invalid mode: '{mode}'")

        path = os.path.join(self.config_dir(version, cluster), START_CONF)
        suffix = f" # {comment}" if comment else None
        if os.path.exists(path):
            with open(path, "r", encoding="utf-8") as file_obj:
                lines = file_obj.readlines()
            text = ""
            for line in lines:
                match = _START_MODE_LINE_RE.match(line)
                if match:
                    text += mode + (suffix if suffix is not None else match.group(1)) + "\n"
                else:
                    text += line
            self.config_files.filesystem_service.atomic_write(path, text)
        else:
            text = f"{START_CONF_HEADER}\n{mode}{suffix or ''}\n"
            self.config_files.filesystem_service.atomic_write(path, text, mode=0o644)

    def get_pg_ctl_options(self, version: str, cluster: str) -> str:
        path = os.path.join(self.config_dir(version, cluster), PG_CTL_CONF)
        return self.config_files.read(path).get("pg_ctl_options", "")

    def set_pg_ctl_options(self, version: str, cluster: str, options: str):
        path = os.path.join(self.config_dir(version, cluster), PG_CTL_CONF)
        escaped = options.replace("'", "''")
        text = f"{PG_CTL_CONF_HEADER}\npg_ctl_options = '{escaped}'\n"
        self.config_files.filesystem_service.atomic_write(path, text, mode=0o644)

    # ------------------------------------------------------------------
    # Enumeration
    # ------------------------------------------------------------------

    def program_path(self, program: str, version: Optional[str] = None) -> Optional[str]:
        if version is None:
            version = self.newest_version(program)
            if version is None:
                return None
        path = os.path.join(self.settings.bin_root, str(version), "bin", program)
        if os.path.isfile(path) and os.access(path, os.X_OK):
            return path
        return None

    def list_versions(self, program: str = "postgres", max_version: Optional[str] = None) -> List[str]:
        versions: Set[str] = set()
        limit = parse_version(max_version) if max_version else None

        def acceptable(candidate: str) -> bool:
            return is_valid_version(candidate) and (limit is None or parse_version(candidate) <= limit)

        for entry in self._listdir(self.settings.bin_root):
            if acceptable(entry) and self.program_path(program, entry):
                versions.add(entry)

        if program == "postgres":
            for entry in self._listdir(self.settings.conf_root):
                if not acceptable(entry):
                    continue
                version_dir = os.path.join(self.settings.conf_root, entry)
                for cluster in self._listdir(version_dir):
                    if os.path.exists(os.path.join(version_dir, cluster, PRIMARY_CONF)):
                        versions.add(entry)
                        break

        return sort_versions(versions)

    def newest_version(self, program: str = "postgres", max_version: Optional[str] = None) -> Optional[str]:
        versions = self.list_versions(program, max_version)
        return versions[-1] if versions else None

    def version_exists(self, version: str) -> bool:
        return self.program_path("psql", version) is not None

    def list_clusters(self, version: str) -> List[str]:
        version_dir = os.path.join(self.settings.conf_root, str(version))
        clusters = []
        for entry in self._listdir(version_dir):
            conf = os.path.join(version_dir, entry, PRIMARY_CONF)
            # dangling symlinks count: the cluster exists but is broken
            if os.path.lexists(conf):
                clusters.append(entry)
        return sorted(clusters)

    def exists(self, version: str, cluster: str) -> bool:
        return cluster in self.list_clusters(version)

    @staticmethod
    def _listdir(path: str) -> List[str]:
        try:
            return os.listdir(path)
        except OSError:
            return []

    def claimed_ports(self, exclude: Optional[Cluster] = None) -> Dict[int, str]:
        """Maps every port configured by a known cluster to that cluster's ``version/name``."""
        ports: Dict[int, str] = {}
        for version in self.list_versions():
            for cluster in self.list_clusters(version):
                if exclude is not None and (exclude.version, exclude.name) == (version, cluster):
                    continue
                try:
                    ports.setdefault(self.get_port(version, cluster), f"{version}/{cluster}")
                except (ClusterError, OSError) as exc:
                    self.logger.debug("Skipping %s/%s while collecting ports: %s", version, cluster, exc)
        return ports

    def next_free_port(self) -> int:
        return self.port_allocator.find_free_port(self.claimed_ports())

    # ------------------------------------------------------------------
    # Cluster records
    # ------------------------------------------------------------------

    def describe(self, version: str, cluster: str) -> Cluster:
        config_dir = self.config_dir(version, cluster)
        try:
            conf = self.read_cluster_conf(version, cluster)
        except FilesystemError as exc:
            raise ClusterMissingInfo(
                f"Could not read configuration of cluster {version}/{cluster}: {exc}"
            ) from exc
        if not conf:
            raise ClusterMissingInfo(
                f"Cluster {version}/{cluster} has no readable {PRIMARY_CONF} in {config_dir}"
            )

        data_dir = self.data_directory(version, cluster, conf)
        try:
            port = int(conf.get("port") or self.settings.default_port)
        except ValueError as exc:
            raise MalformedConfiguration(f"Invalid port '{conf.get('port')}' for cluster {version}/{cluster}") from exc
        socket_dir = self.get_socketdir(version, cluster, conf)

        running: Optional[bool] = None
        supervisor = None
        pidfile = conf.get("external_pid_file")
        if pidfile and pidfile != "(none)":
            running = self.check_pidfile_running(pidfile)
            supervisor = self.cluster_supervisor(pidfile)
        if running is None:
            # probing the port is unreliable if the port was changed since startup
            running = self.port_running(socket_dir, port)

        config_uid = None
        try:
            config_uid = os.stat(os.path.join(config_dir, PRIMARY_CONF)).st_uid
        except OSError:
            pass

        record = Cluster(
            version=str(version),
            name=cluster,
            config_dir=config_dir,
            data_dir=data_dir,
            port=port,
            socket_dir=socket_dir,
            start_mode=self.get_start_mode(version, cluster),
            running=running,
            log_file=self.default_log_file(version, cluster),
            config_uid=config_uid,
            supervisor=supervisor,
            config=conf,
        )

        if data_dir:
            try:
                data_stat = os.stat(data_dir)
                record.owner_uid, record.owner_gid = data_stat.st_uid, data_stat.st_gid
            except OSError:
                pass
            if version_at_least(version, "12"):
                record.recovery = any(
                    os.path.exists(os.path.join(data_dir, name))
                    for name in ("recovery.signal", "standby.signal")
                )
            else:
                record.recovery = os.path.exists(os.path.join(data_dir, "recovery.conf"))
            wal_link = os.path.join(data_dir, "pg_wal" if version_at_least(version, "10") else "pg_xlog")
            if os.path.islink(wal_link):
                record.wal_dir = os.readlink(wal_link)

        log_link = os.path.join(config_dir, "log")
        if os.path.islink(log_link):
            record.log_file = os.readlink(log_link)
            record.custom_log = True

        return record

    def validate_ownership(self, cluster: Cluster):
        data_dir = cluster.data_dir
        if not data_dir:
            raise OwnershipMismatch("Cluster data directory is unknown")
        if not os.path.isdir(data_dir):
            raise OwnershipMismatch(f"{data_dir} is not accessible or does not exist")
        if cluster.owner_uid is None:
            raise OwnershipMismatch(f"Could not determine owner of {data_dir}")
        if cluster.owner_uid == 0:
            raise OwnershipMismatch(f"Data directory {data_dir} must not be owned by root")
        if self.accounts.user_name(cluster.owner_uid) is None:
            raise OwnershipMismatch(
                f"The cluster is owned by user id {cluster.owner_uid} which does not exist"
            )
        if self.accounts.group_name(cluster.owner_gid) is None:
            raise OwnershipMismatch(
                f"The cluster is owned by group id {cluster.owner_gid} which does not exist"
            )
        if (
            self.accounts.is_privileged()
            and cluster.config_uid is not None
            and cluster.config_uid != 0
            and cluster.config_uid != cluster.owner_uid
        ):
            config_owner = self.accounts.user_name(cluster.config_uid) or "(unknown)"
            data_owner = self.accounts.user_name(cluster.owner_uid)
            raise OwnershipMismatch(
                f"Config owner ({config_owner}:{cluster.config_uid}) and data owner "
                f"({data_owner}:{cluster.owner_uid}) do not match, and config owner is not root"
            )
