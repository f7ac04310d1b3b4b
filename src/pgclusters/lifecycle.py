"""Creation, removal and renaming of clusters."""

import glob
import os
import re
import shlex
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional

from .constants import (
    CLUSTER_PATH_SETTINGS,
    CREATECLUSTER_CONF,
    CREATECLUSTER_ONLY_KEYS,
    DATA_DIR_MODE,
    DIR_MODE,
    ENVIRONMENT_FILE,
    ENVIRONMENT_HEADER,
    FILE_MODE,
    HBA_CONF,
    IDENT_CONF,
    LEGACY_LOG_GROUP,
    LEGACY_LOG_GROUP_MAX_UID,
    PRIMARY_CONF,
    SECRET_FILE_MODE,
    SHARED_SOCKET_DIRS,
    SOCKET_DIR_MODE,
)
from .errors import ClusterMissingInfo, FilesystemError, ValidationError
from .errors_catalog import actionable_error
from .models import Cluster, CreateRequest
from .services.config_file import config_bool, parse_line, replace_v_c
from .services.identity import readable_by
from .services.transaction import Transaction
from .versions import version_at_least

LOCALE_OPTIONS = (
    ("locale", "--locale", None),
    ("lc_collate", "--lc-collate", None),
    ("lc_ctype", "--lc-ctype", None),
    ("lc_messages", "--lc-messages", None),
    ("lc_monetary", "--lc-monetary", None),
    ("lc_numeric", "--lc-numeric", None),
    ("lc_time", "--lc-time", None),
    ("encoding", "--encoding", None),
    ("locale_provider", "--locale-provider", "15"),
    ("icu_locale", "--icu-locale", "15"),
    ("icu_rules", "--icu-rules", "16"),
)


class CreateStep(Enum):
    CONFIG_DIR = "create configuration directory"
    DATA_DIR = "initialize data directory"
    MOVE_CONFIG = "install configuration files"
    START_CONF = "write start.conf and pg_ctl.conf"
    HBA = "adjust pg_hba.conf"
    SOCKET = "configure socket directory and port"
    LOG_FILE = "prepare log file"
    SSL = "configure SSL"
    ENVIRONMENT = "write environment file"
    OVERRIDES = "apply configuration defaults"


@dataclass
class CreatePlan:
    """Resolved inputs of one cluster creation, filled in as the steps run."""

    request: CreateRequest
    defaults: Dict[str, str]
    include_lines: List[str]
    config_dir: str
    data_dir: str
    wal_dir: Optional[str]
    port: int
    owner_uid: int
    owner_gid: int
    owner_name: str
    adopt: bool
    start_mode: str
    socket_dir: Optional[str] = None
    log_file: Optional[str] = None

    @property
    def version(self) -> str:
        return self.request.version

    @property
    def name(self) -> str:
        return self.request.name

    @property
    def conf_path(self) -> str:
        return os.path.join(self.config_dir, PRIMARY_CONF)


class ClusterLifecycle:
    """Creates, drops and renames clusters; every mutation is undone if a later step fails."""

    CREATE_STEPS = (
        (CreateStep.CONFIG_DIR, "_make_config_dir"),
        (CreateStep.DATA_DIR, "_init_data_dir"),
        (CreateStep.MOVE_CONFIG, "_install_config_files"),
        (CreateStep.START_CONF, "_write_start_conf"),
        (CreateStep.HBA, "_adjust_hba"),
        (CreateStep.SOCKET, "_configure_socket"),
        (CreateStep.LOG_FILE, "_prepare_log_file"),
        (CreateStep.SSL, "_configure_ssl"),
        (CreateStep.ENVIRONMENT, "_write_environment"),
        (CreateStep.OVERRIDES, "_apply_overrides"),
    )

    def __init__(
        self,
        settings,
        logger,
        console,
        registry,
        config_file_service,
        filesystem_service,
        hba_service,
        accounts,
        command_runner,
        server,
        validation_service,
    ):
        self.settings = settings
        self.logger = logger
        self.console = console
        self.registry = registry
        self.config_files = config_file_service
        self.filesystem = filesystem_service
        self.hba = hba_service
        self.accounts = accounts
        self.command_runner = command_runner
        self.server = server
        self.validation = validation_service
        self.current_step: Optional[CreateStep] = None

    # ------------------------------------------------------------------
    # create
    # ------------------------------------------------------------------

    def create(self, request: CreateRequest) -> Cluster:
        plan = self.plan_create(request)

        with Transaction(self.logger) as tx:
            for step, handler in self.CREATE_STEPS:
                self.current_step = step
                self.logger.debug("Create %s/%s: %s", plan.version, plan.name, step.value)
                getattr(self, handler)(plan, tx)
            tx.commit()
        self.current_step = None

        self.console.print(
            f"[green]Created cluster {plan.version}/{plan.name} on port {plan.port}, "
            f"data directory {plan.data_dir}.[/green]"
        )
        self.logger.info("Created cluster %s/%s", plan.version, plan.name)

        if request.start:
            self.server.start(plan.version, plan.name)
        return self.registry.describe(plan.version, plan.name)

    def _createcluster_defaults(self):
        path = os.path.join(self.settings.common_confdir, CREATECLUSTER_CONF)
        defaults = self.config_files.read(path)
        include_lines = []
        if os.path.exists(path):
            document = self.config_files.load_document(path)
            include_lines = [line.text.strip() for line in document.lines if line.kind == "include"]
        return defaults, include_lines

    def plan_create(self, request: CreateRequest) -> CreatePlan:
        """Validates ``request`` and resolves every path before anything is changed."""
        version, name = request.version, request.name
        self.validation.validate_version(version)
        self.validation.validate_name(name)
        self.validation.validate_start_mode(request.start_mode)
        self.validation.ensure_absent(version, name)

        defaults, include_lines = self._createcluster_defaults()

        data_dir = request.datadir or defaults.get("data_directory")
        data_dir = replace_v_c(data_dir, version, name) if data_dir else os.path.join(
            self.settings.data_root, version, name
        )
        data_dir = os.path.abspath(data_dir)

        wal_dir = request.waldir or defaults.get("waldir") or defaults.get("xlogdir")
        if wal_dir:
            wal_dir = os.path.abspath(replace_v_c(wal_dir, version, name))

        owner_uid, owner_gid = request.owner_uid, request.owner_gid
        adopt = False
        version_file = os.path.join(data_dir, "PG_VERSION")
        if os.path.exists(version_file):
            with open(version_file, "r", encoding="utf-8") as file_obj:
                found = file_obj.read().strip()
            if found != version:
                raise ValidationError(
                    actionable_error("version_mismatch", path=data_dir, found=found, version=version)
                )
            adopt = True
            owner_uid, owner_gid = self.filesystem.owner_of(data_dir)
            self.logger.info("Adopting existing data directory %s", data_dir)
        else:
            if self.registry.program_path("initdb", version) is None:
                raise ValidationError(f"No PostgreSQL {version} server installation found (initdb is missing)")
            if self._has_entries(data_dir):
                raise ValidationError(actionable_error("data_dir_not_empty", path=data_dir))

        if owner_uid == 0:
            raise ValidationError("The cluster owner must not be root")
        owner_name = self.accounts.user_name(owner_uid)
        if owner_name is None:
            raise ValidationError(f"User id {owner_uid} does not exist")

        if request.port is not None:
            self.validation.validate_port(request.port)
            self.validation.ensure_port_unclaimed(request.port)
            port = request.port
        else:
            port = self.registry.next_free_port()

        start_mode = request.start_mode or defaults.get("start_conf") or "auto"
        self.validation.validate_start_mode(start_mode)

        return CreatePlan(
            request=request,
            defaults=defaults,
            include_lines=include_lines,
            config_dir=self.registry.config_dir(version, name),
            data_dir=data_dir,
            wal_dir=wal_dir,
            port=port,
            owner_uid=owner_uid,
            owner_gid=owner_gid,
            owner_name=owner_name,
            adopt=adopt,
            start_mode=start_mode,
        )

    @staticmethod
    def _has_entries(path: str) -> bool:
        if not os.path.isdir(path):
            return False
        try:
            return bool(os.listdir(path))
        except OSError as exc:
            raise FilesystemError(f"Cannot read data directory {path}: {exc}", path=path) from exc

    def _make_config_dir(self, plan: CreatePlan, tx: Transaction):
        version_dir = os.path.dirname(plan.config_dir)
        if self.filesystem.make_dir(version_dir, mode=DIR_MODE):
            tx.on_rollback("remove version directory", lambda: self.filesystem.remove_empty_dir(version_dir))
        tx.do(
            "create configuration directory",
            lambda: self.filesystem.make_dir(plan.config_dir, plan.owner_uid, plan.owner_gid, DIR_MODE),
            lambda: self.filesystem.cleanup_dir(plan.config_dir),
        )

    def initdb_command(self, plan: CreatePlan) -> List[str]:
        request = plan.request
        cmd = [self.registry.program_path("initdb", plan.version), "-D", plan.data_dir]
        if version_at_least(plan.version, "9.2"):
            host_method = "scram-sha-256" if version_at_least(plan.version, "14") else "md5"
            cmd += ["--auth-local", self.hba.local_owner_method(plan.version), "--auth-host", host_method]
        if plan.wal_dir:
            cmd += ["--waldir" if version_at_least(plan.version, "10") else "--xlogdir", plan.wal_dir]
        for attribute, option, minimum in LOCALE_OPTIONS:
            value = getattr(request, attribute)
            if value and (minimum is None or version_at_least(plan.version, minimum)):
                cmd += [option, value]
        cmd += shlex.split(plan.defaults.get("initdb_options", ""))
        cmd += request.initdb_options
        return cmd

    def _init_data_dir(self, plan: CreatePlan, tx: Transaction):
        if plan.adopt:
            return

        # an existing directory was empty when planned
        created = self.filesystem.make_dir(plan.data_dir, plan.owner_uid, plan.owner_gid, DATA_DIR_MODE)
        if created:
            tx.on_rollback("remove data directory", lambda: self.filesystem.cleanup_dir(plan.data_dir))
        else:
            tx.on_rollback("empty data directory", lambda: self._empty_dir(plan.data_dir))

        if plan.wal_dir and not os.path.exists(plan.wal_dir):
            tx.on_rollback("remove WAL directory", lambda: self.filesystem.cleanup_dir(plan.wal_dir))

        self.console.print(f"[blue]Initializing data directory {plan.data_dir} ...[/blue]")
        self.command_runner.run(self.initdb_command(plan), owner=(plan.owner_uid, plan.owner_gid), cwd="/")

    def _empty_dir(self, path: str):
        for entry in os.listdir(path):
            full_path = os.path.join(path, entry)
            if os.path.isdir(full_path) and not os.path.islink(full_path):
                self.filesystem.cleanup_dir(full_path)
            else:
                self.filesystem.remove_file(full_path)

    def _install_config_files(self, plan: CreatePlan, tx: Transaction):
        for name in (PRIMARY_CONF, HBA_CONF, IDENT_CONF):
            source = os.path.join(plan.data_dir, name)
            target = os.path.join(plan.config_dir, name)
            if os.path.exists(source):
                tx.do(
                    f"move {name}",
                    lambda source=source, target=target: self.filesystem.move(source, target),
                    lambda source=source, target=target: self.filesystem.move(target, source),
                )
            elif name == PRIMARY_CONF:
                self.filesystem.atomic_write(target, "", mode=FILE_MODE, owner=(plan.owner_uid, plan.owner_gid))
            else:
                continue
            mode = FILE_MODE if name == PRIMARY_CONF else SECRET_FILE_MODE
            self.filesystem.set_permissions(target, mode)
            self.filesystem.chown(target, plan.owner_uid, plan.owner_gid)

        conf = plan.conf_path
        self.config_files.set_value(conf, "data_directory", plan.data_dir)
        self.config_files.set_value(conf, "hba_file", os.path.join(plan.config_dir, HBA_CONF))
        self.config_files.set_value(conf, "ident_file", os.path.join(plan.config_dir, IDENT_CONF))
        self.config_files.set_value(
            conf, "external_pid_file", os.path.join(self.settings.run_root, f"{plan.version}-{plan.name}.pid")
        )
        if version_at_least(plan.version, "9.5"):
            self.config_files.set_value(conf, "cluster_name", f"{plan.version}/{plan.name}")

    def _write_start_conf(self, plan: CreatePlan, tx: Transaction):
        self.registry.set_start_mode(plan.version, plan.name, plan.start_mode)
        self.registry.set_pg_ctl_options(plan.version, plan.name, "")
        for name in ("start.conf", "pg_ctl.conf"):
            self.filesystem.chown(os.path.join(plan.config_dir, name), plan.owner_uid, plan.owner_gid)

    def _adjust_hba(self, plan: CreatePlan, tx: Transaction):
        if plan.adopt:
            return
        hba_path = os.path.join(plan.config_dir, HBA_CONF)
        if not os.path.exists(hba_path):
            return
        if not version_at_least(plan.version, "9.2"):
            self.hba.rewrite_trust_rules(hba_path, self.hba.local_owner_method(plan.version), "md5")
        self.hba.insert_superuser_bypass(hba_path, plan.owner_name, plan.version)

    def _configure_socket(self, plan: CreatePlan, tx: Transaction):
        socket_dir = plan.request.socketdir
        if socket_dir:
            socket_dir = replace_v_c(socket_dir, plan.version, plan.name)
            if socket_dir not in SHARED_SOCKET_DIRS and socket_dir != self.settings.run_root:
                if self.filesystem.make_dir(socket_dir, plan.owner_uid, plan.owner_gid, SOCKET_DIR_MODE):
                    tx.on_rollback(
                        "remove socket directory", lambda: self.filesystem.remove_empty_dir(socket_dir)
                    )
        else:
            socket_dir = self.registry.infer_socketdir(plan.data_dir)
        plan.socket_dir = socket_dir

        self.config_files.set_value(plan.conf_path, self.registry.socket_dir_setting(plan.version), socket_dir)
        self.config_files.set_value(plan.conf_path, "port", plan.port)

    def _prepare_log_file(self, plan: CreatePlan, tx: Transaction):
        custom = plan.request.logfile
        log_file = os.path.abspath(custom) if custom else self.registry.default_log_file(plan.version, plan.name)
        if custom:
            link = os.path.join(plan.config_dir, "log")
            self.filesystem.symlink(log_file, link)

        self.filesystem.make_dir(os.path.dirname(log_file), mode=DIR_MODE)
        if not os.path.exists(log_file):
            self.filesystem.atomic_write(log_file, "", mode=SECRET_FILE_MODE)
            tx.on_rollback("remove log file", lambda: self.filesystem.remove_file(log_file))

        gid = plan.owner_gid
        if plan.owner_uid < LEGACY_LOG_GROUP_MAX_UID:
            legacy_gid = self.accounts.resolve_group(LEGACY_LOG_GROUP)
            if legacy_gid is not None:
                gid = legacy_gid
        self.filesystem.chown(log_file, plan.owner_uid, gid)
        self.filesystem.set_permissions(log_file, SECRET_FILE_MODE)
        plan.log_file = log_file

    def _configure_ssl(self, plan: CreatePlan, tx: Transaction):
        if config_bool(plan.defaults.get("ssl")) is False:
            return
        cert, key = self.settings.ssl_cert_file, self.settings.ssl_key_file
        if not (os.path.exists(cert) and os.path.exists(key)):
            return
        if not readable_by(key, plan.owner_uid, plan.owner_gid, self.accounts):
            self.logger.info("%s is not readable by %s, not enabling SSL", key, plan.owner_name)
            return

        conf = plan.conf_path
        modern = version_at_least(plan.version, "9.2")
        self.config_files.set_value(conf, "ssl", "on")
        if modern:
            self.config_files.set_value(conf, "ssl_cert_file", cert)
            self.config_files.set_value(conf, "ssl_key_file", key)
        else:
            self.filesystem.symlink(cert, os.path.join(plan.data_dir, "server.crt"))
            self.filesystem.symlink(key, os.path.join(plan.data_dir, "server.key"))

        for name, setting in (("root.crt", "ssl_ca_file"), ("root.crl", "ssl_crl_file")):
            path = os.path.join(self.settings.common_confdir, name)
            if not os.path.isfile(path) or os.path.getsize(path) == 0:
                continue
            if modern:
                self.config_files.set_value(conf, setting, path)
            else:
                self.filesystem.symlink(path, os.path.join(plan.data_dir, name))

    def _write_environment(self, plan: CreatePlan, tx: Transaction):
        template = os.path.join(self.settings.common_confdir, ENVIRONMENT_FILE)
        if os.path.exists(template):
            with open(template, "r", encoding="utf-8") as file_obj:
                content = replace_v_c(file_obj.read(), plan.version, plan.name)
        else:
            content = ENVIRONMENT_HEADER
        self.filesystem.atomic_write(
            os.path.join(plan.config_dir, ENVIRONMENT_FILE),
            content,
            mode=FILE_MODE,
            owner=(plan.owner_uid, plan.owner_gid),
        )

    def _apply_overrides(self, plan: CreatePlan, tx: Transaction):
        overrides = {
            key: replace_v_c(value, plan.version, plan.name)
            for key, value in plan.defaults.items()
            if key not in CREATECLUSTER_ONLY_KEYS
        }
        overrides.update(plan.request.pgoptions)
        if not overrides and not plan.include_lines:
            return

        document = self.config_files.load_document(plan.conf_path)
        for key in sorted(overrides):
            document.set(key, overrides[key])

        for line in plan.include_lines:
            parsed = re.match(r"^(include(?:_dir|_if_exists)?)\s*=?\s*'([^']+)'", line, re.IGNORECASE)
            if not parsed:
                continue
            directive = parsed.group(1).lower()
            target = replace_v_c(parsed.group(2), plan.version, plan.name)
            if directive == "include_dir" and "/" not in target:
                self.filesystem.make_dir(os.path.join(plan.config_dir, target), plan.owner_uid, plan.owner_gid)
            escaped = target.replace("'", "''")
            included = parse_line(f"{directive} = '{escaped}'")
            if not any(line.kind == "include" and line.key == directive and line.value == target for line in document.lines):
                document.lines.append(included)

        self.config_files.save_document(document)

    # ------------------------------------------------------------------
    # drop
    # ------------------------------------------------------------------

    def drop(self, version: str, name: str, stop: bool = False):
        self.validation.ensure_present(version, name)
        config_dir = self.registry.config_dir(version, name)

        try:
            cluster = self.registry.describe(version, name)
        except ClusterMissingInfo as exc:
            self.logger.warning("%s; removing the configuration directory only", exc)
            self.console.print(f"[yellow]Warning: {exc}; removing configuration directory only.[/yellow]")
            self.filesystem.cleanup_dir(config_dir)
            self.filesystem.remove_empty_dir(os.path.dirname(config_dir))
            return

        if cluster.running:
            if not stop:
                raise ValidationError(actionable_error("cluster_running", version=version, name=name))
            self.server.stop(version, name)

        self.console.print(f"[blue]Removing cluster {cluster.key} ...[/blue]")
        if cluster.data_dir and os.path.isdir(cluster.data_dir):
            self._remove_tablespaces(cluster)
            if cluster.wal_dir:
                self._remove_owned_dir(cluster, cluster.wal_dir, "WAL directory")
            self.filesystem.cleanup_dir(cluster.data_dir)
            default_parent = os.path.join(self.settings.data_root, cluster.version)
            if os.path.dirname(cluster.data_dir.rstrip("/")) == default_parent:
                self.filesystem.remove_empty_dir(default_parent)

        stats_dir = cluster.config.get("stats_temp_directory")
        if stats_dir and os.path.isdir(stats_dir):
            self._remove_owned_dir(cluster, stats_dir, "stats temp directory")

        if cluster.socket_dir and cluster.socket_dir not in SHARED_SOCKET_DIRS and cluster.socket_dir != self.settings.run_root:
            self.filesystem.remove_empty_dir(cluster.socket_dir)

        pid_file = cluster.config.get("external_pid_file")
        if pid_file and pid_file != "(none)":
            self.filesystem.remove_file(pid_file)

        self.filesystem.remove_file(cluster.log_file)
        for rotated in sorted(glob.glob(glob.escape(cluster.log_file) + ".*")):
            self.filesystem.remove_file(rotated)

        self.filesystem.cleanup_dir(config_dir)
        self.filesystem.remove_empty_dir(os.path.dirname(config_dir))
        self.console.print(f"[green]Dropped cluster {cluster.key}.[/green]")
        self.logger.info("Dropped cluster %s", cluster.key)

    def _owned_by_cluster(self, cluster: Cluster, path: str, label: str) -> bool:
        owner = self.filesystem.owner_of(path)
        if owner is not None and owner[0] != cluster.owner_uid:
            message = (
                f"Warning: not removing {label} {path}: it is owned by user id {owner[0]}, "
                f"the cluster by {cluster.owner_uid}"
            )
            self.console.print(f"[yellow]{message}[/yellow]")
            self.logger.warning(message)
            return False
        return True

    def _remove_owned_dir(self, cluster: Cluster, path: str, label: str):
        if self._owned_by_cluster(cluster, path, label):
            self.filesystem.cleanup_dir(path)

    def _remove_tablespaces(self, cluster: Cluster):
        tablespaces = os.path.join(cluster.data_dir, "pg_tblspc")
        try:
            links = sorted(os.listdir(tablespaces))
        except OSError:
            return

        for link in links:
            link_path = os.path.join(tablespaces, link)
            if not os.path.islink(link_path):
                continue
            location = os.path.realpath(link_path)
            for version_dir in sorted(glob.glob(os.path.join(glob.escape(location), f"PG_{cluster.version}_*"))):
                self._remove_owned_dir(cluster, version_dir, "tablespace directory")
            self.filesystem.remove_empty_dir(location)

    # ------------------------------------------------------------------
    # rename
    # ------------------------------------------------------------------

    @staticmethod
    def substitute_name(value: str, old: str, new: str) -> str:
        return re.sub(rf"\b{re.escape(old)}\b", lambda _match: new, value)

    def rename(self, version: str, old_name: str, new_name: str) -> Cluster:
        self.validation.validate_name(new_name)
        if old_name == new_name:
            raise ValidationError("Old and new cluster name must be different")
        self.validation.ensure_present(version, old_name)
        self.validation.ensure_absent(version, new_name)

        cluster = self.registry.describe(version, old_name)
        was_running = bool(cluster.running)
        if was_running:
            self.server.stop(version, old_name)

        old_confdir = cluster.config_dir
        new_confdir = self.registry.config_dir(version, new_name)
        conf_path = os.path.join(new_confdir, PRIMARY_CONF)

        running_name = old_name
        try:
            with Transaction(self.logger) as tx:
                tx.do(
                    "rename configuration directory",
                    lambda: self.filesystem.rename(old_confdir, new_confdir),
                    lambda: self.filesystem.rename(new_confdir, old_confdir),
                )
                document = self.config_files.load_document(conf_path)
                original_text = document.render()
                tx.on_rollback(
                    "restore postgresql.conf", lambda: self.filesystem.atomic_write(conf_path, original_text)
                )

                data_dir = cluster.data_dir
                if data_dir and os.path.isdir(data_dir):
                    new_data_dir = self.substitute_name(data_dir, old_name, new_name)
                    if new_data_dir != data_dir:
                        tx.do(
                            "rename data directory",
                            lambda: self.filesystem.rename(data_dir, new_data_dir),
                            lambda: self.filesystem.rename(new_data_dir, data_dir),
                        )
                        if document.find_active("data_directory") is not None:
                            document.set("data_directory", new_data_dir)

                for key in CLUSTER_PATH_SETTINGS:
                    index = document.find(key)
                    if index is None:
                        continue
                    old_value = document.lines[index].value
                    new_value = self.substitute_name(old_value, old_name, new_name)
                    if new_value == old_value:
                        continue
                    document.set(key, new_value)
                    if key == "stats_temp_directory" and os.path.isdir(old_value):
                        tx.do(
                            "rename stats temp directory",
                            lambda old=old_value, new=new_value: self.filesystem.rename(old, new),
                            lambda old=old_value, new=new_value: self.filesystem.rename(new, old),
                        )
                self.config_files.save_document(document)

                if not cluster.custom_log:
                    self._rename_logs(tx, cluster.log_file, self.registry.default_log_file(version, new_name))
                tx.commit()

            self.console.print(f"[green]Renamed cluster {version}/{old_name} to {version}/{new_name}.[/green]")
            self.logger.info("Renamed cluster %s/%s to %s/%s", version, old_name, version, new_name)
            running_name = new_name
        finally:
            if was_running:
                self.server.start(version, running_name)
        return self.registry.describe(version, new_name)

    def _rename_logs(self, tx: Transaction, old_log: str, new_log: str):
        candidates = [old_log] + sorted(glob.glob(glob.escape(old_log) + ".*"))
        for path in candidates:
            if not os.path.exists(path):
                continue
            target = new_log + path[len(old_log):]
            tx.do(
                f"rename log file {path}",
                lambda path=path, target=target: self.filesystem.rename(path, target),
                lambda path=path, target=target: self.filesystem.rename(target, path),
            )

