"""Major version upgrades of clusters."""

import os
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple

from .constants import AUTO_CONF, FILE_MODE, HBA_CONF, IDENT_CONF, PRIMARY_CONF, SECRET_FILE_MODE
from .errors import ClusterError, ValidationError
from .errors_catalog import actionable_error
from .models import Cluster, CreateRequest, UpgradeRequest, UpgradeSession
from .services.journal import UpgradeJournal
from .services.transaction import Transaction
from .versions import version_at_least

COPIED_CONFIG_FILES = (PRIMARY_CONF, HBA_CONF, IDENT_CONF, "start.conf", "pg_ctl.conf", "environment")

# settings that must keep the value Create wrote for the new cluster
TARGET_OWNED_SETTINGS = (
    "data_directory",
    "hba_file",
    "ident_file",
    "external_pid_file",
    "cluster_name",
    "port",
)

TLS_SETTINGS = (
    ("ssl_cert_file", "server.crt"),
    ("ssl_key_file", "server.key"),
    ("ssl_ca_file", "root.crt"),
    ("ssl_crl_file", "root.crl"),
)


class UpgradeState(Enum):
    VALIDATE = "validate"
    STOP_SOURCE = "stop-source"
    CREATE_TARGET = "create-target"
    MIGRATE_CONFIG = "migrate-config"
    START_TARGET = "start-target"
    INIT_HOOKS = "init-hooks"
    DUMP_RESTORE = "dump-restore"
    BINARY_UPGRADE = "run-binary-upgrade"
    SWAP_PORTS = "swap-ports"
    ENABLE_AND_START = "enable-and-start"
    FINISH_HOOKS = "finish-hooks"
    SUCCESS = "success"
    ABORT_ROLLBACK = "abort-rollback"


DUMP_STATES = (
    (UpgradeState.STOP_SOURCE, "_prepare_source"),
    (UpgradeState.CREATE_TARGET, "_create_target"),
    (UpgradeState.MIGRATE_CONFIG, "_migrate_config"),
    (UpgradeState.START_TARGET, "_start_target"),
    (UpgradeState.INIT_HOOKS, "_run_init_hooks"),
    (UpgradeState.DUMP_RESTORE, "_dump_restore"),
    (UpgradeState.SWAP_PORTS, "_swap_ports"),
    (UpgradeState.ENABLE_AND_START, "_enable_and_start"),
    (UpgradeState.FINISH_HOOKS, "_run_finish_hooks"),
)

BINARY_STATES = (
    (UpgradeState.STOP_SOURCE, "_prepare_source"),
    (UpgradeState.CREATE_TARGET, "_create_target"),
    (UpgradeState.MIGRATE_CONFIG, "_migrate_config"),
    (UpgradeState.INIT_HOOKS, "_run_init_hooks"),
    (UpgradeState.BINARY_UPGRADE, "_binary_upgrade"),
    (UpgradeState.SWAP_PORTS, "_swap_ports"),
    (UpgradeState.ENABLE_AND_START, "_enable_and_start"),
    (UpgradeState.FINISH_HOOKS, "_run_finish_hooks"),
)


class UpgradeOrchestrator:
    """Moves a cluster to a newer major version by dump/restore or pg_upgrade.

    Each state is recorded in ``session.json`` inside the upgrade log
    directory.  Every state registers the compensating actions for what it
    changed, so a failure drops the new cluster, swaps ports back and
    restarts the old cluster if it was running before.
    """

    def __init__(
        self,
        settings,
        logger,
        console,
        registry,
        lifecycle,
        config_file_service,
        filesystem_service,
        database_service,
        server,
        hook_service,
        migration_service,
        hba_service,
        accounts,
        command_runner,
        validation_service,
    ):
        self.settings = settings
        self.logger = logger
        self.console = console
        self.registry = registry
        self.lifecycle = lifecycle
        self.config_files = config_file_service
        self.filesystem = filesystem_service
        self.database = database_service
        self.server = server
        self.hooks = hook_service
        self.migration = migration_service
        self.hba = hba_service
        self.accounts = accounts
        self.command_runner = command_runner
        self.validation = validation_service
        self.state: Optional[UpgradeState] = None
        self.request: Optional[UpgradeRequest] = None
        self.journal: Optional[UpgradeJournal] = None

    def upgrade(self, request: UpgradeRequest) -> Cluster:
        self.request = request
        self.state = UpgradeState.VALIDATE
        session = self.validate(request)

        self.journal = UpgradeJournal(
            session, os.path.join(session.log_dir, "session.json"), self.filesystem, self.logger
        )
        self.journal.enter(UpgradeState.VALIDATE)
        self.journal.leave(UpgradeState.VALIDATE, details={"new_name": session.new_name})
        states = DUMP_STATES if session.method == "dump" else BINARY_STATES

        tx = Transaction(self.logger, enabled=request.rollback)
        try:
            with tx:
                if session.source_was_running:
                    tx.on_rollback("restart old cluster", lambda: self._restart_source(session))
                for state, handler in states:
                    self._run_state(state, getattr(self, handler), session, tx)
                tx.commit()
        except ClusterError as exc:
            self.state = UpgradeState.ABORT_ROLLBACK
            self.journal.abort(UpgradeState.ABORT_ROLLBACK, str(exc), tx.rolled_back, tx.failed_undos)
            raise ClusterError(
                f"{exc}\n"
                + actionable_error(
                    "upgrade_failed",
                    version=session.source.version,
                    name=session.source.name,
                    log_dir=session.log_dir,
                )
            ) from exc

        self.state = UpgradeState.SUCCESS
        self.journal.succeed(UpgradeState.SUCCESS)
        self.console.print(
            f"[green]Upgraded cluster {session.source.key} to {session.new_version}/{session.new_name}.[/green]"
        )
        self.logger.info("Upgrade of %s finished", session.source.key)
        return self.registry.describe(session.new_version, session.new_name)

    def _run_state(self, state: UpgradeState, callback, session: UpgradeSession, tx: Transaction):
        self.state = state
        self.journal.enter(state)
        try:
            details = callback(session, tx)
        except Exception as exc:
            self.journal.fail(state, str(exc))
            raise
        self.journal.leave(state, details=details)

    # ------------------------------------------------------------------
    # validate
    # ------------------------------------------------------------------

    def validate(self, request: UpgradeRequest) -> UpgradeSession:
        self.validation.validate_method(request.method)
        self.validation.ensure_present(request.old_version, request.name)

        new_version = request.new_version or self.registry.newest_version()
        if new_version is None:
            raise ValidationError("No PostgreSQL server installation found to upgrade to")
        self.validation.validate_version(new_version)
        self.validation.ensure_newer(request.old_version, new_version)

        new_name = request.new_name or request.name
        self.validation.validate_name(new_name)
        self.validation.ensure_absent(new_version, new_name)

        if self.registry.program_path("initdb", new_version) is None:
            raise ValidationError(f"No PostgreSQL {new_version} server installation found (initdb is missing)")
        if request.method != "dump" and self.registry.program_path("pg_upgrade", new_version) is None:
            raise ValidationError(f"pg_upgrade for version {new_version} is not installed")

        source = self.registry.describe(request.old_version, request.name)
        self.registry.validate_ownership(source)
        if source.supervisor:
            raise ValidationError(
                f"Cluster {source.key} is managed by {source.supervisor}; stop it there before upgrading"
            )

        temp_port = self.registry.next_free_port()
        timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        log_dir = os.path.join(
            self.settings.log_root,
            f"pg_upgradecluster-{source.version}-{new_version}-{source.name}.{timestamp}",
        )
        self.filesystem.make_dir(log_dir, source.owner_uid, source.owner_gid, 0o750)

        return UpgradeSession(
            source=source,
            new_version=new_version,
            new_name=new_name,
            method=request.method,
            temp_port=temp_port,
            log_dir=log_dir,
            source_was_running=bool(source.running),
        )

    # ------------------------------------------------------------------
    # states
    # ------------------------------------------------------------------

    def _owner(self, session: UpgradeSession) -> Tuple[int, int]:
        return session.source.owner_uid, session.source.owner_gid

    def _owner_name(self, session: UpgradeSession) -> str:
        return self.accounts.user_name(session.source.owner_uid)

    def _restricted_options(self, session: UpgradeSession) -> str:
        hba_path = os.path.join(session.log_dir, HBA_CONF)
        method = self.hba.local_owner_method(session.source.version)
        self.filesystem.atomic_write(
            hba_path,
            f"local all {self._owner_name(session)} {method}\n",
            mode=SECRET_FILE_MODE,
            owner=self._owner(session),
        )
        return f"-c hba_file={hba_path} -c listen_addresses=''"

    def _stop_if_running(self, version: str, name: str):
        if self.server.is_running(version, name):
            self.server.stop(version, name)

    def _restart_source(self, session: UpgradeSession):
        source = session.source
        self._stop_if_running(source.version, source.name)
        self.server.start(source.version, source.name, force=True)

    def _prepare_source(self, session: UpgradeSession, tx: Transaction) -> Dict:
        source = session.source
        if session.source_was_running:
            self.console.print(f"[blue]Stopping old cluster {source.key} ...[/blue]")
            self.server.stop(source.version, source.name)

        self.console.print(f"[blue]Restarting old cluster {source.key} with restricted connections ...[/blue]")
        tx.do(
            "start old cluster with restricted access",
            lambda: self.server.start(source.version, source.name, force=True, options=self._restricted_options(session)),
            lambda: self._stop_if_running(source.version, source.name),
        )
        source = self.registry.describe(source.version, source.name)

        session.encoding = self.database.db_encoding(source)
        session.locales = self.database.db_locales(source)
        controldata = self.database.controldata(source)
        session.data_checksums = controldata.get("Data page checksum version", "0") not in ("", "0")

        if session.method != "dump":
            self.server.stop(source.version, source.name)
        return {"encoding": session.encoding, "data_checksums": session.data_checksums}

    def _create_target(self, session: UpgradeSession, tx: Transaction) -> Dict:
        request = self.request
        source = session.source

        # an explicit --locale replaces everything inherited from the old cluster
        inherited = {} if request.locale else session.locales
        create = CreateRequest(
            version=session.new_version,
            name=session.new_name,
            owner_uid=source.owner_uid,
            owner_gid=source.owner_gid,
            datadir=request.datadir,
            port=session.temp_port,
            locale=request.locale,
            lc_messages=request.lc_messages,
            lc_monetary=request.lc_monetary,
            lc_numeric=request.lc_numeric,
            lc_time=request.lc_time,
            lc_collate=request.lc_collate or inherited.get("lc_collate"),
            lc_ctype=request.lc_ctype or inherited.get("lc_ctype"),
            encoding=request.encoding or session.encoding,
            locale_provider=inherited.get("locale_provider"),
            icu_locale=inherited.get("icu_locale"),
            icu_rules=inherited.get("icu_rules"),
            start_mode="manual",
        )
        if session.data_checksums:
            create.initdb_options.append("--data-checksums")
        key_command = source.config.get("cluster_key_command")
        if key_command:
            create.initdb_options += ["--cluster-key-command", key_command]
            create.pgoptions["cluster_key_command"] = key_command

        self.console.print(f"[blue]Creating new cluster {session.new_version}/{session.new_name} ...[/blue]")
        session.target = tx.do(
            "create new cluster",
            lambda: self.lifecycle.create(create),
            lambda: self.lifecycle.drop(session.new_version, session.new_name, stop=True),
        )
        return {"port": session.temp_port, "data_dir": session.target.data_dir}

    def _migrate_config(self, session: UpgradeSession, tx: Transaction) -> Dict:
        source, target = session.source, session.target
        owner = self._owner(session)
        target_conf = os.path.join(target.config_dir, PRIMARY_CONF)

        document = self.config_files.load_document(target_conf)
        socket_setting = self.registry.socket_dir_setting(target.version)
        preserved = {}
        for key in TARGET_OWNED_SETTINGS + (socket_setting,):
            index = document.find(key)
            if index is not None:
                preserved[key] = document.lines[index].value

        for name in COPIED_CONFIG_FILES:
            source_file = os.path.join(source.config_dir, name)
            if not os.path.exists(source_file):
                continue
            mode = SECRET_FILE_MODE if name in (HBA_CONF, IDENT_CONF) else FILE_MODE
            self.filesystem.install_file(source_file, os.path.join(target.config_dir, name), owner[0], owner[1], mode)
        # the new cluster stays manual until it is started at the end
        self.registry.set_start_mode(target.version, target.name, "manual")

        targets = [target_conf]
        source_auto = os.path.join(source.data_dir, AUTO_CONF)
        if os.path.exists(source_auto) and version_at_least(target.version, "9.4"):
            target_auto = os.path.join(target.data_dir, AUTO_CONF)
            self.filesystem.install_file(source_auto, target_auto, owner[0], owner[1], 0o600)
            targets.append(target_auto)

        changed: List[str] = []
        for path in targets:
            changed += self.migration.migrate(path, source.version, target.version)

        document = self.config_files.load_document(target_conf)
        for key, value in preserved.items():
            document.set(key, value)
        stats_index = document.find("stats_temp_directory")
        if stats_index is not None:
            value = document.lines[stats_index].value
            document.set(
                "stats_temp_directory",
                value.replace(f"{source.version}-{source.name}", f"{target.version}-{target.name}"),
            )
        self.config_files.save_document(document)

        self._migrate_tls(session)
        return {"changed_settings": changed}

    def _migrate_tls(self, session: UpgradeSession):
        source, target = session.source, session.target
        owner = self._owner(session)
        target_conf = os.path.join(target.config_dir, PRIMARY_CONF)
        modern = version_at_least(target.version, "9.2")

        for setting, legacy_name in TLS_SETTINGS:
            value = source.config.get(setting)
            if not value:
                legacy_path = os.path.join(source.data_dir, legacy_name)
                if not (modern and os.path.lexists(legacy_path)):
                    continue
                value = os.path.realpath(legacy_path)
            path = value if os.path.isabs(value) else os.path.join(source.data_dir, value)
            if not os.path.exists(path):
                continue

            local = any(
                os.path.realpath(path).startswith(os.path.realpath(directory) + os.sep)
                for directory in (source.config_dir, source.data_dir)
            )
            if local:
                destination = os.path.join(target.config_dir, os.path.basename(path))
                mode = 0o600 if setting == "ssl_key_file" else FILE_MODE
                self.filesystem.install_file(path, destination, owner[0], owner[1], mode)
                path = destination
            if modern:
                self.config_files.set_value(target_conf, setting, path)
            else:
                self.filesystem.symlink(path, os.path.join(target.data_dir, legacy_name))

    def _start_target(self, session: UpgradeSession, tx: Transaction) -> Dict:
        self.server.start(session.new_version, session.new_name, force=True)
        session.target = self.registry.describe(session.new_version, session.new_name)
        return {"port": session.target.port}

    def _run_init_hooks(self, session: UpgradeSession, tx: Transaction) -> Dict:
        self.hooks.run("init", session.source.version, session.new_name, session.new_version, self._owner(session))
        return {}

    def _run_finish_hooks(self, session: UpgradeSession, tx: Transaction) -> Dict:
        self.hooks.run("finish", session.source.version, session.new_name, session.new_version, self._owner(session))
        return {}

    def _dump_restore(self, session: UpgradeSession, tx: Transaction) -> Dict:
        source = self.registry.describe(session.source.version, session.source.name)
        target = session.target

        self.console.print("[blue]Copying roles and other global objects ...[/blue]")
        self.database.transfer_globals(source, target, self._owner_name(session))

        copied = []
        for database, allows_connections in self.database.databases(source):
            if not allows_connections:
                self.database.set_allow_connections(source, database, True)
            try:
                self.database.rewrite_library_paths(source, database)
                self.database.transfer_database(source, target, database)
                if not allows_connections:
                    self.database.set_allow_connections(target, database, False)
            finally:
                if not allows_connections:
                    self.database.set_allow_connections(source, database, False)
            copied.append(database)

        self.server.stop(source.version, source.name)
        return {"databases": copied}

    def binary_upgrade_command(self, session: UpgradeSession) -> List[str]:
        source, target = session.source, session.target
        bin_root = self.settings.bin_root
        cmd = [
            self.registry.program_path("pg_upgrade", target.version),
            "-b", os.path.join(bin_root, source.version, "bin"),
            "-B", os.path.join(bin_root, target.version, "bin"),
            "-p", str(source.port),
            "-P", str(session.temp_port),
            "-d", source.data_dir,
            "-D", target.data_dir,
            "-o", f"-c config_file={os.path.join(source.config_dir, PRIMARY_CONF)}",
            "-O", f"-c config_file={os.path.join(target.config_dir, PRIMARY_CONF)}",
            "--username", self._owner_name(session),
            "--socketdir", session.log_dir,
        ]
        if session.method == "link":
            cmd.append("--link")
        elif session.method == "clone":
            cmd.append("--clone")
        if self.request.jobs:
            cmd += ["--jobs", str(self.request.jobs)]
        return cmd

    def _binary_upgrade(self, session: UpgradeSession, tx: Transaction) -> Dict:
        self._stop_if_running(session.new_version, session.new_name)
        self.console.print(f"[blue]Running pg_upgrade ({session.method}), logs in {session.log_dir} ...[/blue]")
        self.command_runner.run(
            self.binary_upgrade_command(session),
            owner=self._owner(session),
            cwd=session.log_dir,
            env={"LC_ALL": "C"},
        )
        return {"log_dir": session.log_dir}

    def _swap_ports(self, session: UpgradeSession, tx: Transaction) -> Dict:
        if self.request.keep_port:
            return {"swapped": False}

        source = session.source
        old_port, new_port = source.port, session.temp_port

        def swap():
            self.registry.set_port(source.version, source.name, new_port)
            self.registry.set_port(session.new_version, session.new_name, old_port)
            session.ports_swapped = True

        def unswap():
            self.registry.set_port(source.version, source.name, old_port)
            self.registry.set_port(session.new_version, session.new_name, new_port)
            session.ports_swapped = False

        tx.do("swap ports", swap, unswap)
        return {"swapped": True, "old_cluster_port": new_port, "new_cluster_port": old_port}

    def _enable_and_start(self, session: UpgradeSession, tx: Transaction) -> Dict:
        source = session.source
        start_conf = os.path.join(source.config_dir, "start.conf")
        saved = None
        if os.path.exists(start_conf):
            with open(start_conf, "r", encoding="utf-8") as file_obj:
                saved = file_obj.read()

        def restore():
            if saved is None:
                self.filesystem.remove_file(start_conf)
            else:
                self.filesystem.atomic_write(start_conf, saved)

        tx.do(
            "disable old cluster",
            lambda: self.registry.set_start_mode(
                source.version,
                source.name,
                "manual",
                comment=f"upgraded to {session.new_version}/{session.new_name}",
            ),
            restore,
        )
        self.registry.set_start_mode(session.new_version, session.new_name, source.start_mode)

        self._stop_if_running(session.new_version, session.new_name)
        start = self.request.start if self.request.start is not None else session.source_was_running
        if start:
            self.server.start(session.new_version, session.new_name, force=True)
        return {"started": bool(start)}
