import os
import subprocess

import pytest

from pgclusters.core import ClusterManager
from pgclusters.errors import ExternalToolFailure
from pgclusters.models import Settings
from pgclusters.services.ports import PortAllocator

OWNER_UID = os.getuid() or 1000
OWNER_GID = os.getgid() or 1000

INITDB_POSTGRESQL_CONF = """# -----------------------------
# PostgreSQL configuration file
# -----------------------------
#data_directory = 'ConfigDir'\t\t# use data in another directory
#hba_file = 'ConfigDir/pg_hba.conf'\t# host-based authentication file
#ident_file = 'ConfigDir/pg_ident.conf'\t# ident configuration file
#external_pid_file = ''\t\t\t# write an extra PID file
listen_addresses = 'localhost'
#port = 5432\t\t\t\t# (change requires restart)
max_connections = 100
#unix_socket_directories = '/tmp'
#cluster_name = ''
shared_buffers = 128MB
"""

INITDB_PG_HBA = """# PostgreSQL Client Authentication Configuration File
# ===================================================

# TYPE  DATABASE        USER            ADDRESS                 METHOD

local   all             all                                     peer
host    all             all             127.0.0.1/32            scram-sha-256
"""


class DummyLogger:
    def __init__(self):
        self.warnings = []

    def debug(self, *_args, **_kwargs):
        return None

    def info(self, *_args, **_kwargs):
        return None

    def warning(self, message, *args, **_kwargs):
        self.warnings.append(message % args if args else message)

    def error(self, *_args, **_kwargs):
        return None


class DummyConsole:
    def __init__(self):
        self.messages = []

    def print(self, *args, **_kwargs):
        self.messages.append(" ".join(str(arg) for arg in args))


class FakeAccounts:
    def user_name(self, uid):
        return "postgres" if uid == OWNER_UID else None

    def group_name(self, gid):
        return "postgres" if gid == OWNER_GID else None

    def resolve_user(self, user):
        if user in ("postgres", str(OWNER_UID)):
            return OWNER_UID, OWNER_GID
        return None

    def resolve_group(self, group):
        return OWNER_GID if group == "postgres" else None

    def group_members_gids(self, _uid, gid):
        return [gid]

    def is_privileged(self):
        return False


class FakeRunner:
    """Records commands; ``initdb`` lays out a minimal data directory."""

    def __init__(self):
        self.calls = []
        self.pipelines = []

    def run(self, cmd, check=True, capture_output=False, timeout=None, owner=None, env=None,
            input_text=None, cwd=None):
        self.calls.append(list(cmd))
        if os.path.basename(cmd[0]) == "initdb":
            self._initdb(cmd)
        return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")

    def pipeline(self, producer, consumer, owner=None, env=None):
        self.pipelines.append((list(producer), list(consumer)))

    def tools(self):
        return [os.path.basename(call[0]) for call in self.calls]

    @staticmethod
    def _initdb(cmd):
        data_dir = cmd[cmd.index("-D") + 1]
        version = cmd[0].split(os.sep)[-3]
        os.makedirs(data_dir, exist_ok=True)
        files = {
            "PG_VERSION": f"{version}\n",
            "postgresql.conf": INITDB_POSTGRESQL_CONF,
            "pg_hba.conf": INITDB_PG_HBA,
            "pg_ident.conf": "# MAPNAME       SYSTEM-USERNAME         PG-USERNAME\n",
        }
        for name, content in files.items():
            with open(os.path.join(data_dir, name), "w", encoding="utf-8") as file_obj:
                file_obj.write(content)
        os.makedirs(os.path.join(data_dir, "pg_tblspc"), exist_ok=True)


class FakeServer:
    """Emulates a running server through its pid file and a fake /proc entry."""

    def __init__(self, settings):
        self.settings = settings
        self.registry = None
        self.next_pid = 4000
        self.started = []
        self.stopped = []

    def _pidfile(self, version, name):
        return self.registry.describe(version, name).config["external_pid_file"]

    def start(self, version, name, force=False, options=""):
        cluster = self.registry.describe(version, name)
        if cluster.running:
            return
        if cluster.start_mode == "disabled" and not force:
            raise AssertionError("disabled cluster started")
        self.next_pid += 1
        proc_dir = os.path.join(self.settings.proc_root, str(self.next_pid))
        os.makedirs(proc_dir, exist_ok=True)
        with open(os.path.join(proc_dir, "cmdline"), "wb") as file_obj:
            file_obj.write(b"/usr/lib/postgresql/bin/postgres\x00-D\x00" + cluster.data_dir.encode())
        with open(self._pidfile(version, name), "w", encoding="utf-8") as file_obj:
            file_obj.write(f"{self.next_pid}\n{cluster.data_dir}\n")
        self.started.append((version, name, options))

    def stop(self, version, name, mode="fast"):
        pidfile = self._pidfile(version, name)
        if os.path.exists(pidfile):
            os.remove(pidfile)
            self.stopped.append((version, name))

    def is_running(self, version, name):
        return bool(self.registry.describe(version, name).running)


class FakeSocket:
    def __init__(self, module, family):
        self.module = module
        self.family = family

    def setsockopt(self, *_args):
        return None

    def bind(self, address):
        if (self.family, address[1]) in self.module.busy or address[1] in self.module.busy:
            raise OSError("Address already in use")

    def listen(self, _backlog):
        return None

    def close(self):
        return None


class FakeSocketModule:
    AF_INET = 2
    AF_INET6 = 10
    SOCK_STREAM = 1
    SOL_SOCKET = 1
    SO_REUSEADDR = 2

    def __init__(self, busy=(), has_ipv6=True, unavailable=()):
        self.busy = set(busy)
        self.has_ipv6 = has_ipv6
        self.unavailable = set(unavailable)

    def socket(self, family, _kind):
        if family in self.unavailable:
            raise OSError("Address family not supported by protocol")
        return FakeSocket(self, family)


class FakeDatabase:
    """Answers the queries an upgrade makes and records the transfers."""

    def __init__(self):
        self.transferred = []
        self.globals_copied = False
        self.allow_connections = []
        self.fail_on = None

    def db_encoding(self, _cluster):
        return "UTF8"

    def db_locales(self, _cluster):
        return {"lc_ctype": "C.UTF-8", "lc_collate": "C.UTF-8"}

    def controldata(self, _cluster):
        return {"Data page checksum version": "1"}

    def databases(self, _cluster):
        return [("archive", False), ("postgres", True), ("template1", True)]

    def set_allow_connections(self, cluster, database, allowed):
        self.allow_connections.append((cluster.version, database, allowed))

    def transfer_globals(self, _source, _target, _owner_name):
        self.globals_copied = True

    def rewrite_library_paths(self, _cluster, _database):
        return None

    def transfer_database(self, source, target, database):
        if database == self.fail_on:
            raise ExternalToolFailure(f"pg_restore failed for {database}", tool="pg_restore", returncode=1)
        self.transferred.append((source.port, target.port, database))


def install_version(settings, version, programs=("postgres", "initdb", "psql", "pg_ctl", "pg_upgrade")):
    bin_dir = os.path.join(settings.bin_root, version, "bin")
    os.makedirs(bin_dir, exist_ok=True)
    for program in programs:
        path = os.path.join(bin_dir, program)
        with open(path, "w", encoding="utf-8") as file_obj:
            file_obj.write("#!/bin/sh\nexit 0\n")
        os.chmod(path, 0o755)


@pytest.fixture
def host(tmp_path):
    settings = Settings(
        conf_root=str(tmp_path / "etc" / "postgresql"),
        common_confdir=str(tmp_path / "etc" / "postgresql-common"),
        bin_root=str(tmp_path / "usr" / "lib" / "postgresql"),
        share_root=str(tmp_path / "usr" / "share" / "postgresql"),
        data_root=str(tmp_path / "var" / "lib" / "postgresql"),
        log_root=str(tmp_path / "var" / "log" / "postgresql"),
        run_root=str(tmp_path / "run" / "postgresql"),
        proc_root=str(tmp_path / "proc"),
        ssl_cert_file=str(tmp_path / "ssl" / "ssl-cert-snakeoil.pem"),
        ssl_key_file=str(tmp_path / "ssl" / "ssl-cert-snakeoil.key"),
    )
    for directory in (settings.conf_root, settings.common_confdir, settings.run_root, settings.proc_root):
        os.makedirs(directory, exist_ok=True)
    install_version(settings, "15")
    install_version(settings, "16")
    return settings


@pytest.fixture
def owner():
    return OWNER_UID, OWNER_GID


@pytest.fixture
def database():
    return FakeDatabase()


@pytest.fixture
def manager(host, database):
    server = FakeServer(host)
    cluster_manager = ClusterManager(
        settings=host,
        command_runner=FakeRunner(),
        accounts=FakeAccounts(),
        port_allocator=PortAllocator(DummyLogger(), socket_module=FakeSocketModule()),
        server=server,
        database=database,
        output_console=DummyConsole(),
        output_logger=DummyLogger(),
    )
    server.registry = cluster_manager.registry
    return cluster_manager
