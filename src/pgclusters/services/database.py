"""Queries and data transfer against running clusters."""

import re
from typing import Dict, List, Optional, Tuple

from pgclusters.errors import ExternalToolFailure, MalformedConfiguration
from pgclusters.versions import version_at_least

READ_WRITE_PGOPTIONS = "-c default_transaction_read_only=off"


class DatabaseService:
    """Runs psql, pg_dump and friends as the cluster owner."""

    def __init__(self, settings, logger, console, registry, command_runner):
        self.settings = settings
        self.logger = logger
        self.console = console
        self.registry = registry
        self.command_runner = command_runner

    def _program(self, program: str, version: str) -> str:
        path = self.registry.program_path(program, version)
        if path is None:
            raise ExternalToolFailure(
                f"{program} for version {version} not found. Is the matching PostgreSQL version installed?",
                tool=program,
            )
        return path

    @staticmethod
    def _owner(cluster) -> Tuple[int, int]:
        return cluster.owner_uid, cluster.owner_gid

    @staticmethod
    def _connection(cluster) -> List[str]:
        return ["-h", cluster.socket_dir, "-p", str(cluster.port)]

    def query(self, cluster, sql: str, database: str = "template1", client_version: Optional[str] = None) -> str:
        psql = self._program("psql", client_version or cluster.version)
        result = self.command_runner.run(
            [psql, *self._connection(cluster), "-AXtc", sql, database],
            capture_output=True,
            owner=self._owner(cluster),
            env={"LC_ALL": "C", "PGOPTIONS": READ_WRITE_PGOPTIONS},
            cwd="/",
        )
        return (result.stdout or "").strip()

    def db_encoding(self, cluster, database: str = "template1") -> Optional[str]:
        out = self.query(cluster, "select getdatabaseencoding()", database)
        match = re.match(r"^([\w.-]+)$", out)
        return match.group(1) if match else None

    def db_locales(self, cluster, database: str = "template1") -> Dict[str, Optional[str]]:
        out = self.query(
            cluster,
            "SELECT datctype, datcollate FROM pg_database where datname = current_database()",
            database,
        )
        if not out:
            raise ExternalToolFailure("could not determine datctype and datcollate", tool="psql")
        ctype, _, collate = out.partition("|")
        locales: Dict[str, Optional[str]] = {"lc_ctype": ctype, "lc_collate": collate}

        if version_at_least(cluster.version, "15"):
            sql = (
                "SELECT CASE datlocprovider::text WHEN 'c' THEN 'libc' WHEN 'i' THEN 'icu' END, daticulocale"
                + (", daticurules" if version_at_least(cluster.version, "16") else "")
                + " FROM pg_database where datname = current_database()"
            )
            fields = self.query(cluster, sql, database).split("|")
            fields += [""] * (3 - len(fields))
            locales["locale_provider"] = fields[0] or None
            locales["icu_locale"] = fields[1] or None
            locales["icu_rules"] = fields[2] or None
        return locales

    def databases(self, cluster) -> List[Tuple[str, bool]]:
        """Returns ``(name, allows connections)`` for every database but template0."""
        out = self.query(
            cluster,
            "SELECT datname, datallowconn FROM pg_database WHERE datname <> 'template0' ORDER BY datname",
        )
        rows = []
        for line in out.splitlines():
            name, _, allowed = line.rpartition("|")
            if name:
                rows.append((name, allowed == "t"))
        return rows

    def set_allow_connections(self, cluster, database: str, allowed: bool):
        flag = "true" if allowed else "false"
        escaped = database.replace('"', '""')
        self.query(cluster, f'ALTER DATABASE "{escaped}" WITH ALLOW_CONNECTIONS {flag}')

    def controldata(self, cluster) -> Dict[str, str]:
        pg_controldata = self._program("pg_controldata", cluster.version)
        result = self.command_runner.run(
            [pg_controldata, cluster.data_dir],
            capture_output=True,
            owner=self._owner(cluster),
            env={"LC_ALL": "C", "LANG": "C", "LANGUAGE": ""},
            cwd="/",
        )
        return self.parse_controldata(result.stdout or "")

    @staticmethod
    def parse_controldata(text: str) -> Dict[str, str]:
        data: Dict[str, str] = {}
        for line in text.splitlines():
            if not line.strip():
                continue
            match = re.match(r"^(.+?):\s*(.*)$", line)
            if not match:
                raise MalformedConfiguration(f"Invalid pg_controldata output: {line}")
            data[match.group(1)] = match.group(2)
        return data

    @staticmethod
    def filter_globals(sql: str, owner_name: str) -> str:
        """Drops the statements that would recreate the owner role, which already exists."""
        pattern = re.compile(rf'^CREATE ROLE "?{re.escape(owner_name)}"?;\s*$')
        return "".join(line for line in sql.splitlines(keepends=True) if not pattern.match(line))

    def transfer_globals(self, source, target, owner_name: str):
        pg_dumpall = self._program("pg_dumpall", target.version)
        result = self.command_runner.run(
            [pg_dumpall, *self._connection(source), "--globals-only", "--quote-all-identifiers"],
            capture_output=True,
            owner=self._owner(source),
            env={"LC_ALL": "C"},
            cwd="/",
        )
        psql = self._program("psql", target.version)
        self.command_runner.run(
            [psql, *self._connection(target), "-X", "-q", "-v", "ON_ERROR_STOP=1", "-d", "postgres"],
            capture_output=True,
            owner=self._owner(target),
            env={"PGOPTIONS": READ_WRITE_PGOPTIONS},
            input_text=self.filter_globals(result.stdout or "", owner_name),
            cwd="/",
        )

    def rewrite_library_paths(self, cluster, database: str):
        """Replaces hardcoded versioned library directories in ``pg_proc.probin`` with ``$libdir``."""
        prefix = f"{self.settings.bin_root.rstrip('/')}/{cluster.version}/lib/"
        escaped = prefix.replace("'", "''")
        sql = (
            "UPDATE pg_catalog.pg_proc SET probin = "
            f"'$libdir/' || substr(probin, {len(prefix) + 1}) "
            f"WHERE probin LIKE '{escaped}%'"
        )
        self.query(cluster, sql, database)

    def transfer_database(self, source, target, database: str):
        pg_dump = self._program("pg_dump", target.version)
        pg_restore = self._program("pg_restore", target.version)
        producer = [pg_dump, *self._connection(source), "-Fc", "--quote-all-identifiers", database]
        if database in ("template1", "postgres"):
            consumer = [pg_restore, *self._connection(target), "--exit-on-error", "-d", database]
        else:
            consumer = [pg_restore, *self._connection(target), "--create", "--exit-on-error", "-d", "template1"]

        self.console.print(f"Copying database {database} ...")
        self.command_runner.pipeline(
            producer,
            consumer,
            owner=self._owner(source),
            env={"PGOPTIONS": READ_WRITE_PGOPTIONS},
        )
