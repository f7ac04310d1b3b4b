import subprocess

import pytest

from pgclusters.errors import ExternalToolFailure, MalformedConfiguration
from pgclusters.models import Cluster, Settings
from pgclusters.services.database import READ_WRITE_PGOPTIONS, DatabaseService


class DummyLogger:
    def debug(self, *_args, **_kwargs):
        return None

    def info(self, *_args, **_kwargs):
        return None


class DummyConsole:
    def print(self, *_args, **_kwargs):
        return None


class FakeRegistry:
    def __init__(self, missing=()):
        self.missing = set(missing)

    def program_path(self, program, version=None):
        if program in self.missing:
            return None
        return f"/usr/lib/postgresql/{version}/bin/{program}"


class ScriptedRunner:
    """Answers psql queries by the first matching SQL fragment."""

    def __init__(self, answers=None):
        self.answers = answers or {}
        self.calls = []
        self.pipelines = []

    def run(self, cmd, check=True, capture_output=False, timeout=None, owner=None, env=None,
            input_text=None, cwd=None):
        self.calls.append({"cmd": cmd, "owner": owner, "env": env, "input_text": input_text})
        stdout = ""
        for fragment, answer in self.answers.items():
            if any(fragment in part for part in cmd):
                stdout = answer
                break
        return subprocess.CompletedProcess(cmd, 0, stdout=stdout, stderr="")

    def pipeline(self, producer, consumer, owner=None, env=None):
        self.pipelines.append((producer, consumer, owner, env))


def _cluster(version="15", port=5432):
    return Cluster(
        version=version,
        name="main",
        config_dir=f"/etc/postgresql/{version}/main",
        data_dir=f"/var/lib/postgresql/{version}/main",
        port=port,
        socket_dir="/var/run/postgresql",
        start_mode="auto",
        running=True,
        log_file=f"/var/log/postgresql/postgresql-{version}-main.log",
        owner_uid=120,
        owner_gid=130,
    )


def _service(runner, registry=None):
    return DatabaseService(
        settings=Settings(),
        logger=DummyLogger(),
        console=DummyConsole(),
        registry=registry or FakeRegistry(),
        command_runner=runner,
    )


def test_query_runs_psql_as_owner_over_the_socket():
    runner = ScriptedRunner({"getdatabaseencoding": "UTF8\n"})

    encoding = _service(runner).db_encoding(_cluster())

    assert encoding == "UTF8"
    call = runner.calls[0]
    assert call["cmd"][:5] == ["/usr/lib/postgresql/15/bin/psql", "-h", "/var/run/postgresql", "-p", "5432"]
    assert call["cmd"][-1] == "template1"
    assert call["owner"] == (120, 130)
    assert call["env"]["PGOPTIONS"] == READ_WRITE_PGOPTIONS


def test_db_locales_reads_icu_settings_on_recent_versions():
    runner = ScriptedRunner(
        {
            "datlocprovider": "icu|und-x-icu|\n",
            "datctype": "en_US.UTF-8|en_US.UTF-8\n",
        }
    )

    locales = _service(runner).db_locales(_cluster("16"))

    assert locales == {
        "lc_ctype": "en_US.UTF-8",
        "lc_collate": "en_US.UTF-8",
        "locale_provider": "icu",
        "icu_locale": "und-x-icu",
        "icu_rules": None,
    }


def test_db_locales_skips_provider_on_old_versions():
    runner = ScriptedRunner({"datctype": "C|C\n"})

    locales = _service(runner).db_locales(_cluster("13"))

    assert locales == {"lc_ctype": "C", "lc_collate": "C"}
    assert len(runner.calls) == 1


def test_databases_parses_allow_connection_flags():
    runner = ScriptedRunner({"datallowconn": "app|t\narchive|f\npostgres|t\ntemplate1|t\n"})

    assert _service(runner).databases(_cluster()) == [
        ("app", True),
        ("archive", False),
        ("postgres", True),
        ("template1", True),
    ]


def test_parse_controldata():
    parsed = DatabaseService.parse_controldata(
        "pg_control version number:            1300\n"
        "Data page checksum version:           1\n"
        "\n"
    )

    assert parsed["Data page checksum version"] == "1"
    assert parsed["pg_control version number"] == "1300"

    with pytest.raises(MalformedConfiguration, match="Invalid pg_controldata output"):
        DatabaseService.parse_controldata("garbage without separator")


def test_filter_globals_drops_owner_role_only():
    sql = 'CREATE ROLE "postgres";\nALTER ROLE "postgres" WITH SUPERUSER;\nCREATE ROLE "app";\n'

    filtered = DatabaseService.filter_globals(sql, "postgres")

    assert filtered == 'ALTER ROLE "postgres" WITH SUPERUSER;\nCREATE ROLE "app";\n'


def test_transfer_globals_pipes_filtered_dump_into_new_cluster():
    runner = ScriptedRunner({"--globals-only": 'CREATE ROLE "postgres";\nCREATE ROLE "app";\n'})

    _service(runner).transfer_globals(_cluster("15", 5432), _cluster("16", 5433), "postgres")

    dumpall, psql = runner.calls
    assert dumpall["cmd"][0] == "/usr/lib/postgresql/16/bin/pg_dumpall"
    assert "5432" in dumpall["cmd"]
    assert psql["cmd"][0] == "/usr/lib/postgresql/16/bin/psql"
    assert "5433" in psql["cmd"]
    assert psql["input_text"] == 'CREATE ROLE "app";\n'


def test_transfer_database_creates_ordinary_databases_from_template1():
    runner = ScriptedRunner()
    service = _service(runner)

    service.transfer_database(_cluster("15", 5432), _cluster("16", 5433), "app")
    service.transfer_database(_cluster("15", 5432), _cluster("16", 5433), "postgres")

    (producer, consumer, owner, _env), (_, postgres_consumer, _, _) = runner.pipelines
    assert producer[0].endswith("/16/bin/pg_dump")
    assert producer[-1] == "app"
    assert consumer[-3:] == ["--exit-on-error", "-d", "template1"]
    assert "--create" in consumer
    assert "--create" not in postgres_consumer
    assert postgres_consumer[-1] == "postgres"
    assert owner == (120, 130)


def test_rewrite_library_paths_targets_versioned_lib_dir():
    runner = ScriptedRunner()

    _service(runner).rewrite_library_paths(_cluster("15"), "app")

    sql = runner.calls[0]["cmd"][-2]
    assert "'$libdir/'" in sql
    assert "LIKE '/usr/lib/postgresql/15/lib/%'" in sql
    assert runner.calls[0]["cmd"][-1] == "app"


def test_missing_client_tool_is_reported():
    runner = ScriptedRunner()
    service = _service(runner, FakeRegistry(missing={"pg_controldata"}))

    with pytest.raises(ExternalToolFailure, match="pg_controldata for version 15 not found"):
        service.controldata(_cluster())
