from pgclusters.services.config_file import ConfigFileService
from pgclusters.services.filesystem import FileSystemService
from pgclusters.services.upgrade_rules import ConfigMigrationService, UpgradeRule


class DummyLogger:
    def debug(self, *_args, **_kwargs):
        return None

    def info(self, *_args, **_kwargs):
        return None


class DummyConsole:
    def print(self, *_args, **_kwargs):
        return None


def _service(rules=None):
    logger = DummyLogger()
    config_files = ConfigFileService(logger, FileSystemService(logger, DummyConsole()))
    return ConfigMigrationService(logger, config_files, rules=rules)


def test_rule_applies_to_half_open_version_range():
    rule = UpgradeRule("13", "wal_keep_segments", "replaced")

    assert rule.applies("12", "13") is True
    assert rule.applies("9.6", "16") is True
    assert rule.applies("13", "16") is False
    assert rule.applies("9.6", "12") is False


def test_rules_between_follow_numeric_order():
    keys = [rule.old_key for rule in _service().rules_between("9.6", "10")]

    assert keys == ["sql_inheritance", "min_parallel_relation_size"]


def test_migrate_converts_and_renames_settings(tmp_path):
    conf = tmp_path / "postgresql.conf"
    conf.write_text(
        "checkpoint_segments = 8\n"
        "wal_keep_segments = 32\n"
        "unix_socket_directory = '/var/run/postgresql'\n"
        "#silent_mode = off\n"
        "shared_buffers = 128MB\n",
        encoding="utf-8",
    )

    changed = _service().migrate(str(conf), "9.1", "13")

    assert changed == ["unix_socket_directory", "checkpoint_segments", "wal_keep_segments"]
    assert conf.read_text(encoding="utf-8").splitlines() == [
        "#checkpoint_segments = 8 #replaced by max_wal_size in 9.5, see the release notes",
        "max_wal_size = 384MB",
        "#wal_keep_segments = 32 #replaced by wal_keep_size in 13, see the release notes",
        "wal_keep_size = 512MB",
        "#unix_socket_directory = '/var/run/postgresql' #renamed in 9.3, see the release notes",
        "unix_socket_directories = '/var/run/postgresql'",
        "#silent_mode = off",
        "shared_buffers = 128MB",
    ]


def test_migrate_disables_unconvertible_values(tmp_path):
    conf = tmp_path / "postgresql.conf"
    conf.write_text("checkpoint_segments = lots\nstats_temp_directory = '/run/x'\n", encoding="utf-8")

    changed = _service().migrate(str(conf), "9.4", "15")

    assert changed == ["checkpoint_segments", "stats_temp_directory"]
    text = conf.read_text(encoding="utf-8")
    assert text.startswith("#checkpoint_segments = lots #replaced by max_wal_size")
    assert "max_wal_size" not in text.replace("#replaced by max_wal_size", "")
    assert "#stats_temp_directory = '/run/x' #not needed in 15" in text


def test_migrate_leaves_untouched_file_alone(tmp_path):
    conf = tmp_path / "postgresql.conf"
    conf.write_text("port = 5432\n", encoding="utf-8")
    before = conf.stat().st_mtime_ns

    assert _service().migrate(str(conf), "15", "16") == []
    assert conf.stat().st_mtime_ns == before
