import pytest

from pgclusters.errors import MalformedConfiguration, MalformedLine
from pgclusters.services.config_file import (
    ConfigDocument,
    ConfigFileService,
    config_bool,
    parse_line,
    quote_conf_value,
    replace_v_c,
)
from pgclusters.services.filesystem import FileSystemService


class DummyLogger:
    def debug(self, *_args, **_kwargs):
        return None

    def warning(self, *_args, **_kwargs):
        return None


class DummyConsole:
    def print(self, *_args, **_kwargs):
        return None


def _service():
    logger = DummyLogger()
    return ConfigFileService(logger, FileSystemService(logger, DummyConsole()))


def test_read_merges_includes_in_order(tmp_path):
    (tmp_path / "conf.d").mkdir()
    (tmp_path / "conf.d" / "10-late.conf").write_text("work_mem = '8MB'\n", encoding="utf-8")
    (tmp_path / "conf.d" / "01-early.conf").write_text("work_mem = '4MB'\nport = 5440\n", encoding="utf-8")
    (tmp_path / "conf.d" / ".hidden.conf").write_text("port = 1\n", encoding="utf-8")
    (tmp_path / "extra.conf").write_text("Shared_Buffers = 256MB\n", encoding="utf-8")
    main = tmp_path / "postgresql.conf"
    main.write_text(
        "port = 5432\n"
        "include 'extra.conf'\n"
        "include_dir 'conf.d'\n"
        "include_if_exists 'missing.conf'\n"
        "# max_connections = 10\n",
        encoding="utf-8",
    )

    settings = _service().read(str(main))

    assert settings["port"] == "5440"
    assert settings["work_mem"] == "8MB"
    assert settings["shared_buffers"] == "256MB"
    assert "max_connections" not in settings


def test_read_missing_file_is_empty(tmp_path):
    assert _service().read(str(tmp_path / "nope.conf")) == {}


def test_read_rejects_include_cycles(tmp_path):
    loop = tmp_path / "loop.conf"
    loop.write_text("include 'loop.conf'\n", encoding="utf-8")

    with pytest.raises(MalformedConfiguration, match="maximum nesting depth"):
        _service().read(str(loop))


def test_read_reports_invalid_line_number(tmp_path):
    conf = tmp_path / "postgresql.conf"
    conf.write_text("port = 5432\n\nthis is = not 'valid\n", encoding="utf-8")

    with pytest.raises(MalformedLine) as excinfo:
        _service().read(str(conf))

    assert excinfo.value.line_number == 3


def test_set_value_uncomments_in_place_and_keeps_other_lines(tmp_path):
    conf = tmp_path / "postgresql.conf"
    original = "# header\n#port = 5432\t\t# (change requires restart)\nmax_connections = 100   # keep me\n"
    conf.write_text(original, encoding="utf-8")

    _service().set_value(str(conf), "port", 5433)

    lines = conf.read_text(encoding="utf-8").splitlines()
    assert lines[0] == "# header"
    assert lines[1] == "port = 5433\t\t# (change requires restart)"
    assert lines[2] == "max_connections = 100   # keep me"


def test_set_value_is_idempotent(tmp_path):
    conf = tmp_path / "postgresql.conf"
    conf.write_text("listen_addresses = 'localhost'\n", encoding="utf-8")
    service = _service()

    service.set_value(str(conf), "data_directory", "/var/lib/postgresql/16/main")
    first = conf.read_text(encoding="utf-8")
    service.set_value(str(conf), "data_directory", "/var/lib/postgresql/16/main")

    assert conf.read_text(encoding="utf-8") == first
    assert first.endswith("data_directory = '/var/lib/postgresql/16/main'\n")


def test_set_value_does_not_match_key_prefixes(tmp_path):
    conf = tmp_path / "postgresql.conf"
    conf.write_text("ssl_cert_file = 'a.pem'\n", encoding="utf-8")

    _service().set_value(str(conf), "ssl", "on")

    assert conf.read_text(encoding="utf-8") == "ssl_cert_file = 'a.pem'\nssl = on\n"


def test_disable_value_comments_out_with_reason(tmp_path):
    conf = tmp_path / "postgresql.conf"
    conf.write_text("checkpoint_segments = 8\n", encoding="utf-8")
    service = _service()

    assert service.disable_value(str(conf), "checkpoint_segments", "obsolete") is True
    assert conf.read_text(encoding="utf-8") == "#checkpoint_segments = 8 #obsolete\n"
    assert service.disable_value(str(conf), "checkpoint_segments") is False


def test_replace_value_inserts_after_disabled_line(tmp_path):
    conf = tmp_path / "postgresql.conf"
    conf.write_text("a = 1\nwal_keep_segments = 4\nb = 2\n", encoding="utf-8")

    assert _service().replace_value(str(conf), "wal_keep_segments", "renamed", "wal_keep_size", "64MB")

    assert conf.read_text(encoding="utf-8").splitlines() == [
        "a = 1",
        "#wal_keep_segments = 4 #renamed",
        "wal_keep_size = 64MB",
        "b = 2",
    ]


def test_quoting_round_trips_special_characters():
    for value in ("it's a C:\\path", "line\nbreak", "tab\tand\r\n", "ends with \\", " a # b", "\\n"):
        line = parse_line(f"archive_command = {quote_conf_value(value)}")

        assert line.kind == "assignment"
        assert line.value == value


def test_multiline_value_stays_on_one_line(tmp_path):
    conf = tmp_path / "postgresql.conf"
    conf.write_text("port = 5432\n", encoding="utf-8")
    service = _service()

    service.set_value(str(conf), "archive_command", "line\nbreak")

    assert conf.read_text(encoding="utf-8") == "port = 5432\narchive_command = 'line\\nbreak'\n"
    assert service.read(str(conf))["archive_command"] == "line\nbreak"


def test_unquote_decodes_server_escapes():
    assert parse_line(r"x = 'a\tb\101\q'").value == "a\tbAq"


def test_quote_conf_value_leaves_words_and_numbers_bare():
    assert quote_conf_value(5432) == "5432"
    assert quote_conf_value("on") == "on"
    assert quote_conf_value("-1.5") == "-1.5"
    assert quote_conf_value("/tmp") == "'/tmp'"
    assert quote_conf_value("") == "''"


def test_document_render_preserves_unparsed_text():
    text = "  # comment\n\nport=5432 # trailing\n"
    document = ConfigDocument.parse("x.conf", text)

    assert document.render() == text
    assert document.lines[2].value == "5432"


def test_config_bool_and_placeholders():
    assert config_bool("On") is True
    assert config_bool("0") is False
    assert config_bool("maybe") is None
    assert replace_v_c("/srv/%v/%c/100%%", "16", "main") == "/srv/16/main/100%"
