"""Reader and structural editor for PostgreSQL's ``key = value`` configuration files.

A file is parsed into an ordered list of :class:`ConfigLine` nodes (blank,
comment, include, assignment, invalid).  Edits touch single nodes and the
document is rendered back line by line, so lines that were not edited come
out byte-identical.  Writes go through a sibling temporary file that is
renamed over the original.
"""

import os
import re
from dataclasses import dataclass
from typing import Dict, List, Optional

from pgclusters.constants import MAX_INCLUDE_DEPTH
from pgclusters.errors import FilesystemError, MalformedConfiguration, MalformedLine

_BLANK_RE = re.compile(r"^\s*$")
_INCLUDE_DIR_RE = re.compile(r"^\s*include_dir\s*=?\s*'([^']+)'\s*(?:#.*)?$", re.IGNORECASE)
_INCLUDE_RE = re.compile(
    r"^\s*(include(?:_if_exists)?)\s*=?\s*'([^']+)'\s*(?:#.*)?$", re.IGNORECASE
)
_ASSIGNMENT_RE = re.compile(
    r"^(?P<indent>\s*)(?P<hash>#\s*)?(?P<key>[A-Za-z0-9_.-]+)(?P<sep>\s*(?:=|\s)\s*)(?P<rest>.*)$"
)
_QUOTED_VALUE_RE = re.compile(r"^'(?P<body>(?:[^']|''|(?<=\\)')*)'(?P<trailing>\s*(?:#.*)?)$")
_BARE_VALUE_RE = re.compile(r"^(?P<body>-?[A-Za-z0-9][A-Za-z0-9._:/+-]*)(?P<trailing>\s*(?:#.*)?)$")
_NUMBER_RE = re.compile(r"^-?(?:\d+\.?\d*|\.\d+)$")
_WORD_RE = re.compile(r"^\w+$", re.ASCII)
_ESCAPE_RE = re.compile(r"''|\\([0-7]{1,3}|.)", re.DOTALL)
_BACKSLASH_ESCAPES = {"b": "\b", "f": "\f", "n": "\n", "r": "\r", "t": "\t"}
_ESCAPED_CHARS = {"\n": "\\n", "\r": "\\r", "\t": "\\t"}


def quote_conf_value(value) -> str:
    """Quotes ``value`` unless it is a number or a single plain word."""
    text = str(value)
    if _NUMBER_RE.match(text) or _WORD_RE.match(text):
        return text
    escaped = text.replace("\\", "\\\\")
    for char, escape in _ESCAPED_CHARS.items():
        escaped = escaped.replace(char, escape)
    escaped = escaped.replace("'", "''")
    return f"'{escaped}'"


def _unescape(match) -> str:
    if match.group(0) == "''":
        return "'"
    escape = match.group(1)
    if escape[0] in "01234567":
        return chr(int(escape, 8))
    return _BACKSLASH_ESCAPES.get(escape, escape)


def unquote_conf_value(body: str) -> str:
    """Decodes a quoted value body the way the server's configuration lexer does."""
    return _ESCAPE_RE.sub(_unescape, body)


def config_bool(value: Optional[str]) -> Optional[bool]:
    if value is None:
        return None
    lowered = str(value).strip().lower()
    if lowered in ("on", "true", "yes", "1"):
        return True
    if lowered in ("off", "false", "no", "0"):
        return False
    return None


def replace_v_c(text: str, version: str, cluster: str) -> str:
    """Replaces the ``%v`` and ``%c`` placeholders; ``%%`` is a literal percent sign."""
    substitutions = {"v": str(version), "c": cluster, "%": "%"}
    return re.sub(r"%([vc%])", lambda match: substitutions[match.group(1)], text)


@dataclass
class ConfigLine:
    text: str
    kind: str
    key: Optional[str] = None
    value: Optional[str] = None
    commented: bool = False
    indent: str = ""
    key_text: str = ""
    separator: str = ""
    trailing: str = ""

    def matches(self, key: str) -> bool:
        return self.key is not None and self.key.lower() == key.lower()


def parse_line(text: str) -> ConfigLine:
    if _BLANK_RE.match(text):
        return ConfigLine(text=text, kind="blank")

    stripped = text.lstrip()
    if not stripped.startswith("#"):
        include_dir = _INCLUDE_DIR_RE.match(text)
        if include_dir:
            return ConfigLine(text=text, kind="include", key="include_dir", value=include_dir.group(1))
        include = _INCLUDE_RE.match(text)
        if include:
            return ConfigLine(text=text, kind="include", key=include.group(1).lower(), value=include.group(2))

    assignment = _ASSIGNMENT_RE.match(text)
    if assignment is None:
        if stripped.startswith("#"):
            return ConfigLine(text=text, kind="comment")
        return ConfigLine(text=text, kind="invalid")

    commented = assignment.group("hash") is not None
    rest = assignment.group("rest")
    value = None
    trailing = ""
    quoted = _QUOTED_VALUE_RE.match(rest)
    if quoted:
        value = unquote_conf_value(quoted.group("body"))
        trailing = quoted.group("trailing")
    else:
        bare = _BARE_VALUE_RE.match(rest)
        if bare:
            value = bare.group("body")
            trailing = bare.group("trailing")

    if value is None:
        if commented:
            return ConfigLine(text=text, kind="comment")
        # keep the key so that disabling still finds the line
        return ConfigLine(text=text, kind="invalid", key=assignment.group("key"))

    return ConfigLine(
        text=text,
        kind="assignment",
        key=assignment.group("key"),
        value=value,
        commented=commented,
        indent=assignment.group("indent"),
        key_text=assignment.group("key"),
        separator=assignment.group("sep"),
        trailing=trailing,
    )


class ConfigDocument:
    """Ordered line model of one configuration file."""

    def __init__(self, path: str, lines: List[ConfigLine]):
        self.path = path
        self.lines = lines

    @classmethod
    def parse(cls, path: str, text: str) -> "ConfigDocument":
        raw_lines = text.split("\n")
        if raw_lines and raw_lines[-1] == "":
            raw_lines.pop()
        return cls(path, [parse_line(line) for line in raw_lines])

    @classmethod
    def load(cls, path: str) -> "ConfigDocument":
        try:
            with open(path, "r", encoding="utf-8", errors="surrogateescape") as file_obj:
                return cls.parse(path, file_obj.read())
        except OSError as exc:
            raise FilesystemError(f"Could not open {path} for reading: {exc}", path=path) from exc

    def render(self) -> str:
        if not self.lines:
            return ""
        return "\n".join(line.text for line in self.lines) + "\n"

    def find(self, key: str, commented: bool = False) -> Optional[int]:
        for index, line in enumerate(self.lines):
            if line.kind == "assignment" and line.commented == commented and line.matches(key):
                return index
        return None

    def find_active(self, key: str) -> Optional[int]:
        """First uncommented line for ``key``, even if its value does not parse."""
        for index, line in enumerate(self.lines):
            if line.kind in ("assignment", "invalid") and not line.commented and line.matches(key):
                return index
        return None

    def set(self, key: str, value) -> None:
        quoted = quote_conf_value(value)
        index = self.find(key)
        if index is None:
            index = self.find(key, commented=True)

        if index is None:
            self.lines.append(parse_line(f"{key} = {quoted}"))
            return

        line = self.lines[index]
        self.lines[index] = parse_line(
            f"{line.indent}{line.key_text}{line.separator}{quoted}{line.trailing}"
        )

    def disable(self, key: str, reason: Optional[str] = None) -> bool:
        index = self.find_active(key)
        if index is None:
            return False
        text = "#" + self.lines[index].text
        if reason:
            text = f"{text} #{reason}"
        self.lines[index] = parse_line(text)
        return True

    def replace(self, old_key: str, reason: Optional[str], new_key: str, new_value) -> bool:
        index = self.find_active(old_key)
        if index is None:
            return False
        self.disable(old_key, reason)
        self.lines.insert(index + 1, parse_line(f"{new_key} = {quote_conf_value(new_value)}"))
        return True


class ConfigFileService:
    """Reads merged settings and applies single-key edits to configuration files."""

    def __init__(self, logger, filesystem_service):
        self.logger = logger
        self.filesystem_service = filesystem_service

    def read(self, path: str) -> Dict[str, str]:
        """Returns the merged settings of ``path`` and its includes; empty if it does not exist."""
        return self._read(path, depth=0)

    def _read(self, path: str, depth: int) -> Dict[str, str]:
        if depth > MAX_INCLUDE_DEPTH:
            raise MalformedConfiguration(
                f"Could not open configuration file {path}: maximum nesting depth exceeded"
            )

        try:
            with open(path, "r", encoding="utf-8", errors="surrogateescape") as file_obj:
                text = file_obj.read()
        except FileNotFoundError:
            return {}
        except IsADirectoryError:
            return {}
        except OSError as exc:
            raise FilesystemError(f"Could not read {path}: {exc}", path=path) from exc

        lowercase_keys = path.endswith(".conf")
        settings: Dict[str, str] = {}
        document = ConfigDocument.parse(path, text)

        for number, line in enumerate(document.lines, start=1):
            if line.kind in ("blank", "comment") or line.commented:
                continue
            if line.kind == "invalid":
                raise MalformedLine(path, number, line.text)
            if line.kind == "include":
                target = self._absolute_path(line.value, path)
                if line.key == "include_dir":
                    settings.update(self._read_dir(target, depth + 1))
                else:
                    settings.update(self._read(target, depth + 1))
                continue
            key = line.key.lower() if lowercase_keys else line.key
            settings[key] = line.value

        return settings

    def _read_dir(self, directory: str, depth: int) -> Dict[str, str]:
        settings: Dict[str, str] = {}
        try:
            entries = sorted(os.listdir(directory))
        except OSError:
            return settings
        for entry in entries:
            if entry.startswith(".") or not entry.endswith(".conf"):
                continue
            full_path = os.path.join(directory, entry)
            if os.path.isfile(full_path):
                settings.update(self._read(full_path, depth))
        return settings

    @staticmethod
    def _absolute_path(path: str, parent_path: str) -> str:
        if os.path.isabs(path):
            return path
        return os.path.join(os.path.dirname(parent_path), path)

    def load_document(self, path: str) -> ConfigDocument:
        return ConfigDocument.load(path)

    def save_document(self, document: ConfigDocument):
        self.filesystem_service.atomic_write(document.path, document.render())

    def set_value(self, path: str, key: str, value):
        document = self.load_document(path)
        document.set(key, value)
        self.save_document(document)
        self.logger.debug("Set %s = %s in %s", key, value, path)

    def disable_value(self, path: str, key: str, reason: Optional[str] = None) -> bool:
        document = self.load_document(path)
        if not document.disable(key, reason):
            return False
        self.save_document(document)
        self.logger.debug("Disabled %s in %s", key, path)
        return True

    def replace_value(
        self, path: str, old_key: str, reason: Optional[str], new_key: str, new_value
    ) -> bool:
        document = self.load_document(path)
        if not document.replace(old_key, reason, new_key, new_value):
            return False
        self.save_document(document)
        self.logger.debug("Replaced %s with %s = %s in %s", old_key, new_key, new_value, path)
        return True
