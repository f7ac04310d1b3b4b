"""PostgreSQL major version helpers."""

import re
from typing import Iterable, List

from packaging import version

_VERSION_RE = re.compile(r"\d+(?:\.\d+)?")


def is_valid_version(value: str) -> bool:
    return bool(value) and _VERSION_RE.fullmatch(value) is not None


def parse_version(value: str) -> version.Version:
    try:
        return version.parse(str(value).strip())
    except version.InvalidVersion:
        return version.parse("0")


def version_at_least(value: str, minimum: str) -> bool:
    return parse_version(value) >= parse_version(minimum)


def sort_versions(values: Iterable[str]) -> List[str]:
    return sorted(set(values), key=parse_version)
