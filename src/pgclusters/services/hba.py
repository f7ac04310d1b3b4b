"""pg_hba.conf parsing and the edits applied to new clusters."""

import re
from dataclasses import dataclass
from typing import List, Optional

from pgclusters.versions import version_at_least

VALID_METHODS = frozenset(
    {
        "trust",
        "reject",
        "md5",
        "scram-sha-256",
        "password",
        "crypt",
        "krb5",
        "gss",
        "sspi",
        "ident",
        "peer",
        "pam",
        "ldap",
        "radius",
        "cert",
    }
)

SUPERUSER_BYPASS = """# DO NOT DISABLE!
# If you change this first entry you will need to make sure that the
# database superuser can access the database using some other method.
# Noninteractive access to all databases is required during automatic
# maintenance (custom daily cronjobs, replication, and similar tasks).
#
# Database administrative login by Unix domain socket
local   all             {owner:<32}{method}
"""


@dataclass
class HbaRule:
    line: str
    type: Optional[str]
    database: Optional[str] = None
    user: Optional[str] = None
    address: Optional[str] = None
    mask: Optional[str] = None
    method: Optional[str] = None


def valid_hba_method(method: str) -> bool:
    return method in VALID_METHODS


def parse_hba_line(line: str) -> HbaRule:
    line = line.rstrip("\n")
    if re.match(r"^\s*($|#)", line):
        return HbaRule(line=line, type="comment")

    tokens = line.split()
    invalid = HbaRule(line=line, type=None)
    if len(tokens) < 4:
        return invalid

    rule_type, database, user = tokens[0], tokens[1], tokens[2]
    rest = tokens[3:]

    if rule_type == "local":
        if len(rest) > 2 or not valid_hba_method(rest[0]):
            return invalid
        return HbaRule(line=line, type=rule_type, database=database, user=user, method=" ".join(rest))

    if re.match(r"^host((no)?ssl)?$", rule_type):
        address, _, cidr = rest.pop(0).partition("/")
        if not address:
            return invalid
        if cidr:
            if not cidr.isdigit():
                return invalid
            mask = cidr
        else:
            if not rest:
                return invalid
            mask = rest.pop(0)
        if not rest or len(rest) > 2 or not valid_hba_method(rest[0]):
            return invalid
        return HbaRule(
            line=line,
            type=rule_type,
            database=database,
            user=user,
            address=address,
            mask=mask,
            method=" ".join(rest),
        )

    return invalid


def read_pg_hba(path: str) -> Optional[List[HbaRule]]:
    try:
        with open(path, "r", encoding="utf-8") as file_obj:
            return [parse_hba_line(line) for line in file_obj]
    except OSError:
        return None


class HbaService:
    """Applies the access rule adjustments made when a cluster is created."""

    def __init__(self, logger, filesystem_service):
        self.logger = logger
        self.filesystem_service = filesystem_service

    @staticmethod
    def local_owner_method(version: str) -> str:
        return "peer" if version_at_least(version, "9.1") else "ident"

    def insert_superuser_bypass(self, path: str, owner_name: str, version: str):
        """Puts a local login rule for the cluster owner before the first real rule."""
        with open(path, "r", encoding="utf-8") as file_obj:
            lines = file_obj.readlines()

        insert_at = len(lines)
        for index, line in enumerate(lines):
            if parse_hba_line(line).type != "comment":
                insert_at = index
                break

        block = SUPERUSER_BYPASS.format(owner=owner_name, method=self.local_owner_method(version))
        lines.insert(insert_at, block + "\n")
        self.filesystem_service.atomic_write(path, "".join(lines))
        self.logger.debug("Added superuser bypass for %s to %s", owner_name, path)

    def rewrite_trust_rules(self, path: str, local_method: str, host_method: str) -> int:
        """Replaces ``trust`` in the default rules of old initdb releases."""
        with open(path, "r", encoding="utf-8") as file_obj:
            lines = file_obj.readlines()

        changed = 0
        for index, line in enumerate(lines):
            rule = parse_hba_line(line)
            if rule.type is None or rule.type == "comment" or rule.method != "trust":
                continue
            method = local_method if rule.type == "local" else host_method
            lines[index] = re.sub(r"\btrust\b", method, line, count=1)
            changed += 1

        if changed:
            self.filesystem_service.atomic_write(path, "".join(lines))
        return changed
