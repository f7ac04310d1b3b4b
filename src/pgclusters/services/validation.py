"""Argument validation performed before any cluster is touched."""

import re
from typing import Optional

from pgclusters.constants import MAX_PORT, MIN_PORT, START_MODES, UPGRADE_METHODS
from pgclusters.errors import UsageError, ValidationError
from pgclusters.errors_catalog import actionable_error
from pgclusters.versions import is_valid_version, parse_version

CLUSTER_NAME_RE = re.compile(r"^[A-Za-z0-9_][-.A-Za-z0-9_]*$")


class ValidationService:
    """Checks names, versions and options of cluster operations."""

    def __init__(self, registry):
        self.registry = registry

    @staticmethod
    def validate_version(version: str):
        if not is_valid_version(str(version)):
            raise UsageError(f"Invalid version '{version}'")

    @staticmethod
    def validate_name(name: str):
        if not name or not CLUSTER_NAME_RE.match(name):
            raise UsageError(
                f"Invalid cluster name '{name}': use letters, digits, '_', '-' and '.', "
                "and do not start with '-' or '.'"
            )

    @staticmethod
    def validate_port(port: int):
        if not MIN_PORT <= port <= MAX_PORT:
            raise ValidationError(f"Port must be between {MIN_PORT} and {MAX_PORT}, got {port}")

    @staticmethod
    def validate_start_mode(mode: Optional[str]):
        if mode is not None and mode not in START_MODES:
            raise UsageError(f"Invalid start mode '{mode}', must be one of {', '.join(START_MODES)}")

    @staticmethod
    def validate_method(method: str):
        if method not in UPGRADE_METHODS:
            raise UsageError(f"Invalid upgrade method '{method}', must be one of {', '.join(UPGRADE_METHODS)}")

    def ensure_absent(self, version: str, name: str):
        if self.registry.exists(version, name):
            raise ValidationError(actionable_error("cluster_exists", version=version, name=name))

    def ensure_present(self, version: str, name: str):
        self.validate_version(version)
        self.validate_name(name)
        if not self.registry.exists(version, name):
            raise ValidationError(actionable_error("cluster_missing", version=version, name=name))

    def ensure_port_unclaimed(self, port: int, exclude=None):
        owner = self.registry.claimed_ports(exclude=exclude).get(port)
        if owner is not None:
            raise ValidationError(actionable_error("port_in_use", port=port, owner=owner))

    @staticmethod
    def ensure_newer(old_version: str, new_version: str):
        if parse_version(new_version) <= parse_version(old_version):
            raise ValidationError(
                f"Target version {new_version} must be newer than the source version {old_version}"
            )
