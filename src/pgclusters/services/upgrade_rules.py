"""Translation of postgresql.conf settings between major versions."""

import re
from dataclasses import dataclass
from typing import Callable, List, Optional

from pgclusters.versions import parse_version

WAL_SEGMENT_MB = 16


def _segments_to_size(factor: int) -> Callable[[str], Optional[str]]:
    def compute(value: str) -> Optional[str]:
        if not re.match(r"^\d+$", value.strip()):
            return None
        return f"{int(value) * factor * WAL_SEGMENT_MB}MB"

    return compute


@dataclass(frozen=True)
class UpgradeRule:
    """One setting change introduced by ``version``.

    Without ``new_key`` the setting is commented out. With ``new_key`` it is
    commented out and the replacement is inserted below it, using
    ``compute`` to derive the new value when the unit changed.
    """

    version: str
    old_key: str
    reason: str
    new_key: Optional[str] = None
    compute: Optional[Callable[[str], Optional[str]]] = None

    def applies(self, old_version: str, new_version: str) -> bool:
        return parse_version(old_version) < parse_version(self.version) <= parse_version(new_version)


RULES: List[UpgradeRule] = [
    UpgradeRule("9.0", "add_missing_from", "not available in 9.0"),
    UpgradeRule("9.0", "regex_flavor", "not available in 9.0"),
    UpgradeRule("9.2", "silent_mode", "not available in 9.2"),
    UpgradeRule("9.2", "wal_sender_delay", "not available in 9.2"),
    UpgradeRule("9.2", "custom_variable_classes", "not available in 9.2"),
    UpgradeRule("9.2", "replication_timeout", "renamed in 9.2", "wal_sender_timeout"),
    UpgradeRule("9.3", "unix_socket_directory", "renamed in 9.3", "unix_socket_directories"),
    UpgradeRule("9.5", "ssl_renegotiation_limit", "not available in 9.5"),
    UpgradeRule(
        "9.5",
        "checkpoint_segments",
        "replaced by max_wal_size in 9.5",
        "max_wal_size",
        _segments_to_size(3),
    ),
    UpgradeRule("10", "sql_inheritance", "not available in 10"),
    UpgradeRule("10", "min_parallel_relation_size", "renamed in 10", "min_parallel_table_scan_size"),
    UpgradeRule("11", "replacement_sort_tuples", "not available in 11"),
    UpgradeRule("12", "default_with_oids", "not available in 12"),
    UpgradeRule(
        "13",
        "wal_keep_segments",
        "replaced by wal_keep_size in 13",
        "wal_keep_size",
        _segments_to_size(1),
    ),
    UpgradeRule("14", "operator_precedence_warning", "not available in 14"),
    UpgradeRule("14", "vacuum_cleanup_index_scale_factor", "not available in 14"),
    UpgradeRule("15", "stats_temp_directory", "not needed in 15"),
    UpgradeRule("16", "vacuum_defer_cleanup_age", "not available in 16"),
    UpgradeRule("16", "promote_trigger_file", "not available in 16"),
    UpgradeRule("16", "force_parallel_mode", "renamed in 16", "debug_parallel_query"),
    UpgradeRule("17", "old_snapshot_threshold", "not available in 17"),
    UpgradeRule("17", "db_user_namespace", "not available in 17"),
    UpgradeRule("17", "trace_recovery_messages", "not available in 17"),
]


class ConfigMigrationService:
    """Applies the rules between two versions to a copied configuration file."""

    def __init__(self, logger, config_file_service, rules: Optional[List[UpgradeRule]] = None):
        self.logger = logger
        self.config_files = config_file_service
        self.rules = RULES if rules is None else rules

    def rules_between(self, old_version: str, new_version: str) -> List[UpgradeRule]:
        return [rule for rule in self.rules if rule.applies(old_version, new_version)]

    def migrate(self, path: str, old_version: str, new_version: str) -> List[str]:
        """Rewrites ``path`` in place; returns the keys that were changed."""
        document = self.config_files.load_document(path)
        changed = []
        for rule in self.rules_between(old_version, new_version):
            index = document.find_active(rule.old_key)
            if index is None:
                continue
            old_value = document.lines[index].value or ""
            reason = f"{rule.reason}, see the release notes"

            new_value = None
            if rule.new_key is not None:
                new_value = rule.compute(old_value) if rule.compute else old_value

            if new_value is None:
                document.disable(rule.old_key, reason)
                self.logger.info("Disabled obsolete setting %s in %s", rule.old_key, path)
            else:
                document.replace(rule.old_key, reason, rule.new_key, new_value)
                self.logger.info("Replaced %s with %s in %s", rule.old_key, rule.new_key, path)
            changed.append(rule.old_key)

        if changed:
            self.config_files.save_document(document)
        return changed
