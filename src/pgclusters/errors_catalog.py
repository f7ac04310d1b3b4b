"""Actionable error catalog for pgclusters."""

from typing import Dict

_ERROR_MESSAGES: Dict[str, Dict[str, str]] = {
    "cluster_exists": {
        "what": "Cluster {version} {name} already exists.",
        "next": "Pick another name or drop the existing cluster first.",
    },
    "cluster_missing": {
        "what": "Cluster {version} {name} does not exist.",
        "next": "Run `pgclusters list` to see the clusters on this host.",
    },
    "cluster_running": {
        "what": "Cluster {version} {name} is still running.",
        "next": "Stop it first, or pass `--stop` to stop it automatically.",
    },
    "port_in_use": {
        "what": "Port {port} is already used by cluster {owner}.",
        "next": "Choose a different `--port` or omit it to allocate a free one.",
    },
    "version_mismatch": {
        "what": "Data directory {path} belongs to PostgreSQL {found}, not {version}.",
        "next": "Use a matching version or an empty data directory.",
    },
    "data_dir_not_empty": {
        "what": "Data directory {path} exists, is not empty and holds no PostgreSQL cluster.",
        "next": "Empty it, or point `--datadir` at an empty or missing directory.",
    },
    "upgrade_failed": {
        "what": "Upgrade of {version} {name} failed.",
        "next": "Inspect the upgrade log directory {log_dir}, fix the cause and rerun.",
    },
}


def actionable_error(code: str, **kwargs: str) -> str:
    if code not in _ERROR_MESSAGES:
        raise KeyError(f"Unknown error catalog key: {code}")

    template = _ERROR_MESSAGES[code]
    what = template["what"].format(**kwargs)
    next_step = template["next"].format(**kwargs)
    return f"{what} Suggested action: {next_step}"
