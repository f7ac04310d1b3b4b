"""Shared domain models for pgclusters."""

import os
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .constants import DEFAULT_PORT


@dataclass(frozen=True)
class Settings:
    """Host layout, resolved once at process start."""

    conf_root: str = "/etc/postgresql"
    common_confdir: str = "/etc/postgresql-common"
    bin_root: str = "/usr/lib/postgresql"
    share_root: str = "/usr/share/postgresql"
    data_root: str = "/var/lib/postgresql"
    log_root: str = "/var/log/postgresql"
    run_root: str = "/var/run/postgresql"
    proc_root: str = "/proc"
    default_port: int = DEFAULT_PORT
    ssl_cert_file: str = "/etc/ssl/certs/ssl-cert-snakeoil.pem"
    ssl_key_file: str = "/etc/ssl/private/ssl-cert-snakeoil.key"

    @classmethod
    def keys(cls) -> Tuple[str, ...]:
        return tuple(item.name for item in fields(cls))

    @classmethod
    def from_sources(
        cls,
        config_values: Optional[Mapping[str, Any]] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "Settings":
        environ = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        for key, value in (config_values or {}).items():
            if key in cls.keys():
                values[key] = int(value) if key == "default_port" else str(value)

        if environ.get("PG_CLUSTER_CONF_ROOT"):
            values["conf_root"] = environ["PG_CLUSTER_CONF_ROOT"]
        if environ.get("PGSYSCONFDIR"):
            values["common_confdir"] = environ["PGSYSCONFDIR"]

        return replace(cls(), **values)


@dataclass
class Cluster:
    """Everything known about one (version, name) cluster."""

    version: str
    name: str
    config_dir: str
    data_dir: Optional[str]
    port: int
    socket_dir: Optional[str]
    start_mode: str
    running: Optional[bool]
    log_file: str
    owner_uid: Optional[int] = None
    owner_gid: Optional[int] = None
    config_uid: Optional[int] = None
    wal_dir: Optional[str] = None
    custom_log: bool = False
    recovery: bool = False
    supervisor: Optional[str] = None
    config: Dict[str, str] = field(default_factory=dict)

    @property
    def key(self) -> str:
        return f"{self.version}/{self.name}"


@dataclass
class CreateRequest:
    """Parameters of a cluster creation."""

    version: str
    name: str
    owner_uid: int
    owner_gid: int
    datadir: Optional[str] = None
    waldir: Optional[str] = None
    port: Optional[int] = None
    socketdir: Optional[str] = None
    logfile: Optional[str] = None
    locale: Optional[str] = None
    lc_collate: Optional[str] = None
    lc_ctype: Optional[str] = None
    lc_messages: Optional[str] = None
    lc_monetary: Optional[str] = None
    lc_numeric: Optional[str] = None
    lc_time: Optional[str] = None
    encoding: Optional[str] = None
    locale_provider: Optional[str] = None
    icu_locale: Optional[str] = None
    icu_rules: Optional[str] = None
    start_mode: Optional[str] = None
    pgoptions: Dict[str, str] = field(default_factory=dict)
    initdb_options: List[str] = field(default_factory=list)
    start: bool = False


@dataclass
class UpgradeRequest:
    """Parameters of a major version upgrade."""

    old_version: str
    name: str
    new_version: Optional[str] = None
    new_name: Optional[str] = None
    method: str = "dump"
    datadir: Optional[str] = None
    jobs: Optional[int] = None
    keep_port: bool = False
    rollback: bool = True
    start: Optional[bool] = None
    locale: Optional[str] = None
    lc_collate: Optional[str] = None
    lc_ctype: Optional[str] = None
    lc_messages: Optional[str] = None
    lc_monetary: Optional[str] = None
    lc_numeric: Optional[str] = None
    lc_time: Optional[str] = None
    encoding: Optional[str] = None


@dataclass
class UpgradeSession:
    """State of one running upgrade invocation."""

    source: Cluster
    new_version: str
    new_name: str
    method: str
    temp_port: int
    log_dir: str
    source_was_running: bool
    target: Optional[Cluster] = None
    ports_swapped: bool = False
    encoding: Optional[str] = None
    locales: Dict[str, Optional[str]] = field(default_factory=dict)
    data_checksums: bool = False
