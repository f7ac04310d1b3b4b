"""Shared constants for pgclusters."""

DEFAULT_PORT = 5432
MIN_PORT = 1024
MAX_PORT = 65535

START_MODES = ("auto", "manual", "disabled")
UPGRADE_METHODS = ("dump", "upgrade", "link", "clone")

PRIMARY_CONF = "postgresql.conf"
AUTO_CONF = "postgresql.auto.conf"
HBA_CONF = "pg_hba.conf"
IDENT_CONF = "pg_ident.conf"
START_CONF = "start.conf"
PG_CTL_CONF = "pg_ctl.conf"
ENVIRONMENT_FILE = "environment"
CREATECLUSTER_CONF = "createcluster.conf"
UPGRADE_HOOKS_DIR = "pg_upgradecluster.d"

# createcluster.conf keys that steer cluster creation instead of ending up in postgresql.conf
CREATECLUSTER_ONLY_KEYS = frozenset(
    {
        "create_main_cluster",
        "data_directory",
        "initdb_options",
        "ssl",
        "start_conf",
        "waldir",
        "xlogdir",
    }
)

# settings that carry the cluster name and are rewritten on rename
CLUSTER_PATH_SETTINGS = (
    "hba_file",
    "ident_file",
    "external_pid_file",
    "stats_temp_directory",
    "cluster_name",
)

SHARED_SOCKET_DIRS = ("/tmp", "/var/run/postgresql", "/run/postgresql")

DIR_MODE = 0o755
FILE_MODE = 0o644
SECRET_FILE_MODE = 0o640
DATA_DIR_MODE = 0o700
SOCKET_DIR_MODE = 0o2775

LEGACY_LOG_GROUP = "adm"
LEGACY_LOG_GROUP_MAX_UID = 1000

MAX_INCLUDE_DEPTH = 10

ENVIRONMENT_HEADER = """# environment variables for postgres processes
# This file has the same syntax as postgresql.conf:
#  VARIABLE = simple_value
#  VARIABLE2 = 'any value!'
# I. e. you need to enclose any value which does not only consist of letters,
# numbers, and '-', '_', '.' in single quotes. Shell commands are not
# evaluated.
"""

START_CONF_HEADER = """# Automatic startup configuration
#   auto: automatically start the cluster
#   manual: manual startup with pg_ctl only
#   disabled: refuse to start cluster
"""

PG_CTL_CONF_HEADER = """# Automatic pg_ctl configuration
# This configuration file contains cluster specific options to be passed to
# pg_ctl(1).
"""
