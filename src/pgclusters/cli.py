import json
import logging
import os

import click
from rich.logging import RichHandler
from rich.table import Table

from .constants import START_MODES, UPGRADE_METHODS
from .core import ClusterManager, console
from .errors import ClusterError
from .models import CreateRequest, Settings, UpgradeRequest
from .services.config_loader import ConfigLoader

DEFAULT_CONFIG_NAME = "pgclusters.yml"


def _resolve_option(cli_value, config, key, default=None):
    if cli_value is not None:
        return cli_value
    if key in config:
        return config[key]
    return default


logging.basicConfig(
    level="INFO",
    format="%(message)s",
    datefmt="[%X]",
    handlers=[RichHandler(rich_tracebacks=True, show_level=False, show_path=False)],
)


class ClusterGroup(click.Group):
    """Reports command line mistakes with exit status 1 like every other failure."""

    def make_context(self, info_name, args, parent=None, **extra):
        try:
            return super().make_context(info_name, args, parent=parent, **extra)
        except click.UsageError as exc:
            exc.exit_code = 1
            raise

    def invoke(self, ctx):
        try:
            return super().invoke(ctx)
        except click.UsageError as exc:
            exc.exit_code = 1
            raise


def _parse_pgoptions(values):
    options = {}
    for value in values:
        key, separator, setting = value.partition("=")
        if not separator or not key.strip():
            raise click.BadParameter(f"'{value}' is not of the form key=value", param_hint="'-o/--pgoption'")
        options[key.strip()] = setting.strip()
    return options


def _manager(ctx) -> ClusterManager:
    return ctx.obj


@click.group(cls=ClusterGroup)
@click.option(
    "--config",
    required=False,
    type=click.Path(),
    help=f"Path to a YAML configuration file. Defaults to <common config dir>/{DEFAULT_CONFIG_NAME} if present.",
)
@click.option("--verbose", is_flag=True, default=None, help="Enable verbose logging")
@click.option("--log-file", type=click.Path(), help="Path to log file")
@click.pass_context
def main(ctx, config, verbose, log_file):
    """Create, drop, rename, list and upgrade PostgreSQL clusters."""
    logger = logging.getLogger("pgclusters")

    try:
        config_loader = ConfigLoader()
        resolved_config = config
        if resolved_config is None:
            default_config_path = os.path.join(
                Settings.from_sources().common_confdir, DEFAULT_CONFIG_NAME
            )
            if os.path.exists(default_config_path):
                resolved_config = default_config_path

        config_values = config_loader.load(resolved_config)
        settings = config_loader.settings(config_values)
    except ClusterError as exc:
        raise click.ClickException(str(exc)) from exc

    verbose = bool(_resolve_option(verbose, config_values, "verbose", default=False))
    log_file = _resolve_option(log_file, config_values, "log_file")

    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.setLevel(logging.DEBUG)
    else:
        logger.setLevel(logging.INFO)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
        file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
        logger.addHandler(file_handler)

    if ctx.obj is None:
        ctx.obj = ClusterManager(settings=settings)


@main.command()
@click.argument("version")
@click.argument("name")
@click.option("-u", "--user", help="Cluster owner (default: postgres when run as root, else the current user)")
@click.option("-g", "--group", help="Cluster owner group (default: the owner's primary group)")
@click.option("-d", "--datadir", type=click.Path(), help="Data directory (default: <data root>/VERSION/NAME)")
@click.option("--waldir", type=click.Path(), help="Directory for the write-ahead log")
@click.option("-p", "--port", type=int, help="Port (default: the next free port from 5432)")
@click.option("-s", "--socketdir", type=click.Path(), help="Unix socket directory")
@click.option("-l", "--logfile", type=click.Path(), help="Server log file")
@click.option("--locale", help="Locale for all categories")
@click.option("--lc-collate")
@click.option("--lc-ctype")
@click.option("--lc-messages")
@click.option("--lc-monetary")
@click.option("--lc-numeric")
@click.option("--lc-time")
@click.option("-e", "--encoding", help="Default database encoding")
@click.option("--locale-provider", type=click.Choice(["libc", "icu"]))
@click.option("--icu-locale")
@click.option("--start-conf", type=click.Choice(START_MODES), help="Start mode written to start.conf")
@click.option("-o", "--pgoption", "pgoptions", multiple=True, help="postgresql.conf setting as key=value")
@click.option("--start", is_flag=True, default=False, help="Start the cluster after creating it")
@click.argument("initdb_options", nargs=-1, type=click.UNPROCESSED)
@click.pass_context
def create(ctx, version, name, user, group, datadir, waldir, port, socketdir, logfile, locale, lc_collate,
           lc_ctype, lc_messages, lc_monetary, lc_numeric, lc_time, encoding, locale_provider, icu_locale,
           start_conf, pgoptions, start, initdb_options):
    """Create cluster NAME of PostgreSQL VERSION; arguments after -- go to initdb."""
    manager = _manager(ctx)
    accounts = manager.accounts

    if user is None:
        owner = accounts.resolve_user("postgres") if accounts.is_privileged() else (os.getuid(), os.getgid())
        user = "postgres"
    else:
        owner = accounts.resolve_user(user)
    if owner is None:
        raise click.ClickException(f"Unknown user '{user}'")
    owner_uid, owner_gid = owner
    if group is not None:
        owner_gid = accounts.resolve_group(group)
        if owner_gid is None:
            raise click.ClickException(f"Unknown group '{group}'")

    request = CreateRequest(
        version=version,
        name=name,
        owner_uid=owner_uid,
        owner_gid=owner_gid,
        datadir=datadir,
        waldir=waldir,
        port=port,
        socketdir=socketdir,
        logfile=logfile,
        locale=locale,
        lc_collate=lc_collate,
        lc_ctype=lc_ctype,
        lc_messages=lc_messages,
        lc_monetary=lc_monetary,
        lc_numeric=lc_numeric,
        lc_time=lc_time,
        encoding=encoding,
        locale_provider=locale_provider,
        icu_locale=icu_locale,
        start_mode=start_conf,
        pgoptions=_parse_pgoptions(pgoptions),
        initdb_options=list(initdb_options),
        start=start,
    )
    try:
        manager.create(request)
    except ClusterError as exc:
        raise click.ClickException(str(exc)) from exc


@main.command()
@click.argument("version")
@click.argument("name")
@click.option("--stop", is_flag=True, default=False, help="Stop the cluster first if it is running")
@click.pass_context
def drop(ctx, version, name, stop):
    """Remove cluster NAME of PostgreSQL VERSION with all its files."""
    try:
        _manager(ctx).drop(version, name, stop=stop)
    except ClusterError as exc:
        raise click.ClickException(str(exc)) from exc


@main.command()
@click.argument("version")
@click.argument("old_name")
@click.argument("new_name")
@click.pass_context
def rename(ctx, version, old_name, new_name):
    """Rename cluster OLD_NAME of PostgreSQL VERSION to NEW_NAME."""
    try:
        _manager(ctx).rename(version, old_name, new_name)
    except ClusterError as exc:
        raise click.ClickException(str(exc)) from exc


def _status(cluster) -> str:
    status = "online" if cluster.running else "down"
    if cluster.recovery:
        status += ",recovery"
    if cluster.supervisor:
        status += f",{cluster.supervisor}"
    return status


@main.command(name="list")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print machine readable JSON")
@click.option("--no-header", is_flag=True, default=False, help="Print plain rows without a header")
@click.pass_context
def list_command(ctx, as_json, no_header):
    """List all clusters on this host."""
    if as_json and no_header:
        raise click.UsageError("--json and --no-header are mutually exclusive")

    manager = _manager(ctx)
    try:
        clusters = manager.list_clusters()
    except ClusterError as exc:
        raise click.ClickException(str(exc)) from exc

    rows = [
        {
            "version": cluster.version,
            "cluster": cluster.name,
            "port": cluster.port,
            "status": _status(cluster),
            "owner": manager.owner_name(cluster),
            "data_directory": cluster.data_dir,
            "log_file": cluster.log_file,
        }
        for cluster in clusters
    ]

    if as_json:
        click.echo(json.dumps(rows, indent=2))
        return
    if no_header:
        for row in rows:
            click.echo(" ".join(str(value) for value in row.values()))
        return

    table = Table()
    for title in ("Ver", "Cluster", "Port", "Status", "Owner", "Data directory", "Log file"):
        table.add_column(title)
    for row in rows:
        table.add_row(*(str(value) for value in row.values()))
    console.print(table)


@main.command()
@click.argument("old_version")
@click.argument("name")
@click.option("-v", "--target-version", help="Version to upgrade to (default: the newest installed)")
@click.option("-m", "--method", type=click.Choice(UPGRADE_METHODS), default="dump", show_default=True)
@click.option("--rename", "new_name", help="Name of the upgraded cluster")
@click.option("-j", "--jobs", type=int, help="Parallel jobs for pg_upgrade")
@click.option("--keep-port", is_flag=True, default=False, help="Leave both clusters on their ports")
@click.option("--no-rollback", is_flag=True, default=False, help="Keep the new cluster if the upgrade fails")
@click.option("--start/--no-start", default=None, help="Start the new cluster (default: if the old one ran)")
@click.option("--locale")
@click.option("--lc-collate")
@click.option("--lc-ctype")
@click.option("--lc-messages")
@click.option("--lc-monetary")
@click.option("--lc-numeric")
@click.option("--lc-time")
@click.option("-d", "--datadir", type=click.Path(), help="Data directory of the new cluster")
@click.pass_context
def upgrade(ctx, old_version, name, target_version, method, new_name, jobs, keep_port, no_rollback, start,
            locale, lc_collate, lc_ctype, lc_messages, lc_monetary, lc_numeric, lc_time, datadir):
    """Upgrade cluster NAME of OLD_VERSION to a newer major version."""
    request = UpgradeRequest(
        old_version=old_version,
        name=name,
        new_version=target_version,
        new_name=new_name,
        method=method,
        datadir=datadir,
        jobs=jobs,
        keep_port=keep_port,
        rollback=not no_rollback,
        start=start,
        locale=locale,
        lc_collate=lc_collate,
        lc_ctype=lc_ctype,
        lc_messages=lc_messages,
        lc_monetary=lc_monetary,
        lc_numeric=lc_numeric,
        lc_time=lc_time,
    )
    try:
        _manager(ctx).upgrade(request)
    except ClusterError as exc:
        raise click.ClickException(str(exc)) from exc


if __name__ == "__main__":
    main()
