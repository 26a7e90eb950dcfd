from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from tipshaper.device.nanonis import NanonisClient
from tipshaper.meas.signals import SignalRegistry
from tipshaper.types import ConfigError, NanonisError
from tipshaper.util import DEFAULT_LOGLEVEL, format_error_response


def print_tree(cmd, prefix="", parent_ctx=None):
    """Print command tree starting from given command."""
    ctx = click.Context(cmd, info_name=cmd.name, parent=parent_ctx)

    # Only print root name if no parent
    if not parent_ctx:
        click.echo(cmd.name)

    for sub in sorted(cmd.list_commands(ctx)):
        sub_cmd = cmd.get_command(ctx, sub)
        if isinstance(sub_cmd, click.Group):
            click.echo(f"{prefix}└── {sub}")
            print_tree(sub_cmd, prefix + "    ", ctx)
        else:
            click.echo(f"{prefix}└── {sub}")


def tree_option(f):
    """Add --tree option to command."""

    def callback(ctx, param, value):
        if not value or ctx.resilient_parsing:
            return
        print_tree(ctx.command)
        ctx.exit()

    return click.option(
        "--tree",
        is_flag=True,
        help="Show command tree from this point",
        expose_value=False,
        is_eager=True,
        callback=callback,
    )(f)


def setup_logging(
    log_path: Optional[str] = None,
    clear_prev_log: bool = True,
    log_to_file: bool = True,
    log_to_stdout: bool = True,
    log_level: str = DEFAULT_LOGLEVEL,
) -> None:
    """Configure logging based on parameters.

    Parameters
    ----------
    log_path : str, optional
        Path to log file. If empty, uses default path.
    clear_prev_log : bool, optional
        Whether to clear previous log file, by default True
    log_to_file : bool, optional
        Enable logging to file, by default True
    log_to_stdout : bool, optional
        Enable console logging, by default True
    log_level : str, optional
        Logging level (TRACE, DEBUG, INFO, WARNING, ERROR), by default DEFAULT_LOGLEVEL
    """
    from tipshaper.util.logging import start_client_log

    start_client_log(
        log_to_file=log_to_file,
        log_to_stdout=log_to_stdout,
        log_path=log_path,
        clear_prev=clear_prev_log,
        log_level=log_level.upper(),
    )


def config_option(f):
    """Add -c/--config option (path to an INI configuration file)."""
    return click.option(
        "--config",
        "-c",
        "config_path",
        type=click.Path(dir_okay=False),
        default=None,
        help="Configuration file (default: ./tipshaper.ini, ~/.tipshaper/config.ini)",
    )(f)


def load_config_or_exit(config_path: Optional[str]):
    from tipshaper.system.appconfig import load_app_config

    try:
        return load_app_config(config_path)
    except ConfigError as e:
        click.echo(f"Configuration error: {e}", err=True)
        raise SystemExit(1)


@click.group()
@tree_option
def cli():
    """tipshaper - automated STM/AFM tip conditioning for Nanonis controllers.

    Drives a Nanonis SPM controller over its TCP interface to sharpen the tip:

    - Bias pulses with fixed, stepping or signal-proportional voltage

    - Tip classification from a monitored signal (usually the frequency shift)

    - Bias-sweep stability checks before a tip is accepted
    """
    pass


@cli.command()
@config_option
@click.option(
    "--filter",
    "-f",
    "name_filter",
    default="",
    help="Only list signals whose name contains this text",
)
@click.option(
    "--tcp-only/--all",
    default=False,
    help="Only list signals available on the TCP logger (default: all)",
)
def signals(config_path: Optional[str], name_filter: str, tcp_only: bool):
    """List the signals reported by the Nanonis controller.

    Shows each signal's index (as used by Signals.ValsGet) and, where the signal
    can be streamed, its TCP logger channel.
    """
    app_config = load_config_or_exit(config_path)
    nanonis = app_config.nanonis
    try:
        with NanonisClient(nanonis.host_ip, nanonis.control_ports[0]) as client:
            registry = SignalRegistry.from_names(
                client.signals_names_get(), app_config.tcp_channel_mapping
            )
    except NanonisError:
        click.echo(f"Error: {format_error_response()}", err=True)
        raise SystemExit(1)

    found = registry.find_like(name_filter) if name_filter else list(registry)
    if tcp_only:
        found = [s for s in found if s.tcp_channel is not None]

    table = Table(title=f"Nanonis signals ({nanonis.host_ip})")
    table.add_column("Index", justify="right")
    table.add_column("Name")
    table.add_column("TCP channel", justify="right")
    for s in sorted(found, key=lambda s: s.index):
        table.add_row(
            str(s.index), s.name, "-" if s.tcp_channel is None else str(s.tcp_channel)
        )
    Console(color_system="standard").print(table)
    if not found:
        click.echo("No matching signals")
