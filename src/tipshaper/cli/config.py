"""`tipshaper config ...` and `tipshaper log ...` commands."""

import io
from collections import Counter
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from tipshaper.types import ConfigError

from .base import config_option, load_config_or_exit, tree_option


@click.group()
@tree_option
def config():
    """Manage configuration files."""
    pass


@config.command()
@click.argument("path", type=click.Path(dir_okay=False))
@click.option(
    "--force", is_flag=True, default=False, help="Overwrite an existing file"
)
def init(path: str, force: bool):
    """Write a configuration file with default values.

    PATH: File to create (e.g. ./tipshaper.ini)
    """
    from tipshaper.system.appconfig import write_default_config

    try:
        written = write_default_config(path, overwrite=force)
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)
    click.echo(f"Wrote default configuration to {written}")


@config.command()
@config_option
def show(config_path: Optional[str]):
    """Print the effective configuration (file + environment overrides)."""
    from tipshaper.system.appconfig import app_config_to_parser

    app_config = load_config_or_exit(config_path)
    buf = io.StringIO()
    app_config_to_parser(app_config).write(buf)
    click.echo(buf.getvalue().rstrip())


@config.command()
@click.argument("path", type=click.Path(dir_okay=False))
def validate(path: str):
    """Check a configuration file without connecting to anything.

    PATH: Configuration file to check
    """
    from tipshaper.system.appconfig import validate_config_file

    valid, msg = validate_config_file(path)
    if valid:
        click.echo(f"{path}: OK")
    else:
        click.echo(f"{path}: INVALID - {msg}", err=True)
        raise SystemExit(1)


@click.group()
@tree_option
def log():
    """Inspect experiment action logs."""
    pass


@log.command(name="show")
@click.argument("path", type=click.Path(dir_okay=False))
def show_log(path: str):
    """Summarise an action log written by `tipshaper run`.

    PATH: .jsonl (or finalized .json) action log
    """
    from tipshaper.util.save import read_action_log

    if not Path(path).exists():
        click.echo(f"Error: {path} does not exist", err=True)
        raise SystemExit(1)
    records = read_action_log(path)
    console = Console(color_system="standard")
    if not records:
        console.print(f"{path}: no records")
        return

    actions = Counter(
        r.get("data", {}).get("action", "?")
        for r in records
        if isinstance(r.get("data"), dict)
    )
    table = Table(title=f"{Path(path).name}: {len(records)} records")
    table.add_column("Action")
    table.add_column("Count", justify="right")
    for action, count in actions.most_common():
        table.add_row(action, str(count))
    console.print(table)
    console.print(f"First record: {records[0].get('timestamp', '?')}")
    console.print(f"Last record:  {records[-1].get('timestamp', '?')}")

    finished = [
        r["data"]
        for r in records
        if isinstance(r.get("data"), dict) and r["data"].get("action") == "run_finished"
    ]
    if finished:
        final = finished[-1]
        console.print(
            f"Final tip state: [bold]{final.get('tip_shape')}[/bold] after "
            + f"{final.get('cycle_count')} cycles, {final.get('pulse_count')} pulses"
        )
