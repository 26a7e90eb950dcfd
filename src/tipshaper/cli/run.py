"""The `tipshaper run` command: one complete tip conditioning run."""

import signal
import threading
from contextlib import contextmanager
from typing import Any, Generator, Optional

import click
from click_option_group import optgroup
from loguru import logger
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from tipshaper.device.nanonis import NanonisClient
from tipshaper.meas.driver import SPMDriver
from tipshaper.meas.signals import Signal, SignalRegistry
from tipshaper.meas.tip_prep import ControllerState, TipController, TipShape
from tipshaper.types import ConfigError, NanonisError
from tipshaper.types.config import AppConfig
from tipshaper.util.logging import get_log_filename
from tipshaper.util.save import ActionLogger, experiment_log_path, get_command_string

from .base import cli, config_option, load_config_or_exit, setup_logging


@contextmanager
def managed_session(
    app_config: AppConfig, action_logger: Optional[ActionLogger] = None
) -> Generator[SPMDriver, Any, None]:
    """Context manager for instrument setup and cleanup.

    The driver is always closed (tip withdrawn, buffering stopped) and the action
    log always flushed, whatever happens inside the block.
    """
    nanonis = app_config.nanonis
    driver = None
    try:
        client = NanonisClient(nanonis.host_ip, nanonis.control_ports[0])
        driver = SPMDriver(client, action_logger)
        client.open()
        yield driver
    finally:
        if driver is not None:
            try:
                driver.close()
            except Exception:
                logger.exception("Error closing driver")
        if action_logger is not None:
            try:
                action_logger.close(
                    finalize_json=app_config.experiment_logging.finalize_json
                )
            except Exception:
                logger.exception("Error closing action log")


def resolve_signal(driver: SPMDriver, app_config: AppConfig) -> Signal:
    """Find the monitored signal by (alias) name on the connected controller."""
    registry = SignalRegistry.from_names(
        driver.client.signals_names_get(), app_config.tcp_channel_mapping
    )
    name = app_config.tip_prep.freq_shift_signal
    found = registry.get(name)
    if found is None:
        raise ConfigError(
            f"Signal '{name}' not found on the controller; "
            + f"similar: {[s.name for s in registry.find_like(name.split()[0])]}"
        )
    return found


def install_stop_handler(shutdown: threading.Event):
    """Ctrl+C requests a stop after the current step; a second Ctrl+C aborts."""

    def handler(signum, frame):
        if shutdown.is_set():
            raise KeyboardInterrupt
        logger.warning("Stop requested, finishing current step (Ctrl+C again to abort)")
        shutdown.set()

    return signal.signal(signal.SIGINT, handler)


def print_run_summary(state: ControllerState, log_path: Optional[str] = None) -> None:
    console = Console(color_system="standard")
    table = Table(show_header=False, box=None)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    colour = {
        TipShape.STABLE: "green",
        TipShape.SHARP: "yellow",
        TipShape.BLUNT: "red",
    }[state.tip_shape]
    table.add_row("Tip", f"[{colour}]{state.tip_shape.value}[/{colour}]")
    table.add_row("Cycles", str(state.cycle_count))
    table.add_row("Pulses", str(state.pulse_count))
    table.add_row("Pulse voltage", f"{state.pulse_voltage:.3f} V")
    if state.freq_shift is not None:
        table.add_row("Last signal", f"{state.freq_shift:.4g}")
    table.add_row("Elapsed", f"{state.elapsed_secs:.1f} s")
    if state.stopped:
        table.add_row("Note", "[yellow]stopped by user[/yellow]")
    if log_path:
        table.add_row("Action log", log_path)
    if get_log_filename():
        table.add_row("Log file", get_log_filename())
    console.print(Panel(table, title="Tip conditioning", expand=False))


@cli.command()
@config_option
@click.option(
    "--yes", "-y", is_flag=True, default=False, help="Do not ask for confirmation"
)
@optgroup.group("Logging")
@optgroup.option(
    "--log-level",
    "-ll",
    default=None,
    help="Logging level (TRACE, DEBUG, INFO, WARNING, ERROR) (default: from config)",
)
@optgroup.option(
    "--log-to-file/--no-log-to-file",
    default=True,
    help="Enable/disable logging to file (default: enabled)",
)
@optgroup.option(
    "--log-path", "-lp", default=None, help="Custom path for log file"
)
def run(
    config_path: Optional[str],
    yes: bool,
    log_level: Optional[str],
    log_to_file: bool,
    log_path: Optional[str],
):
    """Run automated tip conditioning.

    Connects to the controller, approaches, and cycles pulse / reposition /
    check until the tip passes the stability check. Ctrl+C stops cleanly after
    the current step; the tip is always withdrawn on exit.
    """
    app_config = load_config_or_exit(config_path)
    setup_logging(
        log_path=log_path,
        log_to_file=log_to_file,
        log_to_stdout=True,
        log_level=log_level or app_config.console.verbosity,
    )
    logger.info("Command: {}", get_command_string())

    action_logger = None
    exp_log = app_config.experiment_logging
    if exp_log.enabled:
        action_logger = ActionLogger(
            experiment_log_path(exp_log.output_path), exp_log.buffer_size
        )
        action_logger.log({"action": "config", "config": app_config.to_dict()})

    shutdown = threading.Event()
    try:
        with managed_session(app_config, action_logger) as driver:
            monitored = resolve_signal(driver, app_config)
            logger.info(
                "Monitoring '{}' (index {}, TCP channel {})",
                monitored.name,
                monitored.index,
                monitored.tcp_channel,
            )
            if not yes:
                click.confirm(
                    f"Start tip conditioning on {app_config.nanonis.host_ip} "
                    + f"monitoring '{monitored.name}'?",
                    abort=True,
                )
            if monitored.tcp_channel is not None:
                acq = app_config.data_acquisition
                driver.start_buffering(
                    [monitored], acq.oversampling, acq.buffer_capacity, acq.data_port
                )
            controller = TipController(
                driver,
                monitored,
                app_config.controller_config(monitored.index, monitored.tcp_channel),
                shutdown=shutdown,
            )
            previous_handler = install_stop_handler(shutdown)
            try:
                final = controller.run()
            finally:
                signal.signal(signal.SIGINT, previous_handler)
    except (NanonisError, ConfigError) as e:
        logger.exception("Tip conditioning failed.")
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)

    print_run_summary(final, action_logger.path if action_logger else None)
