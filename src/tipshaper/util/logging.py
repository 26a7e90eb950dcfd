# -*- coding: utf-8 -*-
"""
Log sinks for tipshaper.

Every module logs through the shared `loguru` logger. The CLI calls
`start_client_log` once per invocation to choose the sinks, and
`shutdown_client_log` on exit so the enqueued file sink is drained.
"""

import os
import sys
import traceback
from pathlib import Path
from typing import Optional

from loguru import logger

from .defaults import DEFAULT_LOG_PATH, DEFAULT_LOGLEVEL, SINGLE_LINE_ERR_LOG

# the thread column separates the stream and buffer threads from the control loop
FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {thread.name: <18} | "
    + "{name}:{function}:{line} - {message}"
)

_log_path: Optional[Path] = None


def format_error_response() -> str:
    err_str = traceback.format_exc()
    if SINGLE_LINE_ERR_LOG:
        return "\t".join(line.strip() for line in err_str.splitlines())
    return err_str


def start_client_log(
    log_to_file: bool = True,
    log_to_stdout: bool = False,
    log_path: Optional[str] = None,
    clear_prev: bool = True,
    log_level: str = DEFAULT_LOGLEVEL,
) -> None:
    """Replace all sinks with a file sink and/or a colored stderr sink.

    Parameters
    ----------
    log_path : str, optional
        Log file; `DEFAULT_LOG_PATH` when empty.
    clear_prev : bool, optional
        Delete the previous log file first, by default True.
    """
    global _log_path
    path = Path(os.path.abspath(os.path.expanduser(log_path or DEFAULT_LOG_PATH)))
    if clear_prev:
        clear_log(path)

    logger.remove()
    _log_path = None
    if log_to_file:
        path.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            path, level=log_level, format=FILE_FORMAT, enqueue=True, colorize=False
        )
        _log_path = path
    if log_to_stdout:
        logger.add(sys.stderr, level=log_level, enqueue=True, colorize=True)
    logger.info("tipshaper log started (level {}, file {})", log_level, _log_path)


def clear_log(log_path: str | Path) -> None:
    """Delete a previous log file; a missing file is fine."""
    try:
        os.remove(log_path)
    except FileNotFoundError:
        pass
    except PermissionError:
        logger.error("Could not clear log file {}: permission denied", log_path)


def shutdown_client_log() -> None:
    try:
        logger.info("Closing tipshaper log")
        logger.complete()
        logger.remove()
    except Exception:
        logger.exception("Error shutting down log, skipping.")


def get_log_filename() -> str:
    """Path of the active log file, or "" when logging to the console only."""
    return str(_log_path) if _log_path is not None else ""
