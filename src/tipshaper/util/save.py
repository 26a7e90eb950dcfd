# -*- coding: utf-8 -*-
"""Experiment action log.

Each action the conditioning run performs (pulse, reposition, tip check, sweep,
...) is appended as one JSON record per line:

    {"timestamp": "2025-01-31T10:15:02.123456+00:00", "data": {...}}

Line-delimited JSON survives a crash with at most the last line damaged. On a clean
finish the file can optionally be rewritten as a single indented JSON array, which
is easier to load into other tools. `read_action_log` accepts either form.

File Naming
-----------
<output_dir>/tip_prep_<YYYYmmdd_HHMMSS>.jsonl
"""

from __future__ import annotations

import os
import sys
from datetime import datetime, timezone
from typing import Any

import numpy as np
import simplejson as json
from loguru import logger


def get_command_string() -> str:
    """Get the original command string that was used to run this script."""
    return " ".join(sys.argv)


class NumpyEncoder(json.JSONEncoder):
    """Special json encoder for numpy types"""

    # o = an object to be encoded
    def default(self, o):
        if isinstance(o, np.integer):
            return int(o)
        if isinstance(o, np.floating):
            return float(o)
        if isinstance(o, np.ndarray):
            return o.tolist()
        if hasattr(o, "to_dict"):
            return o.to_dict()
        return json.JSONEncoder.default(self, o)


def experiment_log_path(output_dir: str) -> str:
    stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    return os.path.join(output_dir, f"tip_prep_{stamp}.jsonl")


class ActionLogger:
    """Buffered JSONL writer for experiment records.

    Parameters
    ----------
    path : str
        Output file; parent directories are created.
    buffer_size : int, optional
        Records held in memory before they are written out, by default 1000.
    """

    def __init__(self, path: str, buffer_size: int = 1000):
        self.path = os.path.abspath(path)
        self.buffer_size = max(1, buffer_size)
        self._pending: list[str] = []
        self._n_written = 0
        self._closed = False
        os.makedirs(os.path.dirname(self.path), exist_ok=True)
        # truncate, so a reused name never mixes two runs
        with open(self.path, "w"):
            pass
        logger.info("Action log at {}", self.path)

    def log(self, data: Any) -> None:
        if self._closed:
            raise ValueError("Action log is closed")
        record = {"timestamp": datetime.now(timezone.utc).isoformat(), "data": data}
        self._pending.append(json.dumps(record, cls=NumpyEncoder, ignore_nan=True))
        if len(self._pending) >= self.buffer_size:
            self.flush()

    def flush(self) -> None:
        if not self._pending:
            return
        with open(self.path, "a") as f:
            f.write("\n".join(self._pending) + "\n")
        self._n_written += len(self._pending)
        self._pending.clear()

    def __len__(self) -> int:
        return self._n_written + len(self._pending)

    def close(self, finalize_json: bool = False) -> None:
        """Flush, and optionally rewrite the file as one JSON array."""
        if self._closed:
            return
        self.flush()
        self._closed = True
        if finalize_json:
            records = read_action_log(self.path)
            with open(self.path, "w") as f:
                json.dump(records, f, cls=NumpyEncoder, indent=2, ignore_nan=True)
            logger.info(
                "Action log finalized as JSON array ({} records): {}",
                len(records),
                self.path,
            )
        else:
            logger.info("Action log closed ({} records): {}", self._n_written, self.path)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


def read_action_log(path: str) -> list[dict]:
    """Load records written by `ActionLogger`.

    A missing file gives an empty list; an unparseable line (e.g. the last line of
    a run that crashed mid-write) is skipped with a warning.
    """
    if not os.path.exists(path):
        return []
    with open(path, "r") as f:
        text = f.read()
    if not text.strip():
        return []
    if text.lstrip().startswith("["):
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            logger.warning("Action log {} is not a complete JSON array", path)
            return []

    records = []
    for lineno, line in enumerate(text.splitlines(), start=1):
        if not line.strip():
            continue
        try:
            records.append(json.loads(line))
        except json.JSONDecodeError:
            logger.warning("Skipping unreadable line {} in {}", lineno, path)
    return records
