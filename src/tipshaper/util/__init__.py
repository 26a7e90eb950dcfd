# -*- coding: utf-8 -*-
"""
Utility functions and constants for tipshaper.

- Logging configuration and management
- Experiment action log writing and reading
- Polling an instrument condition with a deadline

Examples
--------
Logging to file and console:
```python
from tipshaper.util import start_client_log
start_client_log(log_to_file=True, log_to_stdout=True, log_level="DEBUG")
```

See Also
--------
tipshaper.util.logging : Logging configuration
tipshaper.util.save : Action log
"""

from .defaults import (
    DEFAULT_CONTROL_PORT,
    DEFAULT_HOST_ADDR,
    DEFAULT_LOG_PATH,
    DEFAULT_LOGLEVEL,
    DEFAULT_STREAM_PORT,
    SINGLE_LINE_ERR_LOG,
    TEST_LOGLEVEL,
)
from .logging import (
    clear_log,
    format_error_response,
    get_log_filename,
    shutdown_client_log,
    start_client_log,
)
from .poll import poll_until
from .save import ActionLogger, NumpyEncoder, experiment_log_path, read_action_log

__all__ = [
    "DEFAULT_CONTROL_PORT",
    "DEFAULT_HOST_ADDR",
    "DEFAULT_LOG_PATH",
    "DEFAULT_LOGLEVEL",
    "DEFAULT_STREAM_PORT",
    "SINGLE_LINE_ERR_LOG",
    "TEST_LOGLEVEL",
    "clear_log",
    "format_error_response",
    "get_log_filename",
    "shutdown_client_log",
    "start_client_log",
    "poll_until",
    "ActionLogger",
    "NumpyEncoder",
    "experiment_log_path",
    "read_action_log",
]
